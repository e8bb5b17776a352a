"""
Hardware facts - immutable snapshot of the host, collected once per run.

Consumed by the profile resolver and the derivation engine. Nothing here
touches the host; see discovery/ for the probes that build these values.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Any, Optional, Tuple


class CloudProvider(str, Enum):
    """Cloud platform the host runs on."""
    NONE = "none"
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"
    ALIBABA = "alibaba"


class NetTier(str, Enum):
    """Coarse instance network capability, derived from the instance type."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ULTRA = "ultra"


class CloudClass(str, Enum):
    """Storage class of a block device on a cloud instance."""
    LOCAL = "local"
    EBS = "ebs"
    INSTANCE_STORE = "instance-store"
    AZURE_DISK = "azure-disk"
    AZURE_TEMP = "azure-temp"
    AZURE_LOCAL = "azure-local"
    GCP_PD = "gcp-pd"
    GCP_LOCAL_SSD = "gcp-local-ssd"
    CLOUD_DISK = "cloud-disk"
    ALIBABA_LOCAL = "alibaba-local"

    @property
    def is_network_attached(self) -> bool:
        return self in (CloudClass.EBS, CloudClass.AZURE_DISK,
                        CloudClass.GCP_PD, CloudClass.CLOUD_DISK)

    @property
    def is_instance_local(self) -> bool:
        return self in (CloudClass.INSTANCE_STORE, CloudClass.AZURE_TEMP,
                        CloudClass.AZURE_LOCAL, CloudClass.GCP_LOCAL_SSD,
                        CloudClass.ALIBABA_LOCAL)


@dataclass(frozen=True)
class StorageDevice:
    """One block device under /sys/block."""
    name: str
    is_ssd: bool = False
    cloud_class: CloudClass = CloudClass.LOCAL
    schedulers: Tuple[str, ...] = ()       # Available I/O schedulers
    nr_requests: int = 128
    model: str = ""
    vendor: str = ""

    def supports(self, scheduler: str) -> bool:
        return scheduler in self.schedulers


@dataclass(frozen=True)
class NicFacts:
    """One physical or paravirtual network interface."""
    iface: str
    driver: str = "unknown"
    speed_mbps: int = 1000
    mtu: int = 1500
    mtu_max: int = 1500
    ring_max_rx: int = 0
    ring_max_tx: int = 0
    queue_max: int = 0                     # Max combined channels
    features: Dict[str, str] = field(default_factory=dict)   # ethtool -k, name -> on/off
    adaptive_coalesce: bool = False
    priv_flags: Tuple[str, ...] = ()
    eee_supported: bool = False
    backed_by: Optional[str] = None        # Lower device (SR-IOV VF) carrying traffic
    rx_queues: Tuple[str, ...] = ()
    tx_queues: Tuple[str, ...] = ()

    def feature(self, name: str) -> str:
        return self.features.get(name, "")

    def has_priv_flag(self, name: str) -> bool:
        return name in self.priv_flags


@dataclass(frozen=True)
class MountPoint:
    device: str
    mountpoint: str
    fstype: str


@dataclass(frozen=True)
class HardwareFacts:
    """Everything the derivation engine is allowed to know about the host."""

    # CPU / memory
    cpu_vendor: str = "unknown"            # GenuineIntel, AuthenticAMD, ...
    cpu_model: str = ""
    cpu_family: int = 0
    cpu_cores: int = 1
    mem_total_kb: int = 0
    numa_nodes: int = 1
    smt_control: str = ""                  # on/off/forceoff/notsupported, "" if absent
    cpuidle_states: int = 0

    # Virtualization / cloud
    is_vm: str = "none"
    cloud_provider: CloudProvider = CloudProvider.NONE
    instance_type: str = ""
    instance_net_tier: NetTier = NetTier.NONE
    cloud_detection_method: str = ""       # dmi, imds, service
    cloud_confidence: str = ""             # high, medium, low

    # OS
    distro_id: str = "unknown"
    kernel_version: str = ""
    has_battery: bool = False
    graphical_session: bool = False
    irqbalance_running: bool = False
    active_services: Tuple[str, ...] = ()   # Probed subset that is currently active

    # Kernel capabilities
    cfs_tunables: bool = False             # kernel.sched_latency_ns present
    eevdf_base_slice: bool = False         # kernel.sched_base_slice_ns present
    migration_cost_tunable: bool = False
    per_vma_lock: bool = False
    ipv6_enabled: bool = True
    available_congestion: Tuple[str, ...] = ()
    conntrack_loaded: bool = False
    usb_nic_loaded: bool = False
    bpf_jit_available: bool = False

    # Memory subsystem
    swap_active: bool = False
    zswap_available: bool = False
    thp_available: bool = False
    slab_kb: int = 0
    hugepages_total: int = 0
    hugepages_free: int = 0

    # Devices
    storage: Tuple[StorageDevice, ...] = ()
    nics: Tuple[NicFacts, ...] = ()
    mounts: Tuple[MountPoint, ...] = ()
    grub_default: str = ""

    @property
    def ram_gb_floor(self) -> int:
        """RAM in whole GiB, rounded down (network sizing)."""
        return self.mem_total_kb // 1024 // 1024

    @property
    def ram_gb_ceil(self) -> int:
        """RAM in whole GiB, rounded up, at least 1 (system sizing)."""
        return max(1, (self.mem_total_kb + 1048575) // 1024 // 1024)

    @property
    def is_virtual(self) -> bool:
        return self.is_vm != "none"

    @property
    def is_intel(self) -> bool:
        return "intel" in self.cpu_vendor.lower()

    @property
    def is_amd(self) -> bool:
        return "amd" in self.cpu_vendor.lower()

    @property
    def xfs_mounted(self) -> bool:
        return any(m.fstype == "xfs" for m in self.mounts)

    def nic(self, iface: str) -> Optional[NicFacts]:
        for nic in self.nics:
            if nic.iface == iface:
                return nic
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
