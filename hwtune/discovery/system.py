"""
FactCollector - builds the immutable HardwareFacts snapshot.

Read-only. Every probe fails soft: an unreadable file or a failing tool
yields the documented default instead of aborting the run.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..protocol.errors import ProbeFailure
from ..protocol.facts import HardwareFacts, MountPoint
from .cloud import CloudDetector, CloudIdentity, MetadataClient
from .host import CommandRunner, HostFS, DEFAULT_COMMAND_TIMEOUT
from .network import NicScanner
from .storage import StorageScanner

logger = logging.getLogger(__name__)

DESKTOP_SHELLS = ("gnome-shell", "plasmashell", "xfce4-session", "cinnamon", "mate-session")
USB_NIC_MODULES = ("r8152", "asix", "ax88179_178a", "cdc_ether", "cdc_ncm", "rndis_host", "usbnet")

CPU_DEFAULTS = {'vendor': 'unknown', 'model': '', 'family': 0, 'cores': 1}
MEMORY_DEFAULTS = {
    'total_kb': 0,
    'slab_kb': 0,
    'hugepages_total': 0,
    'hugepages_free': 0,
    'swap_active': False,
}


@dataclass
class CollectorConfig:
    """Configuration for fact collection."""
    root: Union[str, Path] = "/"
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    metadata_timeout: float = 1.0
    use_metadata: bool = True
    env: Optional[Mapping[str, str]] = None
    uid: Optional[int] = None
    services: Tuple[str, ...] = ()         # Units whose active state is recorded


class FactCollector:
    """
    Probes the host once and returns HardwareFacts.

    Components are injectable so tests can supply a fake root tree, a
    recording command runner and a stubbed metadata client.
    """

    def __init__(
        self,
        config: Optional[CollectorConfig] = None,
        runner: Optional[CommandRunner] = None,
        metadata: Optional[MetadataClient] = None,
    ):
        self.config = config or CollectorConfig()
        self.fs = HostFS(self.config.root)
        self.runner = runner or CommandRunner(timeout=self.config.command_timeout)
        self.metadata = metadata or MetadataClient(timeout=self.config.metadata_timeout)
        self.env = self.config.env if self.config.env is not None else os.environ
        self.uid = self.config.uid if self.config.uid is not None else os.getuid()
        self.failures: List[str] = []

    def _probe(self, name: str, probe: Callable[[], Dict[str, Any]],
               default: Dict[str, Any]) -> Dict[str, Any]:
        """Run one probe; a ProbeFailure yields a copy of `default`."""
        try:
            return probe()
        except ProbeFailure as e:
            logger.debug("%s probe failed, using defaults: %s", name, e)
            self.failures.append(str(e))
            return dict(default)

    def collect(self) -> HardwareFacts:
        """Perform full host probe."""
        self.failures = []
        cpu = self._probe("cpu", self._get_cpu_info, CPU_DEFAULTS)
        mem = self._probe("memory", self._get_memory_info, MEMORY_DEFAULTS)
        os_info = self._get_os_info()
        is_vm = self._get_virtualization()

        identity = CloudIdentity()
        if is_vm != "none":
            identity = CloudDetector(
                self.fs, self.runner, self.metadata, self.config.use_metadata
            ).detect()

        facts = HardwareFacts(
            cpu_vendor=cpu['vendor'],
            cpu_model=cpu['model'],
            cpu_family=cpu['family'],
            cpu_cores=cpu['cores'],
            mem_total_kb=mem['total_kb'],
            numa_nodes=self._get_numa_nodes(),
            smt_control=self.fs.read("/sys/devices/system/cpu/smt/control"),
            cpuidle_states=len([s for s in self.fs.listdir("/sys/devices/system/cpu/cpu0/cpuidle")
                                if s.startswith("state")]),
            is_vm=is_vm,
            cloud_provider=identity.provider,
            instance_type=identity.instance_type,
            instance_net_tier=identity.net_tier,
            cloud_detection_method=identity.method,
            cloud_confidence=identity.confidence,
            distro_id=os_info['distro_id'],
            kernel_version=os_info['kernel'],
            has_battery=(self.fs.is_dir("/sys/class/power_supply/BAT0")
                         or self.fs.is_dir("/sys/class/power_supply/BAT1")),
            graphical_session=self._has_graphical_session(),
            irqbalance_running=self._irqbalance_running(),
            active_services=self._active_services(),
            cfs_tunables=self.fs.exists("/proc/sys/kernel/sched_latency_ns"),
            eevdf_base_slice=self.fs.exists("/proc/sys/kernel/sched_base_slice_ns"),
            migration_cost_tunable=self.fs.exists("/proc/sys/kernel/sched_migration_cost_ns"),
            per_vma_lock=self.fs.exists("/proc/sys/vm/per_vma_lock"),
            ipv6_enabled=self._ipv6_enabled(),
            available_congestion=tuple(
                self.fs.read("/proc/sys/net/ipv4/tcp_available_congestion_control").split()
            ),
            conntrack_loaded=self.fs.is_dir("/sys/module/nf_conntrack"),
            usb_nic_loaded=any(self.fs.is_dir(f"/sys/module/{m}") for m in USB_NIC_MODULES),
            bpf_jit_available=self.fs.exists("/proc/sys/net/core/bpf_jit_enable"),
            swap_active=mem['swap_active'],
            zswap_available=self.fs.exists("/sys/module/zswap/parameters/enabled"),
            thp_available=self.fs.exists("/sys/kernel/mm/transparent_hugepage/enabled"),
            slab_kb=mem['slab_kb'],
            hugepages_total=mem['hugepages_total'],
            hugepages_free=mem['hugepages_free'],
            storage=StorageScanner(self.fs).scan(identity.provider),
            nics=NicScanner(self.fs, self.runner).scan(),
            mounts=self._get_mounts(),
            grub_default=self.fs.read("/etc/default/grub"),
        )
        logger.debug(
            "facts: cores=%s mem_kb=%s numa=%s vm=%s cloud=%s/%s tier=%s distro=%s kernel=%s",
            facts.cpu_cores, facts.mem_total_kb, facts.numa_nodes, facts.is_vm,
            facts.cloud_provider.value, facts.instance_type, facts.instance_net_tier.value,
            facts.distro_id, facts.kernel_version,
        )
        return facts

    def _get_cpu_info(self) -> Dict[str, Any]:
        """
        Get CPU information.

        Raises:
            ProbeFailure: /proc/cpuinfo missing or empty
        """
        info = dict(CPU_DEFAULTS)

        cpuinfo = self.fs.read("/proc/cpuinfo")
        if not cpuinfo:
            raise ProbeFailure("cpu", "/proc/cpuinfo unreadable")

        cores = len(re.findall(r'^processor\s*:', cpuinfo, re.MULTILINE))
        info['cores'] = cores if cores > 0 else 1

        vendor = re.search(r'^vendor_id\s*:\s*(.+)$', cpuinfo, re.MULTILINE)
        if vendor:
            info['vendor'] = vendor.group(1).strip()

        model = re.search(r'^model name\s*:\s*(.+)$', cpuinfo, re.MULTILINE)
        if model:
            info['model'] = model.group(1).strip()

        family = re.search(r'^cpu family\s*:\s*(\d+)', cpuinfo, re.MULTILINE)
        if family:
            info['family'] = int(family.group(1))

        return info

    def _get_memory_info(self) -> Dict[str, Any]:
        """
        Get memory information from /proc/meminfo and /proc/swaps.

        Raises:
            ProbeFailure: no MemTotal line
        """
        info = dict(MEMORY_DEFAULTS)

        fields = {
            'MemTotal': 'total_kb',
            'Slab': 'slab_kb',
            'HugePages_Total': 'hugepages_total',
            'HugePages_Free': 'hugepages_free',
        }
        for line in self.fs.read("/proc/meminfo").splitlines():
            match = re.match(r'^(\w+):\s+(\d+)', line)
            if match and match.group(1) in fields:
                info[fields[match.group(1)]] = int(match.group(2))
        if not info['total_kb']:
            raise ProbeFailure("memory", "MemTotal missing from /proc/meminfo")

        swaps = self.fs.read("/proc/swaps").splitlines()
        info['swap_active'] = len(swaps) > 1
        return info

    def _get_numa_nodes(self) -> int:
        nodes = [n for n in self.fs.listdir("/sys/devices/system/node")
                 if re.match(r'^node\d+$', n)]
        return max(1, len(nodes))

    def _get_os_info(self) -> Dict[str, str]:
        info = {'distro_id': 'unknown', 'kernel': ''}

        for line in self.fs.read("/etc/os-release").splitlines():
            if line.startswith("ID="):
                info['distro_id'] = line[3:].strip().strip('"') or 'unknown'
                break

        release = self.fs.read("/proc/sys/kernel/osrelease")
        match = re.match(r'^(\d+)\.(\d+)', release)
        if match:
            info['kernel'] = f"{match.group(1)}.{match.group(2)}"
        return info

    def _get_virtualization(self) -> str:
        return self.runner.output(["systemd-detect-virt"]) or "none"

    def _process_running(self, name: str) -> bool:
        return self.runner.run(["pgrep", "-x", name]).ok

    def _has_graphical_session(self) -> bool:
        if self.env.get("DISPLAY") or self.env.get("WAYLAND_DISPLAY"):
            return True
        if "graphical" in self.runner.output(["systemctl", "get-default"]):
            return True
        if self.fs.is_dir(f"/run/user/{self.uid}/pulse"):
            return True
        return any(self._process_running(shell) for shell in DESKTOP_SHELLS)

    def _irqbalance_running(self) -> bool:
        if self.runner.run(["systemctl", "is-active", "--quiet", "irqbalance"]).ok:
            return True
        return self._process_running("irqbalance")

    def _active_services(self) -> Tuple[str, ...]:
        return tuple(
            name for name in self.config.services
            if self.runner.run(["systemctl", "is-active", "--quiet", name]).ok
        )

    def _ipv6_enabled(self) -> bool:
        if not self.fs.is_dir("/proc/sys/net/ipv6"):
            return False
        return self.fs.read("/proc/sys/net/ipv6/conf/all/disable_ipv6") != "1"

    def _get_mounts(self) -> Tuple[MountPoint, ...]:
        mounts = []
        for line in self.fs.read("/proc/mounts").splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[0].startswith("/dev/"):
                mounts.append(MountPoint(device=parts[0], mountpoint=parts[1], fstype=parts[2]))
        return tuple(mounts)
