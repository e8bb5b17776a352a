"""
Golden Test Data - realistic probe output and host facts.

The ethtool/ip text below is captured from real machines (ixgbe bare
metal, ENA on EC2, hv_netvsc with a mlx5 VF on Azure) and trimmed to the
lines the parsers read. The facts builders produce HardwareFacts for the
host shapes the derivation tests need.
"""

from dataclasses import replace
from typing import Dict

from hwtune.protocol.facts import (
    CloudClass,
    CloudProvider,
    HardwareFacts,
    NetTier,
    NicFacts,
    StorageDevice,
)

GB_KB = 1024 * 1024


# =============================================================================
# ethtool / ip output
# =============================================================================

ETHTOOL_RINGS = """Ring parameters for eth0:
Pre-set maximums:
RX:\t\t\t4096
RX Mini:\t\tn/a
RX Jumbo:\t\tn/a
TX:\t\t\t4096
Current hardware settings:
RX:\t\t\t512
RX Mini:\t\tn/a
RX Jumbo:\t\tn/a
TX:\t\t\t512
"""

ETHTOOL_CHANNELS = """Channel parameters for eth0:
Pre-set maximums:
RX:\t\tn/a
TX:\t\tn/a
Other:\t\t1
Combined:\t63
Current hardware settings:
RX:\t\tn/a
TX:\t\tn/a
Other:\t\t1
Combined:\t8
"""

ETHTOOL_FEATURES = """Features for eth0:
rx-checksumming: on
tx-checksumming: on
\ttx-checksum-ipv4: off [fixed]
scatter-gather: on
tcp-segmentation-offload: off
generic-segmentation-offload: on
generic-receive-offload: off
large-receive-offload: off
rx-vlan-offload: on [fixed]
"""

ETHTOOL_COALESCE = """Coalesce parameters for eth0:
Adaptive RX: off  TX: off
rx-usecs: 1
tx-usecs: 0
"""

ETHTOOL_PRIV_FLAGS = """Private flags for eth0:
flow-director-atr: on
legacy-rx        : off
"""

ETHTOOL_EEE = """EEE settings for eth0:
\tEEE status: disabled
\tTx LPI: disabled
"""

IP_LINK_DETAIL = """2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500 qdisc mq state UP mode DEFAULT group default qlen 1000
    link/ether 52:54:00:12:34:56 brd ff:ff:ff:ff:ff:ff promiscuity 0 minmtu 68 maxmtu 9710 addrgenmode eui64
"""

ENA_PRIV_FLAGS = """Private flags for eth0:
enable_llq: on
"""

IMDS_AWS_ROOT = "ami-id\nami-launch-index\nhostname\ninstance-id\ninstance-type\n"
IMDS_GCP_ROOT = "attributes/\nhostname\ninstance/\nproject/\n"
IMDS_AZURE_ROOT = '{"compute": {"vmId": "5c08b38e-4d57-4c23-ac45-aca61037f084"}}'


# =============================================================================
# Hardware facts
# =============================================================================

def bare_metal_server(ram_gb: int = 64, cores: int = 32, **overrides) -> HardwareFacts:
    """64GB, 32-core bare-metal server on an EEVDF kernel."""
    facts = HardwareFacts(
        cpu_vendor="GenuineIntel",
        cpu_model="Intel(R) Xeon(R) Gold 6338 CPU @ 2.00GHz",
        cpu_family=6,
        cpu_cores=cores,
        mem_total_kb=ram_gb * GB_KB,
        numa_nodes=2,
        smt_control="on",
        cpuidle_states=4,
        distro_id="ubuntu",
        kernel_version="6.8",
        eevdf_base_slice=True,
        per_vma_lock=True,
        available_congestion=("reno", "cubic", "bbr"),
        conntrack_loaded=True,
        bpf_jit_available=True,
        thp_available=True,
        zswap_available=True,
        swap_active=True,
        storage=(
            StorageDevice("nvme0n1", is_ssd=True,
                          schedulers=("none", "mq-deadline", "kyber"), nr_requests=1023),
            StorageDevice("sda", is_ssd=False,
                          schedulers=("mq-deadline", "bfq", "none"), nr_requests=64),
        ),
        nics=(
            NicFacts(
                "eth0", driver="ixgbe", speed_mbps=10000, mtu=1500, mtu_max=9710,
                ring_max_rx=4096, ring_max_tx=4096, queue_max=63,
                features={"rx-checksumming": "on", "generic-receive-offload": "off"},
                priv_flags=("flow-director-atr",),
                rx_queues=("rx-0", "rx-1"), tx_queues=("tx-0", "tx-1"),
            ),
        ),
        grub_default='GRUB_DEFAULT=0\nGRUB_CMDLINE_LINUX_DEFAULT="quiet splash"\n',
    )
    return replace(facts, **overrides)


def small_laptop(ram_gb: int = 2, **overrides) -> HardwareFacts:
    facts = HardwareFacts(
        cpu_vendor="AuthenticAMD",
        cpu_family=23,
        cpu_cores=4,
        mem_total_kb=ram_gb * GB_KB,
        distro_id="fedora",
        kernel_version="6.1",
        has_battery=True,
        graphical_session=True,
        available_congestion=("reno", "cubic"),
        cfs_tunables=True,
        nics=(
            NicFacts("wlan0", driver="iwlwifi", speed_mbps=300, mtu=1500, mtu_max=2304),
        ),
    )
    return replace(facts, **overrides)


def cloud_vm(provider: CloudProvider = CloudProvider.AWS,
             instance_type: str = "m5.24xlarge",
             tier: NetTier = NetTier.ULTRA, **overrides) -> HardwareFacts:
    facts = HardwareFacts(
        cpu_vendor="GenuineIntel",
        cpu_family=6,
        cpu_cores=8,
        mem_total_kb=32 * GB_KB,
        is_vm="kvm",
        cloud_provider=provider,
        instance_type=instance_type,
        instance_net_tier=tier,
        cloud_detection_method="dmi",
        cloud_confidence="high",
        distro_id="amzn",
        kernel_version="6.1",
        available_congestion=("reno", "cubic", "bbr"),
        storage=(
            StorageDevice("nvme0n1", is_ssd=True, cloud_class=CloudClass.EBS,
                          schedulers=("none", "mq-deadline"), nr_requests=63,
                          model="Amazon Elastic Block Store"),
        ),
        nics=(
            NicFacts("eth0", driver="ena", speed_mbps=25000, mtu=9001, mtu_max=9216,
                     ring_max_rx=16384, ring_max_tx=1024, queue_max=8,
                     priv_flags=("enable_llq",),
                     rx_queues=("rx-0",), tx_queues=("tx-0",)),
        ),
    )
    return replace(facts, **overrides)


def azure_accelerated(**overrides) -> HardwareFacts:
    """hv_netvsc eth0 with a mlx5 VF (enP1s1) underneath."""
    facts = cloud_vm(
        provider=CloudProvider.AZURE,
        instance_type="Standard_D16s_v5",
        tier=NetTier.ULTRA,
        distro_id="ubuntu",
        storage=(),
        nics=(
            NicFacts("eth0", driver="hv_netvsc", speed_mbps=50000, mtu=1500, mtu_max=9000,
                     backed_by="enP1s1", rx_queues=("rx-0",), tx_queues=("tx-0",)),
            NicFacts("enP1s1", driver="mlx5_core", speed_mbps=50000, mtu=1500, mtu_max=9978,
                     ring_max_rx=8192, ring_max_tx=8192, queue_max=16,
                     priv_flags=("rx_cqe_compress",)),
        ),
    )
    return replace(facts, **overrides)


def with_nic(facts: HardwareFacts, nic: NicFacts) -> HardwareFacts:
    return replace(facts, nics=(nic,))


def param_values(plan) -> Dict[str, object]:
    """{name: value} view of a plan's parameters."""
    return {name: entry.value for name, entry in plan.params.items()}
