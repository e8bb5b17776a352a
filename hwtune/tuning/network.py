"""
Network plan derivation.

derive_network_plan() turns (facts, profile, flags) into a frozen
TuningPlan for network-optimize. It is a pure function: it reads only its
arguments and never touches the host.

Phases:
1. Core parameters (buffers, budgets, backlogs) with precedence layers
2. Congestion control and queueing discipline
3. Sysctl drop-in (+ IPv6 and conntrack blocks)
4. Per-NIC tuning (rings, queues, MTU, offloads, coalescing, driver extras)
5. BPF JIT, RPS/RFS/XPS
6. Boot unit
"""

import logging
from typing import Optional, Set

from ..protocol.facts import CloudProvider, HardwareFacts, NetTier, NicFacts
from ..protocol.plan import Layer, TuningPlan
from .artifacts import (
    NETWORK_SERVICE,
    NETWORK_SYSCTL,
    SERVICE_UNITS,
    SysctlDocument,
    cpu_mask_for_cores,
    emit_sysctl,
    render_network_unit,
)
from .profiles import (
    HIGH_THROUGHPUT_BUDGET,
    HIGH_THROUGHPUT_BUFFER,
    NETWORK_PROFILES,
    RING_MIN,
    TIER_OVERRIDES,
    Profile,
    TuningFlags,
)

logger = logging.getLogger(__name__)

# ethtool -k feature name -> ethtool -K short name
OFFLOAD_FEATURES = (
    ("rx-checksumming", "rx"),
    ("tx-checksumming", "tx"),
    ("scatter-gather", "sg"),
    ("generic-segmentation-offload", "gso"),
    ("generic-receive-offload", "gro"),
    ("tcp-segmentation-offload", "tso"),
)

JUMBO_TIERS = (NetTier.ULTRA, NetTier.HIGH, NetTier.MEDIUM)

RPS_SOCK_FLOW_PER_CORE = 32768


def derive_network_plan(facts: HardwareFacts, profile: Profile,
                        flags: TuningFlags) -> TuningPlan:
    """
    Derive the network-optimize plan.

    Args:
        facts: Host snapshot
        profile: Resolved profile
        flags: User flags

    Returns:
        Frozen TuningPlan
    """
    plan = TuningPlan(tool="network", profile=profile.value, flags=flags.to_dict())
    low_latency = flags.effective_low_latency(profile)

    _core_params(plan, facts, profile, flags)
    congestion = _congestion(plan, flags, low_latency)

    plan.run("modprobe", f"tcp_{congestion}", label=f"congestion module tcp_{congestion}")
    _sysctl_files(plan, facts, low_latency)
    plan.run("sysctl", "--system", label="reload sysctl")

    tuned: Set[str] = set()
    for nic in facts.nics:
        _tune_nic(plan, facts, profile, nic, low_latency, tuned)

    if facts.bpf_jit_available:
        plan.write_value("/proc/sys/net/core/bpf_jit_enable", 1, label="BPF JIT")

    _rps(plan, facts)
    _conntrack_runtime(plan)

    plan.write_file(NETWORK_SERVICE, render_network_unit(profile.value),
                    label="boot unit")
    plan.run("systemctl", "daemon-reload")
    plan.run("systemctl", "enable", SERVICE_UNITS["network"])

    logger.debug("network plan: %d params, %d effects", len(plan.params), len(plan.effects))
    return plan.freeze()


# =============================================================================
# Parameters
# =============================================================================

def _core_params(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
                 flags: TuningFlags):
    base = NETWORK_PROFILES[profile]
    rule = f"profile:{profile.value}"

    plan.set_param("buffer_bytes", base.buffer_bytes, Layer.PROFILE, rule)
    plan.set_param("tcp_mem_max", facts.mem_total_kb // base.tcp_mem_fraction,
                   Layer.PROFILE, rule)
    plan.set_param("netdev_budget", base.netdev_budget, Layer.PROFILE, rule)
    plan.set_param("netdev_budget_usecs", base.netdev_budget_usecs, Layer.PROFILE, rule)
    plan.set_param("somaxconn", base.somaxconn, Layer.PROFILE, rule)
    plan.set_param("netdev_max_backlog", base.netdev_max_backlog, Layer.PROFILE, rule)
    plan.set_param("ring_scale_percent", base.ring_scale_percent, Layer.PROFILE, rule)

    tier = facts.instance_net_tier
    if profile == Profile.VM and tier != NetTier.NONE:
        override = TIER_OVERRIDES[tier]
        rule = f"cloud-tier:{tier.value}"
        plan.set_param("buffer_bytes", override.buffer_bytes, Layer.CLOUD_TIER, rule)
        plan.set_param("netdev_budget", override.netdev_budget, Layer.CLOUD_TIER, rule)
        plan.set_param("netdev_budget_usecs", override.netdev_budget_usecs,
                       Layer.CLOUD_TIER, rule)
        plan.set_param("somaxconn", override.somaxconn, Layer.CLOUD_TIER, rule)
        plan.set_param("netdev_max_backlog", override.netdev_max_backlog,
                       Layer.CLOUD_TIER, rule)
        logger.debug("cloud tier %s overrides vm defaults", tier.value)

    if flags.high_throughput:
        plan.set_param("buffer_bytes", HIGH_THROUGHPUT_BUFFER, Layer.FLAG, "high-throughput")
        plan.set_param("netdev_budget", HIGH_THROUGHPUT_BUDGET, Layer.FLAG, "high-throughput")


def _congestion(plan: TuningPlan, flags: TuningFlags, low_latency: bool) -> str:
    plan.set_param("congestion", "bbr", Layer.PROFILE, "default")
    if low_latency:
        plan.set_param("congestion", "cubic", Layer.FLAG, "low-latency")
    if flags.congestion:
        plan.set_param("congestion", flags.congestion, Layer.USER, "--congestion")

    congestion = plan.param("congestion")
    if congestion == "bbr":
        qdisc = "fq"
    elif low_latency:
        qdisc = "pfifo_fast"
    else:
        qdisc = "fq"
    plan.set_param("default_qdisc", qdisc, plan.params["congestion"].layer, "qdisc")
    return congestion


# =============================================================================
# Sysctl drop-in
# =============================================================================

def _sysctl_files(plan: TuningPlan, facts: HardwareFacts, low_latency: bool):
    buf = plan.param("buffer_bytes")
    mem_max = plan.param("tcp_mem_max")
    somaxconn = plan.param("somaxconn")
    cores = max(1, facts.cpu_cores)

    doc = SysctlDocument()
    doc.header(
        NETWORK_SYSCTL,
        f"Auto-generated by network-optimize (profile={plan.profile})",
        "",
        f"Buffer: {buf // (1024 * 1024)}MB, congestion: {plan.param('congestion')}, "
        f"low-latency: {'yes' if low_latency else 'no'}",
    )

    doc.section("Core buffers")
    doc.set("net.ipv4.tcp_mem", f"{mem_max // 4} {mem_max // 2} {mem_max}")
    doc.set("net.ipv4.tcp_rmem", f"4096 87380 {buf}")
    doc.set("net.core.rmem_default", 262144)
    doc.set("net.core.rmem_max", buf)
    doc.set("net.ipv4.tcp_wmem", f"4096 65536 {buf}")
    doc.set("net.core.wmem_default", 262144)
    doc.set("net.core.wmem_max", buf)
    doc.set("net.core.optmem_max", 65536)

    doc.section("Congestion control")
    doc.set("net.ipv4.tcp_congestion_control", plan.param("congestion"))
    doc.set("net.core.default_qdisc", plan.param("default_qdisc"))

    doc.section("TCP behaviour")
    for key in ("tcp_window_scaling", "tcp_timestamps", "tcp_sack", "tcp_dsack", "tcp_fack"):
        doc.set(f"net.ipv4.{key}", 1)
    doc.set("net.ipv4.tcp_fastopen", 3)
    doc.set("net.ipv4.tcp_mtu_probing", 0 if low_latency else 1)
    doc.set("net.ipv4.tcp_low_latency", 1 if low_latency else 0)
    doc.set("net.ipv4.tcp_keepalive_time", 600)
    doc.set("net.ipv4.tcp_keepalive_intvl", 60)
    doc.set("net.ipv4.tcp_keepalive_probes", 5)
    doc.set("net.ipv4.tcp_syn_retries", 2 if low_latency else 3)
    doc.set("net.ipv4.tcp_synack_retries", 2 if low_latency else 3)
    doc.set("net.ipv4.tcp_retries2", 5 if low_latency else 8)
    doc.set("net.ipv4.tcp_max_orphans", 65536)
    doc.set("net.ipv4.tcp_orphan_retries", 2)
    doc.set("net.ipv4.tcp_fin_timeout", 15)
    doc.set("net.ipv4.tcp_tw_reuse", 1)

    doc.section("Queues and backlogs")
    doc.set("net.core.somaxconn", somaxconn)
    doc.set("net.ipv4.tcp_max_syn_backlog", somaxconn)
    doc.set("net.core.netdev_max_backlog", plan.param("netdev_max_backlog"))
    doc.set("net.core.netdev_budget", plan.param("netdev_budget"))
    doc.set("net.core.netdev_budget_usecs", plan.param("netdev_budget_usecs"))
    doc.set("net.core.rps_sock_flow_entries", RPS_SOCK_FLOW_PER_CORE * cores)

    doc.section("Busy polling")
    doc.set("net.core.busy_poll", 50 if low_latency else 0)
    doc.set("net.core.busy_read", 50 if low_latency else 0)

    doc.section("Addressing and security")
    doc.set("net.ipv4.ip_local_port_range", "1024 65535")
    doc.set("net.ipv4.conf.all.rp_filter", 1)
    doc.set("net.ipv4.conf.default.rp_filter", 1)
    doc.set("net.ipv4.icmp_echo_ignore_broadcasts", 1)
    doc.set("net.ipv4.icmp_ignore_bogus_error_responses", 1)
    doc.set("net.ipv4.neigh.default.gc_thresh1", 1024)
    doc.set("net.ipv4.neigh.default.gc_thresh2", 4096)
    doc.set("net.ipv4.neigh.default.gc_thresh3", 8192)

    emit_sysctl(plan, NETWORK_SYSCTL, doc, label="sysctl drop-in")

    if facts.ipv6_enabled:
        v6 = SysctlDocument()
        v6.section("IPv6")
        v6.set("net.ipv6.conf.all.accept_ra", 0)
        v6.set("net.ipv6.conf.default.accept_ra", 0)
        v6.set("net.ipv6.neigh.default.gc_thresh1", 1024)
        v6.set("net.ipv6.neigh.default.gc_thresh2", 4096)
        v6.set("net.ipv6.neigh.default.gc_thresh3", 8192)
        emit_sysctl(plan, NETWORK_SYSCTL, v6, append=True, label="IPv6 block")

    if facts.conntrack_loaded:
        conn_max = conntrack_max(facts, Profile(plan.profile))
        plan.set_param("conntrack_max", conn_max, Layer.PROFILE, f"profile:{plan.profile}")
        plan.set_param("conntrack_buckets", conn_max // 4, Layer.PROFILE,
                       f"profile:{plan.profile}")
        ct = SysctlDocument()
        ct.section("Connection tracking")
        ct.set("net.netfilter.nf_conntrack_max", conn_max)
        ct.set("net.netfilter.nf_conntrack_tcp_timeout_established", 86400)
        ct.set("net.netfilter.nf_conntrack_tcp_timeout_time_wait", 30)
        emit_sysctl(plan, NETWORK_SYSCTL, ct, append=True, label="conntrack block")


def conntrack_max(facts: HardwareFacts, profile: Profile) -> int:
    """nf_conntrack_max from RAM, clamped per profile class."""
    ram_gb = facts.ram_gb_floor
    if profile == Profile.SERVER:
        return min(max(ram_gb * 8192, 262144), 2097152)
    if profile == Profile.VM:
        return min(max(ram_gb * 4096, 131072), 1048576)
    return max(ram_gb * 2048, 65536)


def _conntrack_runtime(plan: TuningPlan):
    conn_max = plan.param("conntrack_max")
    if conn_max is None:
        return
    plan.write_value("/proc/sys/net/netfilter/nf_conntrack_max", conn_max,
                     label=f"conntrack max={conn_max}")
    plan.write_value("/sys/module/nf_conntrack/parameters/hashsize",
                     plan.param("conntrack_buckets"), label="conntrack buckets")


# =============================================================================
# Per-NIC tuning
# =============================================================================

def mtu_target(facts: HardwareFacts, nic: NicFacts) -> Optional[int]:
    """
    Provider-specific MTU candidate, clamped to the device maximum.

    Returns:
        Target MTU, or None when the MTU should stay as it is
    """
    provider = facts.cloud_provider
    tier = facts.instance_net_tier

    if provider == CloudProvider.AWS:
        target = 9001 if tier in JUMBO_TIERS else 1500
    elif provider == CloudProvider.AZURE:
        if nic.driver in ("mlx5_core", "mlx4_en"):
            target = 9000
        elif nic.driver == "hv_netvsc" and nic.backed_by:
            target = 9000
        else:
            target = 1500
    elif provider == CloudProvider.GCP:
        target = 8896 if nic.driver == "gve" else 1460
    elif provider == CloudProvider.ALIBABA:
        target = 8500 if tier in JUMBO_TIERS else 1500
    elif nic.mtu_max >= 9000:
        target = 9000
    else:
        return None

    return min(target, nic.mtu_max)


def txqueuelen_for(speed_mbps: int, profile: Profile) -> int:
    if speed_mbps >= 10000:
        qlen = 10000
    elif speed_mbps >= 1000:
        qlen = 5000
    else:
        qlen = 1000
    if profile == Profile.LAPTOP:
        qlen //= 2
    return qlen


def _tune_nic(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
              nic: NicFacts, low_latency: bool, tuned: Set[str]):
    if nic.iface in tuned:
        return
    tuned.add(nic.iface)
    iface = nic.iface
    scale = plan.param("ring_scale_percent")

    # Rings
    if nic.ring_max_rx > 0:
        rx = max(nic.ring_max_rx * scale // 100, RING_MIN)
        tx = max(nic.ring_max_tx * scale // 100, RING_MIN)
        plan.run("ethtool", "-G", iface, "rx", rx, "tx", tx,
                 label=f"{iface}: rings rx={rx} tx={tx}")

    # Queues
    if nic.queue_max > 1:
        queues = min(nic.queue_max, max(1, facts.cpu_cores))
        if profile == Profile.LAPTOP:
            queues //= 2
        queues = max(1, queues)
        plan.run("ethtool", "-L", iface, "combined", queues,
                 label=f"{iface}: {queues} combined queues")

    # MTU
    if not low_latency and nic.speed_mbps >= 1000 and nic.mtu_max >= 1500:
        target = mtu_target(facts, nic)
        if target is not None and target != nic.mtu:
            plan.run("ip", "link", "set", iface, "mtu", target,
                     label=f"{iface}: mtu {nic.mtu} -> {target}")

    qlen = txqueuelen_for(nic.speed_mbps, profile)
    plan.run("ip", "link", "set", iface, "txqueuelen", qlen,
             label=f"{iface}: txqueuelen {qlen}")

    # Offloads
    for feature, short in OFFLOAD_FEATURES:
        if nic.feature(feature) == "off":
            plan.run("ethtool", "-K", iface, short, "on", label=f"{iface}: {short} on")
    if not low_latency:
        plan.run("ethtool", "-K", iface, "lro", "on", label=f"{iface}: lro on")

    # Interrupt coalescing
    if low_latency:
        plan.run("ethtool", "-C", iface, "adaptive-rx", "off", "adaptive-tx", "off",
                 "rx-usecs", 0, "tx-usecs", 0, label=f"{iface}: coalescing off")
    elif nic.adaptive_coalesce:
        plan.run("ethtool", "-C", iface, "adaptive-rx", "on", "adaptive-tx", "on",
                 label=f"{iface}: adaptive coalescing")

    if nic.eee_supported:
        if low_latency or profile in (Profile.LATENCY, Profile.SERVER):
            plan.run("ethtool", "--set-eee", iface, "eee", "off", label=f"{iface}: EEE off")
        elif profile == Profile.LAPTOP:
            plan.run("ethtool", "--set-eee", iface, "eee", "on", label=f"{iface}: EEE on")

    if profile == Profile.SERVER:
        plan.run("ethtool", "-A", iface, "rx", "on", "tx", "on",
                 label=f"{iface}: flow control")

    _driver_extras(plan, facts, profile, nic, low_latency, tuned)


def _priv_flag(plan: TuningPlan, nic: NicFacts, flag: str):
    if nic.has_priv_flag(flag):
        plan.run("ethtool", "--set-priv-flags", nic.iface, flag, "on",
                 label=f"{nic.iface}: {flag}")


def _driver_extras(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
                   nic: NicFacts, low_latency: bool, tuned: Set[str]):
    iface, driver = nic.iface, nic.driver

    if driver == "ena":
        _priv_flag(plan, nic, "enable_llq")
        _priv_flag(plan, nic, "enable_ena_admin")
        if low_latency:
            plan.run("ethtool", "-G", iface, "rx", 256, "tx", 256,
                     label=f"{iface}: ena low-latency rings")
        elif nic.ring_max_rx >= 8192:
            plan.run("ethtool", "-G", iface, "rx", nic.ring_max_rx, "tx", nic.ring_max_tx,
                     label=f"{iface}: ena max rings")
        plan.run("ethtool", "-K", iface, "rxhash", "on", label=f"{iface}: rxhash")

    elif driver == "efa":
        _priv_flag(plan, nic, "enable_llq")
        plan.run("ethtool", "-G", iface, "rx", 16384, "tx", 16384,
                 label=f"{iface}: efa rings")

    elif driver == "virtio_net":
        plan.run("ethtool", "-K", iface, "rx-gro-hw", "on", "tx-nocache-copy", "off",
                 label=f"{iface}: virtio offloads")
        if nic.queue_max > 1:
            plan.run("ethtool", "-L", iface, "combined", nic.queue_max,
                     label=f"{iface}: all virtio queues")
        if facts.cloud_provider == CloudProvider.ALIBABA:
            plan.run("ethtool", "-K", iface, "tx-udp_tnl-segmentation", "on",
                     label=f"{iface}: tunnel offload")

    elif driver == "hv_netvsc":
        vf = facts.nic(nic.backed_by) if nic.backed_by else None
        if vf is not None:
            logger.debug("%s is backed by %s, tuning the VF", iface, vf.iface)
            _tune_nic(plan, facts, profile, vf, low_latency, tuned)
        else:
            plan.run("ethtool", "-K", iface, "lro", "on", "sg", "on",
                     label=f"{iface}: netvsc offloads")

    elif driver == "gve":
        plan.run("ethtool", "-K", iface, "rxhash", "on", label=f"{iface}: rxhash")
        if nic.queue_max:
            plan.run("ethtool", "-L", iface, "combined", nic.queue_max,
                     label=f"{iface}: all gve queues")

    elif driver in ("mlx5_core", "mlx4_en"):
        _priv_flag(plan, nic, "rx_cqe_compress")
        _priv_flag(plan, nic, "tx_cqe_compress")
        plan.run("ethtool", "-K", iface, "rxhash", "on", label=f"{iface}: rxhash")

    elif driver in ("i40e", "ice", "ixgbe"):
        _priv_flag(plan, nic, "flow-director-atr")
        plan.run("ethtool", "-K", iface, "ntuple", "on", "rxhash", "on",
                 label=f"{iface}: ntuple/rxhash")

    elif driver.startswith("aliyun_") or driver == "erdma":
        plan.run("ethtool", "-K", iface, "rxhash", "on", label=f"{iface}: rxhash")
        if nic.queue_max > 1:
            plan.run("ethtool", "-L", iface, "combined", nic.queue_max,
                     label=f"{iface}: all queues")


# =============================================================================
# RPS / RFS / XPS
# =============================================================================

def _rps(plan: TuningPlan, facts: HardwareFacts):
    cores = facts.cpu_cores
    if cores <= 1:
        return

    mask = cpu_mask_for_cores(cores)
    flow_cnt = RPS_SOCK_FLOW_PER_CORE // cores
    for nic in facts.nics:
        base = f"/sys/class/net/{nic.iface}/queues"
        for queue in nic.rx_queues:
            plan.write_value(f"{base}/{queue}/rps_cpus", mask, label=f"{nic.iface} {queue} RPS")
            plan.write_value(f"{base}/{queue}/rps_flow_cnt", flow_cnt,
                             label=f"{nic.iface} {queue} RFS")
        for queue in nic.tx_queues:
            plan.write_value(f"{base}/{queue}/xps_cpus", mask, label=f"{nic.iface} {queue} XPS")

    plan.write_value("/proc/sys/net/core/rps_sock_flow_entries",
                     RPS_SOCK_FLOW_PER_CORE * cores, label="RFS flow table")

    if facts.irqbalance_running:
        plan.note("irqbalance is running; it may rebalance IRQs over the RPS masks")
