"""
System plan derivation.

derive_system_plan() turns (facts, profile, flags) into a frozen TuningPlan
for system-optimize. Pure: no host access, no wall-clock time.

Parameters are resolved first (profile table, then cloud overrides, then
flags), so every effect below reads final values:
1. CPU (governor, boost, SMT, GRUB, C-states)
2. Memory (THP, reclaim, KSM, zswap, NUMA, EPP)
3. Scheduler and kernel-version specific nodes
4. Block devices
5. Filesystems, IRQ balancing, limits, services, module blacklist
6. Security relaxation
7. Sysctl drop-in and boot unit
"""

import logging
import re
from typing import Dict, List, Tuple

from ..protocol.facts import CloudClass, CloudProvider, HardwareFacts, StorageDevice
from ..protocol.plan import Layer, TuningPlan
from .artifacts import (
    GRUB_DEFAULT,
    LATENCY_BOOT_PARAMS,
    MITIGATION_STRIP,
    SERVICE_UNITS,
    SYSTEM_JOURNALD,
    SYSTEM_LIMITS,
    SYSTEM_MODPROBE,
    SYSTEM_SERVICE,
    SYSTEM_SYSCTL,
    SYSTEMD_SYSTEM_DROPIN,
    SYSTEMD_USER_DROPIN,
    SysctlDocument,
    emit_sysctl,
    isolation_params,
    mitigation_params,
    render_blacklist,
    render_journald,
    render_limits,
    render_manager_dropin,
    render_system_unit,
    rewrite_grub,
)
from .profiles import (
    NOFILE_MAX,
    NOFILE_MIN,
    NPROC_MAX,
    NPROC_MIN,
    SYSTEM_PROFILES,
    VM_DIRTY_RATIO,
    Profile,
    SystemProfile,
    TuningFlags,
    clamp,
)

logger = logging.getLogger(__name__)

CPU_SYSFS = "/sys/devices/system/cpu"
THP_SYSFS = "/sys/kernel/mm/transparent_hugepage"
ZSWAP_SYSFS = "/sys/module/zswap/parameters"

# Services that are safe to disable, with the profile letters they apply to
NON_ESSENTIAL_SERVICES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("cups", "cups-browsed"), "sv"),
    (("avahi-daemon",), "sv"),
    (("ModemManager",), "svw"),
    (("bluetooth",), "sv"),
    (("accounts-daemon",), "sv"),
    (("packagekit",), "svl"),
    (("snapd", "snapd.socket"), "sv"),
    (("unattended-upgrades",), "sv"),
    (("apt-daily.timer", "apt-daily-upgrade.timer"), "sv"),
    (("thermald",), "sv"),
    (("power-profiles-daemon",), "sv"),
    (("switcheroo-control",), "svw"),
    (("bolt",), "sv"),
    (("fwupd",), "sv"),
    (("colord",), "sv"),
    (("geoclue",), "sv"),
    (("whoopsie",), "svwl"),
    (("apport",), "svwl"),
    (("kerneloops",), "svwl"),
    (("speech-dispatcher",), "sv"),
    (("brltty",), "svwl"),
    (("pcscd",), "svw"),
    (("wpa_supplicant",), "sv"),
)

# Stopped by --relax-security when active
MONITORING_SERVICES = ("auditd", "rsyslog", "syslog-ng", "netdata", "atop")

CLOUD_NR_REQUESTS_NETWORK = 256
CLOUD_READAHEAD_NETWORK = 128
CLOUD_NR_REQUESTS_LOCAL = 2048
CLOUD_READAHEAD_LOCAL = 512
NR_REQUESTS_MIN = 32


def probed_services() -> Tuple[str, ...]:
    """Every unit whose active state the system plan depends on."""
    names: List[str] = []
    for services, _ in NON_ESSENTIAL_SERVICES:
        names.extend(services)
    names.extend(MONITORING_SERVICES)
    names.append("irqbalance")
    return tuple(names)


def kernel_version_tuple(version: str) -> Tuple[int, int]:
    match = re.match(r"^(\d+)\.(\d+)", version or "")
    if not match:
        return (0, 0)
    return int(match.group(1)), int(match.group(2))


def derive_system_plan(facts: HardwareFacts, profile: Profile,
                       flags: TuningFlags) -> TuningPlan:
    """
    Derive the system-optimize plan.

    Args:
        facts: Host snapshot
        profile: Resolved profile
        flags: User flags (dangerous ones already confirmed or dropped)

    Returns:
        Frozen TuningPlan
    """
    plan = TuningPlan(tool="system", profile=profile.value, flags=flags.to_dict())
    table = SYSTEM_PROFILES[profile]
    low_latency = flags.effective_low_latency(profile)
    snippets = SysctlDocument()

    _resolve_params(plan, facts, profile, table, low_latency)

    _cpu(plan, facts, profile, table, flags, low_latency)
    _memory(plan, facts, profile, table, flags)
    _scheduler(plan, facts, profile, table, snippets)
    _kernel_features(plan, facts, profile, snippets)
    _storage(plan, facts, profile, table)
    _filesystems(plan, facts, flags, snippets)
    _irq_balance(plan, facts, profile)
    _limits(plan, profile)
    if flags.disable_services:
        _disable_services(plan, facts, table, flags)
    plan.write_file(SYSTEM_MODPROBE,
                    render_blacklist(table.blacklist_desktop, facts.usb_nic_loaded),
                    label="module blacklist")
    _cloud(plan, facts)
    if flags.relax_security:
        _relax_security(plan, facts, snippets)

    _sysctl_files(plan, facts, snippets)
    plan.run("sysctl", "--system", label="reload sysctl")

    disk_scheduler = {
        Profile.WORKSTATION: "mq-deadline",
        Profile.LAPTOP: "kyber",
    }.get(profile, "none")
    plan.write_file(SYSTEM_SERVICE, render_system_unit(
        profile.value, table.governor, table.turbo, plan.param("thp"),
        disk_scheduler, low_latency,
    ), label="boot unit")
    plan.run("systemctl", "daemon-reload")
    plan.run("systemctl", "enable", SERVICE_UNITS["system"])

    logger.debug("system plan: %d params, %d effects", len(plan.params), len(plan.effects))
    return plan.freeze()


# =============================================================================
# Parameters
# =============================================================================

def memory_tier(ram_gb: int, swappiness_base: int, dirty_base: int) -> Dict[str, int]:
    """RAM-sized VM writeback and swap settings."""
    if ram_gb >= 64:
        return dict(swappiness=swappiness_base // 2, dirty_ratio=dirty_base + 5,
                    dirty_background_ratio=5, vfs_cache_pressure=30,
                    dirty_expire_centisecs=6000, dirty_writeback_centisecs=1000)
    if ram_gb >= 16:
        return dict(swappiness=swappiness_base, dirty_ratio=dirty_base,
                    dirty_background_ratio=5, vfs_cache_pressure=50,
                    dirty_expire_centisecs=3000, dirty_writeback_centisecs=500)
    if ram_gb >= 4:
        return dict(swappiness=swappiness_base + 20, dirty_ratio=max(dirty_base - 5, 5),
                    dirty_background_ratio=3, vfs_cache_pressure=75,
                    dirty_expire_centisecs=1500, dirty_writeback_centisecs=300)
    return dict(swappiness=swappiness_base + 30, dirty_ratio=5,
                dirty_background_ratio=2, vfs_cache_pressure=100,
                dirty_expire_centisecs=1000, dirty_writeback_centisecs=200)


def _resolve_params(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
                    table: SystemProfile, low_latency: bool):
    rule = f"profile:{profile.value}"
    ram_gb = facts.ram_gb_ceil
    kb = facts.mem_total_kb
    cores = max(1, facts.cpu_cores)

    dirty_base = table.dirty_ratio_base
    if profile == Profile.VM:
        dirty_base = VM_DIRTY_RATIO.get(facts.cloud_provider.value, dirty_base)

    for name, value in memory_tier(ram_gb, table.swappiness_base, dirty_base).items():
        plan.set_param(name, value, Layer.PROFILE, rule)
    plan.set_param("min_free_kbytes", clamp(kb // 100, 65536, 262144), Layer.PROFILE, rule)
    plan.set_param("thp", table.thp, Layer.PROFILE, rule)
    plan.set_param("watermark_scale_factor", min(200 + ram_gb, 500), Layer.PROFILE, rule)
    plan.set_param("overcommit_ratio", 50 + ram_gb, Layer.PROFILE, rule)

    # Limits
    nofile = clamp(ram_gb * table.nofile_per_gb, NOFILE_MIN, NOFILE_MAX)
    nproc = clamp(cores * table.nproc_per_core, NPROC_MIN, NPROC_MAX)
    plan.set_param("nofile", nofile, Layer.PROFILE, rule)
    plan.set_param("nproc", nproc, Layer.PROFILE, rule)
    plan.set_param("memlock", kb * 1024 // 2, Layer.PROFILE, rule)
    plan.set_param("file_max", max(kb * 10, 2097152), Layer.PROFILE, rule)

    # Scheduler capability branch
    if facts.cfs_tunables:
        autogroup = 1 if cores <= 4 else 0
    else:
        autogroup = 0 if profile == Profile.SERVER else 1
    plan.set_param("sched_autogroup_enabled", autogroup, Layer.PROFILE, rule)

    migration = min(cores * 500000, 10000000)
    if facts.is_amd:
        migration //= 2
    plan.set_param("sched_migration_cost_ns", migration, Layer.PROFILE, rule)

    numa = facts.numa_nodes > 1
    plan.set_param("zone_reclaim_mode", 0 if (not numa or profile == Profile.SERVER) else 1,
                   Layer.PROFILE, rule)
    plan.set_param("numa_balancing", 1 if numa else 0, Layer.PROFILE, rule)
    plan.set_param("sched_rt_runtime_us", 950000, Layer.PROFILE, rule)
    plan.set_param("watchdog", 1, Layer.PROFILE, rule)
    plan.set_param("hung_task_timeout_secs", 120, Layer.PROFILE, rule)

    # Cloud overrides
    if facts.cloud_provider != CloudProvider.NONE:
        cloud = f"cloud:{facts.cloud_provider.value}"
        plan.set_param("thp", "never", Layer.CLOUD_TIER, cloud)
        plan.set_param("swappiness", min(plan.param("swappiness"), 10), Layer.CLOUD_TIER, cloud)
        if facts.cloud_provider == CloudProvider.GCP and \
                any(d.name.startswith("nvme") for d in facts.storage):
            plan.set_param("dirty_ratio", 20, Layer.CLOUD_TIER, cloud)
        if facts.cloud_provider == CloudProvider.AZURE:
            plan.set_param("numa_balancing", 0, Layer.CLOUD_TIER, cloud)

    if low_latency:
        plan.set_param("numa_balancing", 0, Layer.FLAG, "low-latency")
        plan.set_param("sched_rt_runtime_us", -1, Layer.FLAG, "low-latency")
        plan.set_param("watchdog", 0, Layer.FLAG, "low-latency")
        plan.set_param("hung_task_timeout_secs", 0, Layer.FLAG, "low-latency")


# =============================================================================
# CPU
# =============================================================================

def _cpu(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
         table: SystemProfile, flags: TuningFlags, low_latency: bool):
    cores = max(1, facts.cpu_cores)
    for cpu in range(cores):
        plan.write_value(f"{CPU_SYSFS}/cpu{cpu}/cpufreq/scaling_governor", table.governor,
                         label=f"governor cpu{cpu}")

    if facts.is_intel:
        if table.turbo:
            plan.write_value(f"{CPU_SYSFS}/intel_pstate/no_turbo", 0, label="Intel turbo on")
            plan.write_value(f"{CPU_SYSFS}/intel_pstate/hwp_dynamic_boost", 1,
                             label="HWP dynamic boost")
        else:
            plan.write_value(f"{CPU_SYSFS}/intel_pstate/no_turbo", 1, label="Intel turbo off")
    elif facts.is_amd:
        plan.write_value(f"{CPU_SYSFS}/cpufreq/boost", 1 if table.turbo else 0,
                         label="AMD boost")

    if flags.disable_smt:
        if facts.smt_control and facts.smt_control != "notsupported":
            plan.write_value(f"{CPU_SYSFS}/smt/control", "off", label="SMT off")
        else:
            plan.note("SMT control not available")
    elif facts.smt_control == "off":
        plan.write_value(f"{CPU_SYSFS}/smt/control", "on", label="SMT on")

    _grub(plan, facts, profile, flags)

    if low_latency:
        for cpu in range(cores):
            for state in range(2, facts.cpuidle_states):
                plan.write_value(f"{CPU_SYSFS}/cpu{cpu}/cpuidle/state{state}/disable", 1,
                                 label=f"cpu{cpu} C{state} off")
        plan.write_value("/proc/sys/kernel/watchdog", 0, label="watchdog off")
        plan.write_value("/proc/sys/kernel/nmi_watchdog", 0, label="NMI watchdog off")
        plan.write_value("/proc/sys/kernel/hung_task_timeout_secs", 0,
                         label="hung task detector off")


def _grub(plan: TuningPlan, facts: HardwareFacts, profile: Profile, flags: TuningFlags):
    original = facts.grub_default
    if not original:
        if flags.disable_mitigations or flags.isolate_cpus or profile == Profile.LATENCY:
            plan.note(f"{GRUB_DEFAULT} not found; boot parameters unchanged")
        return

    content = original
    if flags.disable_mitigations:
        if facts.is_virtual:
            plan.note(f"Disabling mitigations in a VM ({facts.is_vm}); the host may still be vulnerable")
        content, _ = rewrite_grub(content, mitigation_params(facts.cpu_vendor, facts.cpu_family),
                                  strip=MITIGATION_STRIP)
    if flags.isolate_cpus:
        content, _ = rewrite_grub(content, isolation_params(flags.isolate_cpus))
    if profile == Profile.LATENCY and "processor.max_cstate=1" not in content:
        content, _ = rewrite_grub(content, LATENCY_BOOT_PARAMS)

    if content != original:
        plan.write_file(GRUB_DEFAULT, content, label="kernel command line")
        plan.run("update-grub", label="regenerate grub.cfg")
        plan.note("Kernel command line changed; reboot required")


# =============================================================================
# Memory
# =============================================================================

def _memory(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
            table: SystemProfile, flags: TuningFlags):
    thp = plan.param("thp")
    if facts.thp_available:
        plan.write_value(f"{THP_SYSFS}/enabled", thp, label=f"THP {thp}")
        if thp == "madvise":
            plan.write_value(f"{THP_SYSFS}/defrag", "defer+madvise", label="THP defrag")

    if flags.reclaim_memory:
        if facts.hugepages_total > 0 and facts.hugepages_free == facts.hugepages_total:
            plan.write_value("/proc/sys/vm/nr_hugepages", 0, label="release huge pages",
                             verify=False)
        plan.write_value("/proc/sys/vm/compact_memory", 1, label="compact memory", verify=False)
        if facts.slab_kb // 1024 > facts.ram_gb_ceil * 100:
            plan.run("sync")
            plan.write_value("/proc/sys/vm/drop_caches", 2, label="trim slab", verify=False)

    if not facts.is_virtual:
        plan.write_value("/sys/kernel/mm/ksm/run", 0, label="KSM off (bare metal)")

    if facts.zswap_available:
        if table.zswap_pool_percent == 0:
            plan.write_value(f"{ZSWAP_SYSFS}/enabled", 0, label="zswap off")
        elif not facts.swap_active:
            plan.note("zswap available but no swap devices detected; skipping zswap")
        else:
            plan.write_value(f"{ZSWAP_SYSFS}/enabled", 1, label="zswap on")
            plan.write_value(f"{ZSWAP_SYSFS}/compressor", "lz4", label="zswap lz4")
            if profile in (Profile.SERVER, Profile.VM):
                plan.write_value(f"{ZSWAP_SYSFS}/zpool", "z3fold", label="zswap z3fold")
            plan.write_value(f"{ZSWAP_SYSFS}/max_pool_percent", table.zswap_pool_percent,
                             label=f"zswap {table.zswap_pool_percent}%")

    if facts.numa_nodes > 1:
        plan.write_value("/proc/sys/vm/zone_reclaim_mode", plan.param("zone_reclaim_mode"),
                         label="zone reclaim")
        plan.write_value("/proc/sys/kernel/numa_balancing", plan.param("numa_balancing"),
                         label="NUMA balancing")
    elif facts.cloud_provider == CloudProvider.AZURE:
        plan.write_value("/proc/sys/kernel/numa_balancing", 0, label="NUMA balancing off (Azure)")

    if facts.is_intel:
        for cpu in range(max(1, facts.cpu_cores)):
            plan.write_value(f"{CPU_SYSFS}/cpu{cpu}/cpufreq/energy_performance_preference",
                             table.epp, label=f"EPP cpu{cpu}")


# =============================================================================
# Scheduler / kernel features
# =============================================================================

def _scheduler(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
               table: SystemProfile, snippets: SysctlDocument):
    if facts.cfs_tunables:
        snippets.section("CFS scheduler")
        snippets.set("kernel.sched_latency_ns", table.sched_latency_ns)
        snippets.set("kernel.sched_min_granularity_ns", table.sched_min_granularity_ns)
        snippets.set("kernel.sched_wakeup_granularity_ns", table.sched_wakeup_granularity_ns)
        snippets.set("kernel.sched_child_runs_first", 0)
        snippets.set("kernel.sched_tunable_scaling", 1)
    else:
        snippets.section("EEVDF scheduler")
        snippets.comment("CFS latency/granularity tunables are gone; autogroup is set above.")
        if facts.eevdf_base_slice:
            slice_ns = {Profile.SERVER: 3000000, Profile.VM: 2000000}.get(profile, 750000)
            plan.write_value("/proc/sys/kernel/sched_base_slice_ns", slice_ns,
                             label="EEVDF base slice")

    plan.write_value("/proc/sys/kernel/sched_rt_runtime_us", plan.param("sched_rt_runtime_us"),
                     label="RT throttling")

    snippets.section("Debug features")
    snippets.set("kernel.sysrq", 1)
    snippets.set("kernel.core_uses_pid", 1)
    snippets.set("kernel.randomize_va_space", 2)
    snippets.set("debug.exception-trace", 0)
    plan.write_value("/proc/sys/kernel/ftrace_enabled", 0, label="ftrace off")


def _kernel_features(plan: TuningPlan, facts: HardwareFacts, profile: Profile,
                     snippets: SysctlDocument):
    version = kernel_version_tuple(facts.kernel_version)
    if version < (6, 0):
        return

    # reads back as a feature mask (0x0007)
    plan.write_value("/sys/kernel/mm/lru_gen/enabled", "Y", label="MGLRU", verify=False)
    plan.write_value("/sys/kernel/mm/lru_gen/min_ttl_ms",
                     0 if profile in (Profile.SERVER, Profile.VM) else 1000,
                     label="MGLRU min_ttl")

    if facts.per_vma_lock:
        plan.write_value("/proc/sys/vm/per_vma_lock", 1, label="per-VMA locks")
        snippets.set("vm.per_vma_lock", 1)

    if facts.numa_nodes > 1:
        plan.write_value("/sys/kernel/mm/numa/demotion_enabled", 1, label="NUMA demotion")

    if facts.is_amd:
        plan.write_value(f"{CPU_SYSFS}/amd_pstate/prefcore", 1, label="AMD preferred core",
                         verify=False)
        plan.write_value(f"{CPU_SYSFS}/amd_pstate/status",
                         "guided" if profile == Profile.LAPTOP else "active",
                         label="AMD P-State")

    if version >= (6, 12):
        proactive = {Profile.SERVER: 20, Profile.VM: 10}.get(profile, 5)
        plan.write_value("/proc/sys/vm/compaction_proactiveness", proactive,
                         label="compaction proactiveness")


# =============================================================================
# Block devices
# =============================================================================

def readahead_base(profile: Profile, ram_gb: int) -> int:
    if profile == Profile.SERVER:
        return 512 if ram_gb >= 32 else 256
    if profile == Profile.VM:
        return 256 if ram_gb >= 16 else 128
    if profile == Profile.WORKSTATION:
        return 128
    return 64


def pick_scheduler(device: StorageDevice, table: SystemProfile):
    preferred, fallback = table.scheduler_pref["ssd" if device.is_ssd else "hdd"]
    for candidate in (preferred, fallback):
        if device.supports(candidate):
            return candidate
    return None


def cloud_queue_overrides(provider: CloudProvider, device: StorageDevice) -> Dict[str, object]:
    """
    Cloud queue settings for one device.

    Provider-wide device rules come first; the storage class of the device
    is more specific and overrides them.
    """
    values: Dict[str, object] = {}
    name = device.name

    if provider == CloudProvider.AWS and name.startswith("nvme"):
        values.update(add_random=0, nomerges=2)
    elif provider == CloudProvider.AZURE and name.startswith("sd"):
        values.update(nr_requests=256, read_ahead_kb=128)
    elif provider == CloudProvider.GCP and name.startswith("nvme"):
        values.update(scheduler="none", add_random=0)
    elif provider == CloudProvider.ALIBABA and name.startswith("vd"):
        values.update(nr_requests=256)

    cls = device.cloud_class
    if cls.is_network_attached:
        values.update(nr_requests=CLOUD_NR_REQUESTS_NETWORK,
                      read_ahead_kb=CLOUD_READAHEAD_NETWORK)
        if cls != CloudClass.CLOUD_DISK:
            values["nomerges"] = 2
    elif cls.is_instance_local:
        values.update(nr_requests=CLOUD_NR_REQUESTS_LOCAL,
                      read_ahead_kb=CLOUD_READAHEAD_LOCAL, iostats=0)
        if cls in (CloudClass.INSTANCE_STORE, CloudClass.GCP_LOCAL_SSD):
            values["max_sectors_kb"] = 512
        if cls == CloudClass.INSTANCE_STORE:
            values.update(nomerges=0, rotational=0)
    return values


def _storage(plan: TuningPlan, facts: HardwareFacts, profile: Profile, table: SystemProfile):
    ra_base = readahead_base(profile, facts.ram_gb_ceil)
    rule = f"profile:{profile.value}"

    for device in facts.storage:
        queue = f"/sys/block/{device.name}/queue"
        settings: Dict[str, object] = {}

        scheduler = pick_scheduler(device, table)
        if scheduler:
            settings["scheduler"] = scheduler
        settings["nr_requests"] = max(device.nr_requests * table.nr_requests_scale // 100,
                                      NR_REQUESTS_MIN)
        settings["read_ahead_kb"] = max(ra_base // 2, 32) if device.is_ssd else ra_base * 2
        for key, value in settings.items():
            plan.set_param(f"{device.name}.{key}", value, Layer.PROFILE, rule)

        for key, value in cloud_queue_overrides(facts.cloud_provider, device).items():
            if key == "scheduler" and not device.supports(str(value)):
                continue
            plan.set_param(f"{device.name}.{key}", value, Layer.CLOUD_TIER, "cloud-storage")
            settings[key] = value

        settings["add_random"] = 0
        settings["rq_affinity"] = 2

        for key, value in settings.items():
            plan.write_value(f"{queue}/{key}", value, label=f"{device.name}: {key}={value}")


# =============================================================================
# Filesystems, IRQs, limits, services
# =============================================================================

def _filesystems(plan: TuningPlan, facts: HardwareFacts, flags: TuningFlags,
                 snippets: SysctlDocument):
    if facts.xfs_mounted:
        snippets.section("Filesystem (XFS)")
        snippets.set("fs.xfs.xfssyncd_centisecs", 3000)
        snippets.set("fs.xfs.filestream_centisecs", 3000)
        snippets.set("fs.xfs.speculative_prealloc_lifetime", 300)

    if not flags.apply_fs_tuning:
        return

    for mount in facts.mounts:
        if mount.fstype == "ext4" and mount.mountpoint != "/":
            plan.run("tune2fs", "-m", 1, mount.device,
                     label=f"{mount.mountpoint}: reserved blocks 1%")
        elif mount.fstype == "xfs":
            plan.run("xfs_io", "-c", "extsize 1m", mount.mountpoint,
                     label=f"{mount.mountpoint}: extent size hint")
    if any(d.is_ssd for d in facts.storage):
        plan.run("fstrim", "-av", label="TRIM mounted filesystems")


def _irq_balance(plan: TuningPlan, facts: HardwareFacts, profile: Profile):
    if facts.cpu_cores <= 1:
        return
    if profile in (Profile.SERVER, Profile.VM, Profile.WORKSTATION):
        plan.run("systemctl", "enable", "irqbalance", label="irqbalance enabled")
        plan.run("systemctl", "restart", "irqbalance")
    elif profile == Profile.LAPTOP and facts.irqbalance_running:
        plan.run("systemctl", "stop", "irqbalance", label="irqbalance stopped")
        plan.run("systemctl", "disable", "irqbalance")


def _limits(plan: TuningPlan, profile: Profile):
    nofile, nproc, memlock = plan.param("nofile"), plan.param("nproc"), plan.param("memlock")
    plan.write_file(SYSTEM_LIMITS, render_limits(profile.value, nofile, nproc, memlock),
                    label="PAM limits")
    for path in (SYSTEMD_SYSTEM_DROPIN, SYSTEMD_USER_DROPIN):
        plan.write_file(path, render_manager_dropin(path, profile.value, nofile, nproc, memlock),
                        label="systemd manager limits")


def services_to_disable(facts: HardwareFacts, letter: str) -> List[str]:
    active = set(facts.active_services)
    names = []
    for services, letters in NON_ESSENTIAL_SERVICES:
        if letter not in letters:
            continue
        names.extend(s for s in services if s in active)
    return names


def _disable_services(plan: TuningPlan, facts: HardwareFacts, table: SystemProfile,
                      flags: TuningFlags):
    for name in services_to_disable(facts, table.service_letter):
        plan.run("systemctl", "stop", name, label=f"{name} stopped")
        plan.run("systemctl", "disable", name)
        plan.run("systemctl", "mask", name)
    plan.run("systemctl", "reset-failed")
    if flags.reclaim_memory:
        plan.run("sync")
        plan.write_value("/proc/sys/vm/drop_caches", 3, label="drop page cache", verify=False)


def _cloud(plan: TuningPlan, facts: HardwareFacts):
    if facts.cloud_provider == CloudProvider.NONE:
        return
    plan.write_value("/sys/kernel/mm/ksm/run", 0, label="KSM off (cloud)")


def _relax_security(plan: TuningPlan, facts: HardwareFacts, snippets: SysctlDocument):
    active = set(facts.active_services)
    for name in MONITORING_SERVICES:
        if name in active:
            plan.run("systemctl", "stop", name, label=f"{name} stopped")
            plan.run("systemctl", "disable", name)

    snippets.section("Security relaxation")
    snippets.set("kernel.audit_enabled", 0)
    snippets.set("kernel.dmesg_restrict", 0)
    snippets.set("kernel.kptr_restrict", 0)
    snippets.set("kernel.perf_event_paranoid", 0)
    snippets.set("kernel.yama.ptrace_scope", 0)
    snippets.set("kernel.printk", "3 3 3 3")
    snippets.set("kernel.sched_schedstats", 0)

    plan.write_value("/proc/sys/kernel/audit_enabled", 0, label="kernel audit off")
    plan.write_value("/proc/sys/kernel/printk", "3 3 3 3", label="printk errors only")
    plan.write_value("/proc/sys/kernel/sched_schedstats", 0, label="schedstats off")
    plan.write_value("/proc/sys/kernel/nmi_watchdog", 0, label="NMI watchdog off")
    plan.write_value("/proc/sys/vm/stat_interval", 10, label="vmstat interval")

    plan.write_file(SYSTEM_JOURNALD, render_journald(), label="journald volatile storage")
    plan.run("systemctl", "restart", "systemd-journald")


# =============================================================================
# Sysctl drop-in
# =============================================================================

def _sysctl_files(plan: TuningPlan, facts: HardwareFacts, snippets: SysctlDocument):
    p = plan.param
    kb = facts.mem_total_kb
    low_latency_watchdogs = p("watchdog") == 0

    doc = SysctlDocument()
    doc.header(
        SYSTEM_SYSCTL,
        f"Auto-generated by system-optimize (profile={plan.profile})",
        "",
        f"CPU: {facts.cpu_vendor} | cores={facts.cpu_cores} | numa_nodes={facts.numa_nodes}",
        f"RAM: {facts.ram_gb_ceil}GB | kernel {facts.kernel_version or 'unknown'}",
        "",
        f"Rollback: rm -f {SYSTEM_SYSCTL} && sysctl --system",
    )

    doc.section("Memory management (VM)")
    doc.set("vm.swappiness", p("swappiness"))
    doc.set("vm.dirty_ratio", p("dirty_ratio"))
    doc.set("vm.dirty_background_ratio", p("dirty_background_ratio"))
    doc.set("vm.dirty_expire_centisecs", p("dirty_expire_centisecs"))
    doc.set("vm.dirty_writeback_centisecs", p("dirty_writeback_centisecs"))
    doc.set("vm.vfs_cache_pressure", p("vfs_cache_pressure"))
    doc.set("vm.min_free_kbytes", p("min_free_kbytes"))
    doc.set("vm.oom_kill_allocating_task", 1)
    doc.set("vm.oom_dump_tasks", 0)
    doc.set("vm.panic_on_oom", 0)
    doc.set("vm.overcommit_memory", 0)
    doc.set("vm.overcommit_ratio", p("overcommit_ratio"))
    doc.set("vm.zone_reclaim_mode", p("zone_reclaim_mode"))
    doc.set("vm.page-cluster", 3)
    doc.set("vm.watermark_scale_factor", p("watermark_scale_factor"))
    doc.set("vm.watermark_boost_factor", 0)
    doc.set("vm.lowmem_reserve_ratio", "256 256 32")

    doc.section("Memory footprint / reclaim helpers")
    doc.set("vm.compact_unevictable_allowed", 1)
    doc.set("vm.extfrag_threshold", 500)
    doc.set("vm.stat_interval", 10)
    doc.set("vm.admin_reserve_kbytes", 8192)

    doc.section("CPU scheduler")
    if facts.migration_cost_tunable:
        doc.set("kernel.sched_migration_cost_ns", p("sched_migration_cost_ns"))
    else:
        doc.comment("sched_migration_cost_ns not exposed by this kernel")
    doc.set("kernel.sched_autogroup_enabled", p("sched_autogroup_enabled"))
    doc.set("kernel.numa_balancing", p("numa_balancing"))
    doc.set("kernel.sched_rt_runtime_us", p("sched_rt_runtime_us"))

    doc.section("Filesystem / file handles")
    doc.set("fs.file-max", p("file_max"))
    doc.set("fs.inotify.max_user_watches", 524288)
    doc.set("fs.inotify.max_user_instances", 1024)
    doc.set("fs.aio-max-nr", 1048576)
    doc.set("fs.protected_hardlinks", 1)
    doc.set("fs.protected_symlinks", 1)
    doc.set("fs.protected_fifos", 2)
    doc.set("fs.protected_regular", 2)

    doc.section("Process/address-space limits")
    doc.set("kernel.pid_max", p("nproc") * 2)
    doc.set("kernel.threads-max", p("nproc") * 4)
    doc.set("vm.max_map_count", p("nofile") * 2)

    doc.section("IPC (System V)")
    doc.set("kernel.msgmax", 65536)
    doc.set("kernel.msgmnb", 65536)
    doc.set("kernel.shmmax", kb * 1024 * 3 // 4)
    doc.set("kernel.shmall", kb * 1024 // 4096)
    doc.set("kernel.sem", "250 32000 100 128")

    doc.section("Watchdogs / diagnostics")
    doc.set("kernel.watchdog", p("watchdog"))
    doc.set("kernel.nmi_watchdog", 0)
    doc.set("kernel.soft_watchdog", 0 if low_latency_watchdogs else 1)
    doc.set("kernel.hung_task_timeout_secs", p("hung_task_timeout_secs"))
    doc.set("kernel.timer_migration", 1)

    emit_sysctl(plan, SYSTEM_SYSCTL, doc, label="sysctl drop-in")

    if snippets.entries:
        extra = SysctlDocument()
        extra.blank()
        extra.header("Additional tuning (runtime-detected)")
        emit_sysctl(plan, SYSTEM_SYSCTL, extra.extend(snippets), append=True,
                    label="runtime-detected block")
