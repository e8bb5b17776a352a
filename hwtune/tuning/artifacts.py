"""
Artifact renderers - text of every file the tools generate.

All renderers are pure: same inputs, same bytes. No timestamps are written
into file bodies so repeated runs produce identical content and --verify
can compare generated files byte for byte.
"""

import re
from typing import Dict, Iterable, List, Optional, Tuple

from ..protocol.plan import TuningPlan

RULE = "=" * 77
SUBRULE = "-" * 77

# Generated paths
NETWORK_SYSCTL = "/etc/sysctl.d/99-network-optimize.conf"
NETWORK_SERVICE = "/etc/systemd/system/network-optimize.service"
SYSTEM_SYSCTL = "/etc/sysctl.d/99-system-optimize.conf"
SYSTEM_LIMITS = "/etc/security/limits.d/99-system-optimize.conf"
SYSTEMD_SYSTEM_DROPIN = "/etc/systemd/system.conf.d/99-system-optimize.conf"
SYSTEMD_USER_DROPIN = "/etc/systemd/user.conf.d/99-system-optimize.conf"
SYSTEM_MODPROBE = "/etc/modprobe.d/99-system-optimize-blacklist.conf"
SYSTEM_JOURNALD = "/etc/systemd/journald.conf.d/99-system-optimize.conf"
SYSTEM_SERVICE = "/etc/systemd/system/system-optimize.service"
GRUB_DEFAULT = "/etc/default/grub"

GENERATED_FILES = {
    "network": (NETWORK_SYSCTL, NETWORK_SERVICE),
    "system": (SYSTEM_SYSCTL, SYSTEM_LIMITS, SYSTEMD_SYSTEM_DROPIN, SYSTEMD_USER_DROPIN,
               SYSTEM_MODPROBE, SYSTEM_JOURNALD, SYSTEM_SERVICE, GRUB_DEFAULT),
}

SERVICE_UNITS = {
    "network": "network-optimize.service",
    "system": "system-optimize.service",
}


# =============================================================================
# Sysctl drop-ins
# =============================================================================

class SysctlDocument:
    """
    Builder for a sysctl.d file.

    Keeps the rendered lines and the key/value entries side by side so the
    same object feeds both the file effect and the drift checker.
    """

    def __init__(self):
        self._lines: List[str] = []
        self.entries: Dict[str, str] = {}

    def header(self, *lines: str) -> "SysctlDocument":
        self._lines.append(f"#{RULE}")
        for line in lines:
            self._lines.append(f"# {line}" if line else "#")
        self._lines.append(f"#{RULE}")
        return self

    def section(self, title: str) -> "SysctlDocument":
        if self._lines:
            self._lines.append("")
        self._lines.extend([f"#{SUBRULE}", f"# {title}", f"#{SUBRULE}"])
        return self

    def comment(self, text: str) -> "SysctlDocument":
        self._lines.append(f"# {text}")
        return self

    def blank(self) -> "SysctlDocument":
        self._lines.append("")
        return self

    def set(self, key: str, value) -> "SysctlDocument":
        value = str(value)
        self._lines.append(f"{key} = {value}")
        self.entries[key] = value
        return self

    def extend(self, other: "SysctlDocument") -> "SysctlDocument":
        self._lines.extend(other._lines)
        self.entries.update(other.entries)
        return self

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"


def emit_sysctl(plan: TuningPlan, path: str, doc: SysctlDocument,
                append: bool = False, label: str = ""):
    """Add a sysctl document to the plan as a file write (or append)."""
    if append:
        plan.append_file(path, doc.render(), label=label)
    else:
        plan.write_file(path, doc.render(), label=label)
    for key, value in doc.entries.items():
        plan.add_sysctl(key, value)


def sysctl_path(key: str) -> str:
    """/proc/sys node backing a sysctl key."""
    return "/proc/sys/" + key.replace(".", "/")


# =============================================================================
# CPU masks
# =============================================================================

def cpu_mask_for_cores(cores: int) -> str:
    """
    Hex CPU mask covering `cores` CPUs, in 32-bit comma separated groups.

    The most significant group comes first and is partial when cores is
    not a multiple of 32.
    """
    cores = max(1, cores)
    groups = (cores + 31) // 32
    rem = cores % 32
    parts = []
    for i in range(groups):
        if i == 0 and rem != 0:
            parts.append("%08x" % ((1 << rem) - 1))
        else:
            parts.append("ffffffff")
    return ",".join(parts)


# =============================================================================
# Limits and systemd manager drop-ins
# =============================================================================

def render_limits(profile: str, nofile: int, nproc: int, memlock: int) -> str:
    return f"""# {RULE}
# {SYSTEM_LIMITS}
# Auto-generated by system-optimize (profile={profile})
#
# Notes:
# - Applies to new sessions (re-login) and some services after restart.
# - Some limits may be capped by the kernel or systemd.
# {RULE}

# -----------------------------
# Defaults for all users (*)
# -----------------------------
* soft nofile {nofile}
* hard nofile {nofile}

* soft nproc {nproc}
* hard nproc {nproc}

# Allow mlock() up to ~50% of RAM
* soft memlock {memlock}
* hard memlock {memlock}

# Disable core dumps by default
* soft core 0
* hard core 0

# Pending signals, POSIX message queue (bytes), RT priority, stack (KB)
* soft sigpending {nproc}
* hard sigpending {nproc}
* soft msgqueue 819200
* hard msgqueue 819200
* soft rtprio 99
* hard rtprio 99
* soft stack 65536
* hard stack 65536

# -----------------------------
# Root overrides
# -----------------------------
root soft nofile {nofile}
root hard nofile {nofile}
root soft nproc {nproc}
root hard nproc {nproc}
"""


def render_manager_dropin(path: str, profile: str, nofile: int, nproc: int, memlock: int) -> str:
    return f"""# {RULE}
# {path}
# Auto-generated by system-optimize (profile={profile})
#
# A reboot applies this everywhere; otherwise: systemctl daemon-reexec
# {RULE}

[Manager]
DefaultLimitNOFILE={nofile}
DefaultLimitNPROC={nproc}
DefaultLimitMEMLOCK={memlock}
DefaultLimitCORE=0
"""


def render_journald() -> str:
    return f"""# {RULE}
# {SYSTEM_JOURNALD}
# Auto-generated by system-optimize
#
# Goal: reduce disk I/O from logging on performance-focused systems.
# {RULE}

[Journal]
Storage=volatile
RuntimeMaxUse=100M
RateLimitIntervalSec=30s
RateLimitBurst=1000
Compress=yes
ForwardToSyslog=no
ForwardToWall=no
"""


# =============================================================================
# Module blacklist
# =============================================================================

USB_NIC_BLACKLIST = ("r8152", "asix", "ax88179_178a", "cdc_ether", "cdc_ncm", "rndis_host", "usbnet")


def _blacklist(modules: Iterable[str], prefix: str = "") -> str:
    return "\n".join(f"{prefix}blacklist {m}" for m in modules)


def render_blacklist(blacklist_desktop: bool, usb_nic_loaded: bool) -> str:
    text = f"""# {RULE}
# {SYSTEM_MODPROBE}
# Auto-generated by system-optimize
#
# Blacklisting prevents auto-loading; already loaded modules stay loaded.
# Remove a line and reboot (or modprobe the module) to get it back.
# {RULE}

# -----------------------------
# Legacy/rare hardware
# -----------------------------
# Floppy / optical media
{_blacklist(("floppy", "cdrom", "sr_mod", "iso9660"))}

# FireWire
{_blacklist(("firewire_core", "firewire_ohci"))}
"""
    if not blacklist_desktop:
        return text

    text += f"""# -----------------------------
# Server/VM only: reduce desktop/hotplug noise
# -----------------------------

# Audio
{_blacklist(("pcspkr", "snd_pcsp", "snd_hda_intel", "snd_hda_codec", "soundcore"))}

# USB Ethernet dongles
"""
    if usb_nic_loaded:
        text += ("# NOTE: Skipped because a USB NIC driver module is currently loaded on this host.\n"
                 "# If you are certain you don't use USB NICs, add these lines manually:\n"
                 f"{_blacklist(USB_NIC_BLACKLIST, prefix='#   ')}\n")
    else:
        text += f"{_blacklist(USB_NIC_BLACKLIST)}\n"

    text += f"""
# Bluetooth
{_blacklist(("bluetooth", "btusb", "btrtl", "btbcm", "btintel"))}

# Webcam
blacklist uvcvideo
"""
    return text


# =============================================================================
# Boot units
# =============================================================================

RPS_MASK_SCRIPT = (
    "/bin/bash -c 'cores=$(nproc 2>/dev/null || echo 1); groups=$(( (cores + 31) / 32 )); "
    "rem=$(( cores % 32 )); mask=\"\"; for ((i=0; i<groups; i++)); do "
    "if (( i==0 && rem!=0 )); then mask+=$(printf \"%08x\" $(( (1<<rem) - 1 ))); "
    "else mask+=\"ffffffff\"; fi; (( i<groups-1 )) && mask+=\",\"; done; "
    "for f in /sys/class/net/*/queues/rx-*/rps_cpus /sys/class/net/*/queues/tx-*/xps_cpus; do "
    "[ -f \"$f\" ] && echo \"$mask\" > \"$f\" 2>/dev/null || true; done'"
)

OFFLOAD_SCRIPT = (
    "/bin/bash -c 'command -v ethtool >/dev/null 2>&1 || exit 0; "
    "for dev in /sys/class/net/*/device; do dev=${dev%/device}; iface=${dev##*/}; "
    "ethtool -K \"$iface\" gro on gso on tso on >/dev/null 2>&1 || true; done'"
)

CSTATE_SCRIPT = (
    "/bin/bash -c 'for c in /sys/devices/system/cpu/cpu*/cpuidle/state*/disable; do "
    "[[ -f \"${c}\" ]] || continue; st=${c%/disable}; st=${st##*/}; num=${st#state}; "
    "case \"${num}\" in (\"\"|*[!0-9]*) continue ;; esac; "
    "[[ \"${num}\" -gt 1 ]] && echo 1 > \"${c}\" 2>/dev/null || true; done'"
)


def render_network_unit(profile: str) -> str:
    return f"""# {RULE}
# {NETWORK_SERVICE}
# Auto-generated by network-optimize (profile={profile})
#
# Re-applies a subset of NIC/RPS tuning at boot. Kernel parameters are
# persisted in:
#   {NETWORK_SYSCTL}
#
# Disable:
#   systemctl disable network-optimize.service
# {RULE}

[Unit]
Description=Network Performance Optimization (network-optimize)
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot

# Re-apply sysctl parameters.
ExecStart=/usr/bin/env sysctl --system

# Re-apply RPS CPU masks (best effort).
ExecStart={RPS_MASK_SCRIPT}

# Re-enable common offloads (best effort).
ExecStart={OFFLOAD_SCRIPT}
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


def render_system_unit(profile: str, governor: str, turbo: bool, thp: str,
                       disk_scheduler: str, low_latency: bool) -> str:
    no_turbo = 0 if turbo else 1
    amd_boost = 1 if turbo else 0
    cstate = ""
    if low_latency:
        cstate = ("\n# Low-latency only: disable deep CPU idle states (C2+).\n"
                  f"ExecStart={CSTATE_SCRIPT}\n")

    governor_line = (
        "/bin/bash -c 'for g in /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor; do "
        f"[ -f \"$g\" ] || continue; echo \"{governor}\" > \"$g\" 2>/dev/null || true; done'"
    )
    sched_line = (
        "/bin/bash -c 'for d in /sys/block/sd*/queue/scheduler /sys/block/nvme*/queue/scheduler; do "
        f"[ -f \"$d\" ] && echo \"{disk_scheduler}\" > \"$d\" 2>/dev/null || true; done'"
    )

    return f"""# {RULE}
# {SYSTEM_SERVICE}
# Auto-generated by system-optimize (profile={profile})
#
# Re-applies a small subset of tuning at boot. Most tuning is persisted in:
# - {SYSTEM_SYSCTL}
# - {SYSTEMD_SYSTEM_DROPIN} and {SYSTEMD_USER_DROPIN}
#
# Disable:
#   systemctl disable system-optimize.service
# {RULE}

[Unit]
Description=System Performance Optimization (system-optimize)
After=multi-user.target

[Service]
Type=oneshot

# All actions are best effort; failures are ignored so boot continues.

# CPU governor (cpufreq)
ExecStart={governor_line}

# Intel Turbo Boost (intel_pstate): 0=enabled, 1=disabled
ExecStart=/bin/bash -c '[ -f /sys/devices/system/cpu/intel_pstate/no_turbo ] && echo "{no_turbo}" > /sys/devices/system/cpu/intel_pstate/no_turbo 2>/dev/null || true'

# AMD Boost (cpufreq/boost): 1=enabled, 0=disabled
ExecStart=/bin/bash -c '[ -f /sys/devices/system/cpu/cpufreq/boost ] && echo "{amd_boost}" > /sys/devices/system/cpu/cpufreq/boost 2>/dev/null || true'

# Transparent Huge Pages
ExecStart=/bin/bash -c 'echo "{thp}" > /sys/kernel/mm/transparent_hugepage/enabled 2>/dev/null || true'

# Block I/O scheduler
ExecStart={sched_line}
{cstate}RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


# =============================================================================
# GRUB
# =============================================================================

GRUB_CMDLINE = re.compile(r'^(GRUB_CMDLINE_LINUX_DEFAULT=")([^"]*)(")', re.MULTILINE)


def _param_name(token: str) -> str:
    return token.split("=", 1)[0]


def rewrite_grub(content: str, params: Iterable[str],
                 strip: Optional[Iterable[str]] = None) -> Tuple[str, bool]:
    """
    Insert kernel parameters at the front of GRUB_CMDLINE_LINUX_DEFAULT.

    Existing parameters with the same name (or any name in `strip`) are
    removed first, so rewriting twice gives the same line.

    Returns:
        (new content, whether a command line was found)
    """
    params = list(params)
    names = {_param_name(p) for p in params}
    names.update(strip or ())

    match = GRUB_CMDLINE.search(content)
    if not match:
        return content, False

    kept = [tok for tok in match.group(2).split() if _param_name(tok) not in names]
    cmdline = " ".join(params + kept)
    start, end = match.span(2)
    return content[:start] + cmdline + content[end:], True


def mitigation_params(cpu_vendor: str, cpu_family: int) -> List[str]:
    if cpu_vendor == "GenuineIntel":
        return ["mitigations=off", "tsx=on", "tsx_async_abort=off", "mds=off", "l1tf=off"]
    if cpu_vendor == "AuthenticAMD" and cpu_family == 23:
        return ["mitigations=off", "retbleed=off"]
    return ["mitigations=off"]


MITIGATION_STRIP = ("mitigations", "tsx", "tsx_async_abort", "mds", "l1tf", "retbleed")


def isolation_params(cpus: str) -> List[str]:
    return [f"isolcpus={cpus}", f"nohz_full={cpus}", f"rcu_nocbs={cpus}"]


LATENCY_BOOT_PARAMS = (
    "processor.max_cstate=1",
    "intel_idle.max_cstate=1",
    "idle=poll",
    "nowatchdog",
    "nmi_watchdog=0",
    "nosoftlockup",
    "tsc=reliable",
    "clocksource=tsc",
    "transparent_hugepage=never",
    "skew_tick=1",
)
