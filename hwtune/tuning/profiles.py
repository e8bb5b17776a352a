"""
Profiles - closed set of tuning intents and their constant tables.

Each profile selects one NetworkProfile and one SystemProfile row. The
derivation engine never branches on profile names directly; it looks the
constants up here.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from ..protocol.errors import ValidationError
from ..protocol.facts import HardwareFacts, NetTier

logger = logging.getLogger(__name__)

MB = 1024 * 1024

ISOLATE_CPUS_PATTERN = re.compile(r"^[0-9]+([-,][0-9]+)*$")


class Profile(str, Enum):
    """Tuning intent."""
    SERVER = "server"
    VM = "vm"
    WORKSTATION = "workstation"
    LAPTOP = "laptop"
    LATENCY = "latency"

    @classmethod
    def choices(cls):
        return [p.value for p in cls] + ["auto"]

    @classmethod
    def parse(cls, value: str) -> "Profile":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Invalid profile: {value} (must be: {'|'.join(cls.choices())})"
            )


@dataclass
class TuningFlags:
    """User flags orthogonal to the profile."""
    high_throughput: bool = False
    low_latency: bool = False
    congestion: Optional[str] = None
    disable_mitigations: bool = False
    disable_smt: bool = False
    isolate_cpus: str = ""
    relax_security: bool = False
    disable_services: bool = False
    reclaim_memory: bool = False
    apply_fs_tuning: bool = False

    def effective_low_latency(self, profile: Profile) -> bool:
        """The latency profile implies --low-latency."""
        return self.low_latency or profile == Profile.LATENCY

    def validate(self) -> list:
        errors = []
        if self.isolate_cpus and not ISOLATE_CPUS_PATTERN.match(self.isolate_cpus):
            errors.append(
                f"Invalid --isolate-cpus format: {self.isolate_cpus} (use: N-M or N,M,O)"
            )
        if self.congestion is not None and not re.match(r"^[a-z0-9_]+$", self.congestion):
            errors.append(f"Invalid --congestion value: {self.congestion}")
        return errors

    def to_dict(self) -> Dict[str, object]:
        return {k: v for k, v in self.__dict__.items() if v not in (False, None, "")}


# =============================================================================
# Network constants
# =============================================================================

@dataclass(frozen=True)
class NetworkProfile:
    buffer_bytes: int
    tcp_mem_fraction: int
    netdev_budget: int
    netdev_budget_usecs: int
    somaxconn: int
    netdev_max_backlog: int
    ring_scale_percent: int


NETWORK_PROFILES: Dict[Profile, NetworkProfile] = {
    Profile.SERVER: NetworkProfile(16 * MB, 4, 600, 8000, 65535, 65536, 100),
    Profile.VM: NetworkProfile(8 * MB, 6, 300, 4000, 32768, 32768, 75),
    Profile.WORKSTATION: NetworkProfile(4 * MB, 8, 300, 4000, 4096, 4096, 50),
    Profile.LAPTOP: NetworkProfile(2 * MB, 10, 150, 2000, 2048, 2048, 25),
    Profile.LATENCY: NetworkProfile(1 * MB, 10, 64, 500, 4096, 1024, 15),
}


@dataclass(frozen=True)
class TierOverride:
    buffer_bytes: int
    netdev_budget: int
    netdev_budget_usecs: int
    somaxconn: int
    netdev_max_backlog: int


TIER_OVERRIDES: Dict[NetTier, TierOverride] = {
    NetTier.ULTRA: TierOverride(64 * MB, 1200, 16000, 65535, 65536),
    NetTier.HIGH: TierOverride(32 * MB, 600, 8000, 32768, 32768),
    NetTier.MEDIUM: TierOverride(16 * MB, 300, 4000, 16384, 16384),
    NetTier.LOW: TierOverride(8 * MB, 300, 4000, 8192, 8192),
}

HIGH_THROUGHPUT_BUFFER = 64 * MB
HIGH_THROUGHPUT_BUDGET = 1200
RING_MIN = 128


# =============================================================================
# System constants
# =============================================================================

@dataclass(frozen=True)
class SystemProfile:
    governor: str
    turbo: bool
    thp: str
    swappiness_base: int
    dirty_ratio_base: int
    blacklist_desktop: bool
    nofile_per_gb: int
    nproc_per_core: int
    nr_requests_scale: int
    service_letter: str
    epp: str
    sched_latency_ns: int
    sched_min_granularity_ns: int
    sched_wakeup_granularity_ns: int
    zswap_pool_percent: int              # 0 disables zswap
    scheduler_pref: Dict[str, tuple] = field(default_factory=dict)


SYSTEM_PROFILES: Dict[Profile, SystemProfile] = {
    Profile.SERVER: SystemProfile(
        "performance", True, "madvise", 10, 15, True, 65536, 8192, 100, "s", "performance",
        24000000, 3000000, 4000000, 20,
        {"ssd": ("none", "mq-deadline"), "hdd": ("mq-deadline", "bfq")},
    ),
    Profile.VM: SystemProfile(
        "performance", True, "never", 30, 10, True, 32768, 4096, 75, "v", "performance",
        20000000, 2500000, 3000000, 20,
        {"ssd": ("none", "mq-deadline"), "hdd": ("bfq", "mq-deadline")},
    ),
    Profile.WORKSTATION: SystemProfile(
        "schedutil", True, "madvise", 30, 10, False, 16384, 2048, 50, "w", "balance_performance",
        6000000, 750000, 1000000, 15,
        {"ssd": ("mq-deadline", "none"), "hdd": ("bfq", "mq-deadline")},
    ),
    Profile.LAPTOP: SystemProfile(
        "powersave", False, "never", 60, 5, False, 8192, 1024, 25, "l", "balance_power",
        6000000, 750000, 1000000, 25,
        {"ssd": ("kyber", "mq-deadline"), "hdd": ("bfq", "mq-deadline")},
    ),
    Profile.LATENCY: SystemProfile(
        "performance", True, "never", 1, 5, True, 65536, 8192, 25, "s", "performance",
        4000000, 500000, 750000, 0,
        {"ssd": ("none", "kyber"), "hdd": ("bfq", "mq-deadline")},
    ),
}

# VM dirty ratio base by cloud provider
VM_DIRTY_RATIO = {"aws": 5, "azure": 8, "gcp": 10}

NOFILE_MIN, NOFILE_MAX = 65536, 1048576
NPROC_MIN, NPROC_MAX = 32768, 524288


def clamp(value: int, low: Optional[int] = None, high: Optional[int] = None) -> int:
    if low is not None and value < low:
        value = low
    if high is not None and value > high:
        value = high
    return value


# =============================================================================
# Resolution
# =============================================================================

def is_workstation_like(facts: HardwareFacts) -> bool:
    """Graphical session, or a small box (<=4 cores and <=16GB)."""
    if facts.graphical_session:
        return True
    return facts.cpu_cores <= 4 and facts.ram_gb_ceil <= 16


def resolve_profile(explicit: str, facts: HardwareFacts) -> Profile:
    """
    Resolve the tuning profile.

    Explicit names are validated and returned unchanged. "auto" walks a
    strict decision list: VM -> laptop (battery) -> workstation -> server.
    """
    if explicit != "auto":
        return Profile.parse(explicit)

    if facts.is_virtual:
        profile, reason = Profile.VM, f"virtualization={facts.is_vm}"
    elif facts.has_battery:
        profile, reason = Profile.LAPTOP, "battery present"
    elif is_workstation_like(facts):
        profile, reason = Profile.WORKSTATION, "graphical session or small system"
    else:
        profile, reason = Profile.SERVER, "default"

    logger.debug("auto profile: %s (%s)", profile.value, reason)
    return profile
