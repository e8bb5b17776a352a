"""
Execution and verification results.

Every effect yields a tri-state EffectResult; the executor never swallows
a failure, it records it here and the CLI reports it.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional


class EffectStatus(str, Enum):
    """Outcome of one effect."""
    OK = "ok"
    NOT_APPLICABLE = "not_applicable"   # Node/binary absent on this host
    FAILED = "failed"
    SKIPPED = "skipped"                 # dry-run / report


@dataclass
class EffectResult:
    """Result of a single effect."""
    kind: str
    target: str
    status: EffectStatus
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == EffectStatus.OK


@dataclass
class ApplyReport:
    """Aggregate result of ApplyExecutor.apply()."""
    mode: str
    results: List[EffectResult] = field(default_factory=list)
    backup_dir: Optional[str] = None

    def add(self, result: EffectResult) -> EffectResult:
        self.results.append(result)
        return result

    def count(self, status: EffectStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def failures(self) -> List[EffectResult]:
        return [r for r in self.results if r.status == EffectStatus.FAILED]

    def summary(self) -> Dict[str, int]:
        return {status.value: self.count(status) for status in EffectStatus}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DriftState(str, Enum):
    MATCH = "match"
    DRIFT = "drift"
    MISSING = "missing"           # Generated file was removed
    UNAVAILABLE = "unavailable"   # Key not exposed by this kernel


@dataclass
class DriftEntry:
    """Comparison of one expected value against the live system."""
    kind: str                     # sysctl, sysfs, file
    target: str
    expected: str
    actual: Optional[str]
    state: DriftState


@dataclass
class DriftReport:
    """Result of DriftVerifier.verify()."""
    tool: str
    entries: List[DriftEntry] = field(default_factory=list)

    @property
    def drifted(self) -> List[DriftEntry]:
        return [e for e in self.entries
                if e.state in (DriftState.DRIFT, DriftState.MISSING)]

    @property
    def has_drift(self) -> bool:
        return bool(self.drifted)

    @property
    def exit_code(self) -> int:
        return 2 if self.has_drift else 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
