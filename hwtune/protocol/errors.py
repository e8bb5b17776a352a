"""
Error taxonomy.

Fatal errors (ValidationError, PlatformUnsupported, CongestionUnavailable,
LockHeldError) abort the run with a non-zero exit. ProbeFailure and
ApplyFailure are soft: they are caught at the probe/effect boundary and
turned into defaults or EffectResult entries.
"""

from typing import Optional


class HwtuneError(Exception):
    """Base class for all hwtune errors."""
    pass


class ValidationError(HwtuneError):
    """Bad command-line or configuration input."""
    pass


class ProbeFailure(HwtuneError):
    """A detection step could not complete."""

    def __init__(self, probe: str, reason: str = ""):
        self.probe = probe
        self.reason = reason
        super().__init__(f"{probe}: {reason}" if reason else probe)


class ApplyFailure(HwtuneError):
    """A scalar write, file write or command failed."""

    def __init__(self, target: str, reason: str = "", returncode: Optional[int] = None):
        self.target = target
        self.reason = reason
        self.returncode = returncode
        super().__init__(f"{target}: {reason}" if reason else target)


class PlatformUnsupported(HwtuneError):
    """Distribution is not in the supported set."""
    pass


class CongestionUnavailable(HwtuneError):
    """Selected TCP congestion control is not available in the kernel."""
    pass


class PlanConflictError(HwtuneError):
    """Two derivation rules wrote the same key at the same precedence."""
    pass


class PlanFrozenError(HwtuneError):
    """Plan was modified after execution started."""
    pass


class LockHeldError(HwtuneError):
    """Another apply/cleanup run holds the lock."""
    pass
