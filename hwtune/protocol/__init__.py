"""Data types shared by discovery, tuning and snapshot layers."""

from .facts import (
    CloudProvider,
    NetTier,
    CloudClass,
    StorageDevice,
    NicFacts,
    MountPoint,
    HardwareFacts,
)
from .plan import Layer, EffectKind, Effect, ParamEntry, TuningPlan
from .result import (
    EffectStatus,
    EffectResult,
    ApplyReport,
    DriftState,
    DriftEntry,
    DriftReport,
)
from .errors import (
    HwtuneError,
    ValidationError,
    ProbeFailure,
    ApplyFailure,
    PlatformUnsupported,
    CongestionUnavailable,
    PlanConflictError,
    PlanFrozenError,
    LockHeldError,
)

__all__ = [
    "CloudProvider", "NetTier", "CloudClass", "StorageDevice", "NicFacts",
    "MountPoint", "HardwareFacts",
    "Layer", "EffectKind", "Effect", "ParamEntry", "TuningPlan",
    "EffectStatus", "EffectResult", "ApplyReport", "DriftState", "DriftEntry",
    "DriftReport",
    "HwtuneError", "ValidationError", "ProbeFailure", "ApplyFailure",
    "PlatformUnsupported", "CongestionUnavailable", "PlanConflictError",
    "PlanFrozenError", "LockHeldError",
]
