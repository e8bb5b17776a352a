"""
Tuning module - derives plans and applies them.

Components:
- derive_network_plan / derive_system_plan: pure facts -> TuningPlan
- preflight: input validation, confirmations, environment checks
- ApplyExecutor: apply / dry-run / report a frozen plan
- DriftVerifier: compare a saved plan against the live system
"""

from .profiles import Profile, TuningFlags, resolve_profile
from .network import derive_network_plan
from .system import derive_system_plan
from .executor import ApplyExecutor, ExecutionMode, ExecutorConfig
from .verifier import DriftVerifier, matches

__all__ = [
    "Profile",
    "TuningFlags",
    "resolve_profile",
    "derive_network_plan",
    "derive_system_plan",
    "ApplyExecutor",
    "ExecutionMode",
    "ExecutorConfig",
    "DriftVerifier",
    "matches",
]
