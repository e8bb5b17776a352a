"""
hwtune - Hardware-aware Linux network and system tuning

Detects CPU, memory, NUMA, storage, NICs and the cloud instance, derives a
profile-specific TuningPlan, and applies it with backups, dry-run/report
previews, drift verification and cleanup.

Usage:
    # Console scripts
    network-optimize --dry-run
    system-optimize --profile=server --yes

    # Programmatically
    from hwtune import TuningEngine, EngineConfig

    engine = TuningEngine(EngineConfig(tool="network", mode=ExecutionMode.DRY_RUN))
    result = engine.run()
"""

__version__ = "1.0.0"

# Main exports
from .runner.engine import TuningEngine, EngineConfig, RunAction, RunResult
from .runner.state import StateMachine, State

# Protocol exports
from .protocol.facts import HardwareFacts
from .protocol.plan import TuningPlan, Layer
from .protocol.result import ApplyReport, DriftReport

# Tuning exports
from .tuning.executor import ExecutionMode
from .tuning.profiles import Profile, TuningFlags

__all__ = [
    # Version
    "__version__",
    # Engine
    "TuningEngine",
    "EngineConfig",
    "RunAction",
    "RunResult",
    "StateMachine",
    "State",
    # Protocol
    "HardwareFacts",
    "TuningPlan",
    "Layer",
    "ApplyReport",
    "DriftReport",
    # Tuning
    "ExecutionMode",
    "Profile",
    "TuningFlags",
]
