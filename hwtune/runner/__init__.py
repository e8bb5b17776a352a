"""
Runner module - Orchestrates one tuning run.

The engine:
- Detects facts and resolves the profile
- Derives the plan and runs preflight checks
- Applies, previews, verifies or cleans up
- Tracks the run phase in a state machine
"""

from .engine import TuningEngine, EngineConfig, RunAction, RunResult
from .state import StateMachine, State

__all__ = [
    "TuningEngine",
    "EngineConfig",
    "RunAction",
    "RunResult",
    "StateMachine",
    "State",
]
