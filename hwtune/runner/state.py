"""
StateMachine - phases of one tuning run.

INIT → DETECT → RESOLVE → DERIVE → PREFLIGHT → APPLY → PERSIST → COMPLETE

Verify enters VERIFY straight from INIT when a saved plan exists, from
DERIVE otherwise. Cleanup goes INIT → PREFLIGHT → CLEANUP.

Any phase may go to FAILED. A run either completes its phase sequence or
aborts; nothing is persisted from a failed apply.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class State(Enum):
    """Run phases."""
    INIT = auto()
    DETECT = auto()
    RESOLVE = auto()
    DERIVE = auto()
    PREFLIGHT = auto()
    APPLY = auto()
    PERSIST = auto()
    VERIFY = auto()
    CLEANUP = auto()
    COMPLETE = auto()
    FAILED = auto()


# Valid state transitions
TRANSITIONS: Dict[State, List[State]] = {
    State.INIT: [State.DETECT, State.PREFLIGHT, State.VERIFY, State.FAILED],
    State.DETECT: [State.RESOLVE, State.FAILED],
    State.RESOLVE: [State.DERIVE, State.FAILED],
    State.DERIVE: [State.PREFLIGHT, State.VERIFY, State.FAILED],
    State.PREFLIGHT: [State.APPLY, State.CLEANUP, State.FAILED],
    State.APPLY: [State.PERSIST, State.COMPLETE, State.FAILED],   # dry-run/report skip PERSIST
    State.PERSIST: [State.COMPLETE, State.FAILED],
    State.VERIFY: [State.COMPLETE, State.FAILED],
    State.CLEANUP: [State.COMPLETE, State.FAILED],
    State.COMPLETE: [],
    State.FAILED: [],
}


@dataclass
class StateEvent:
    """Record of a state transition."""
    from_state: State
    to_state: State
    timestamp: datetime
    duration_ms: int
    metadata: Dict[str, Any] = field(default_factory=dict)


class StateMachine:
    """
    Tracks the phase of a run.

    Ensures valid transitions and keeps the history for --verbose output.
    """

    def __init__(self, initial_state: State = State.INIT):
        self._state = initial_state
        self._history: List[StateEvent] = []
        self._state_entered_at = datetime.now()

    @property
    def state(self) -> State:
        return self._state

    @property
    def history(self) -> List[StateEvent]:
        return self._history.copy()

    def can_transition(self, to_state: State) -> bool:
        return to_state in TRANSITIONS.get(self._state, [])

    def transition(self, to_state: State, metadata: Optional[Dict[str, Any]] = None):
        """
        Transition to a new state.

        Args:
            to_state: Target state
            metadata: Optional data about the transition

        Raises:
            ValueError: If transition is not valid
        """
        if not self.can_transition(to_state):
            raise ValueError(
                f"Invalid transition: {self._state.name} → {to_state.name}. "
                f"Valid transitions: {[s.name for s in TRANSITIONS.get(self._state, [])]}"
            )

        now = datetime.now()
        duration_ms = int((now - self._state_entered_at).total_seconds() * 1000)

        event = StateEvent(
            from_state=self._state,
            to_state=to_state,
            timestamp=now,
            duration_ms=duration_ms,
            metadata=metadata or {},
        )
        self._history.append(event)
        logger.debug("%s → %s (%dms)", self._state.name, to_state.name, duration_ms)

        self._state = to_state
        self._state_entered_at = now

    def fail(self, reason: str):
        """Move to FAILED from any non-terminal state."""
        if not self.is_terminal():
            self.transition(State.FAILED, {"reason": reason})

    def is_terminal(self) -> bool:
        """Check if in terminal state (COMPLETE or FAILED)."""
        return self._state in (State.COMPLETE, State.FAILED)

    def format_history(self) -> str:
        """Format history as human-readable string."""
        lines = []
        for event in self._history:
            lines.append(
                f"{event.from_state.name} → {event.to_state.name} "
                f"({event.duration_ms}ms)"
            )
        return '\n'.join(lines)
