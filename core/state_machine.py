"""
State Machine
-------------
Turn-loop states with validated transitions.
All state transitions are logged.

Exit Criterion: You can log every state transition of a turn.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Set
import logging


class TurnState(Enum):
    """States of the conversation loop."""
    IDLE = auto()               # Waiting for user input
    AWAITING_MODEL = auto()     # Provider submission in flight
    PARSING_RESPONSE = auto()   # Classifying FinalText vs ToolCalls
    DISPATCHING_TOOLS = auto()  # Running tool calls in model order
    FINISHED = auto()           # Answer (or failure) ready


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: TurnState
    to_state: TurnState
    timestamp: datetime
    reason: str
    metadata: Dict = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"StateTransition({self.from_state.name} → {self.to_state.name}, "
            f"reason='{self.reason}')"
        )


VALID_TRANSITIONS: Dict[TurnState, Set[TurnState]] = {
    TurnState.IDLE: {TurnState.AWAITING_MODEL},
    # FINISHED from here covers provider errors, cancellation and the step bound
    TurnState.AWAITING_MODEL: {TurnState.PARSING_RESPONSE, TurnState.FINISHED},
    TurnState.PARSING_RESPONSE: {TurnState.FINISHED, TurnState.DISPATCHING_TOOLS},
    TurnState.DISPATCHING_TOOLS: {TurnState.AWAITING_MODEL},
    TurnState.FINISHED: {TurnState.IDLE},
}


class StateMachine:
    """
    State machine for the turn loop.

    Responsibilities:
    - Track current state
    - Validate state transitions
    - Log all transitions
    - Notify listeners of state changes
    """

    def __init__(self, initial_state: TurnState = TurnState.IDLE, max_history: int = 500):
        self._state = initial_state
        self._history: List[StateTransition] = []
        self._max_history = max_history
        self._listeners: List[Callable[[StateTransition], None]] = []
        self._logger = logging.getLogger("toolsmith.core.state")

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> List[StateTransition]:
        """Transition history (read-only copy)."""
        return self._history.copy()

    def can_transition(self, to_state: TurnState) -> bool:
        return to_state in VALID_TRANSITIONS.get(self._state, set())

    def transition(
        self,
        to_state: TurnState,
        reason: str,
        metadata: Optional[Dict] = None
    ) -> StateTransition:
        """
        Move to a new state.

        Raises:
            ValueError: If transition is not valid
        """
        if not self.can_transition(to_state):
            valid_names = sorted(s.name for s in VALID_TRANSITIONS.get(self._state, set()))
            raise ValueError(
                f"Invalid transition: {self._state.name} → {to_state.name}. "
                f"Valid targets: {valid_names}"
            )

        return self._record(to_state, reason, metadata)

    def _record(self, to_state: TurnState, reason: str, metadata: Optional[Dict] = None) -> StateTransition:
        transition = StateTransition(
            from_state=self._state,
            to_state=to_state,
            timestamp=datetime.now(),
            reason=reason,
            metadata=metadata or {}
        )
        self._state = to_state

        self._history.append(transition)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]

        self._logger.debug(
            f"State transition: {transition.from_state.name} → {to_state.name} "
            f"(reason: {reason})"
        )

        for listener in self._listeners:
            try:
                listener(transition)
            except Exception as e:
                self._logger.warning(f"Listener error: {e}")

        return transition

    def add_listener(self, callback: Callable[[StateTransition], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[StateTransition], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def reset(self, reason: str = "Manual reset") -> None:
        """Force IDLE, e.g. after an aborted turn. The jump is recorded."""
        if self._state != TurnState.IDLE:
            self._logger.warning(f"Forcing {self._state.name} → IDLE: {reason}")
            self._record(TurnState.IDLE, f"Reset: {reason}")

    def is_busy(self) -> bool:
        return self._state != TurnState.IDLE

    def get_history_summary(self) -> str:
        """Human-readable summary of recent transitions."""
        if not self._history:
            return "No transitions recorded."

        lines = ["State Transition History:", "-" * 40]
        for t in self._history[-10:]:
            lines.append(
                f"  {t.timestamp.strftime('%H:%M:%S')} | "
                f"{t.from_state.name:17} → {t.to_state.name:17} | "
                f"{t.reason}"
            )
        return "\n".join(lines)
