"""
Transition-table state machine shared by the connection manager and the auto-step sequencer.

Subclasses pass the allowed transitions and implement _publish_state_changed(); everything
else (locking, validation, observers) lives here:

    class RunState(Enum):
        IDLE = auto()
        RUNNING = auto()

    class Runner(StateMachine[RunState]):
        def __init__(self, bus):
            super().__init__(RunState.IDLE, {RunState.IDLE: {RunState.RUNNING}, RunState.RUNNING: {RunState.IDLE}}, bus)

        def _publish_state_changed(self, old_state, new_state):
            self._event_bus.publish(RunStateChanged(new_state.name))
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Dict, FrozenSet, Generic, Iterable, List, Optional, Set, TypeVar

import foilview.core.logging
from foilview.core.events import EventBus
from foilview.core.utils.safe_callback import safe_callback

_log = foilview.core.logging.get_logger(__name__)

S = TypeVar("S", bound=Enum)


def _names(states: Iterable[Enum]) -> str:
    return ", ".join(sorted(s.name for s in states)) or "none"


class InvalidStateTransition(Exception):
    """A transition the table does not allow.  Always a programming error."""

    def __init__(self, current_state: Enum, target_state: Enum, valid_targets: Set[Enum]):
        self.current_state = current_state
        self.target_state = target_state
        self.valid_targets = valid_targets
        super().__init__(
            f"Cannot go from {current_state.name} to {target_state.name} (allowed: {_names(valid_targets)})"
        )


class InvalidStateForOperation(Exception):
    def __init__(self, operation: str, current_state: Enum, required_states: Set[Enum]):
        self.operation = operation
        self.current_state = current_state
        self.required_states = required_states
        super().__init__(
            f"'{operation}' is not possible while {current_state.name} (needs one of: {_names(required_states)})"
        )


class StateMachine(ABC, Generic[S]):
    """
    Holds one state of S.  Reads and transitions are guarded by self._lock, an RLock that
    subclasses also use for their own data.  Observers and _publish_state_changed() run
    after the lock is released, on the transitioning thread.
    """

    def __init__(
        self,
        initial_state: S,
        transitions: Dict[S, Set[S]],
        event_bus: Optional[EventBus] = None,
        name: Optional[str] = None,
    ):
        self._state = initial_state
        self._transitions: Dict[S, FrozenSet[S]] = {src: frozenset(dst) for src, dst in transitions.items()}
        self._event_bus = event_bus
        self._name = name or type(self).__name__
        self._lock = threading.RLock()
        self._observers: List[Callable[[S, S], None]] = []

    @property
    def state(self) -> S:
        with self._lock:
            return self._state

    @property
    def state_name(self) -> str:
        return self.state.name

    def get_valid_transitions(self) -> Set[S]:
        with self._lock:
            return set(self._allowed_from(self._state))

    def on_state_change(self, callback: Callable[[S, S], None]) -> None:
        """callback(old_state, new_state) runs after every transition.  Failures are logged."""
        self._observers.append(callback)

    def _allowed_from(self, state: S) -> FrozenSet[S]:
        return self._transitions.get(state, frozenset())

    def _is_in_state(self, *states: S) -> bool:
        with self._lock:
            return self._state in states

    def _can_transition_to(self, target_state: S) -> bool:
        with self._lock:
            return target_state in self._allowed_from(self._state)

    def _require_state(self, *allowed_states: S, operation: str = "operation") -> None:
        with self._lock:
            if self._state not in allowed_states:
                raise InvalidStateForOperation(operation, self._state, set(allowed_states))

    def _transition_to(self, new_state: S) -> None:
        with self._lock:
            old_state = self._state
            allowed = self._allowed_from(old_state)
            if new_state not in allowed:
                raise InvalidStateTransition(old_state, new_state, set(allowed))
            self._state = new_state
        _log.debug(f"{self._name}: {old_state.name} -> {new_state.name}")

        for observer in list(self._observers):
            safe_callback(observer, old_state, new_state, label=f"{self._name} observer")
        result = safe_callback(self._publish_state_changed, old_state, new_state)
        if not result.success:
            _log.error(f"{self._name} could not announce {new_state.name}: {result.error}")

    @abstractmethod
    def _publish_state_changed(self, old_state: S, new_state: S) -> None:
        """Announce the transition, typically as an event on self._event_bus."""
