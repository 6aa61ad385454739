"""
Event bus for decoupled component communication.

Every core component publishes its notifications here, and UI code (or anything else)
subscribes by event type.  Dispatch is synchronous on the publishing thread, so handlers
see events in exactly the order state was committed.

Usage:
    from foilview.core.events import EventBus, PositionChanged

    bus = EventBus()
    bus.subscribe(PositionChanged, lambda e: print(e.axis, e.position_um))
    bus.publish(PositionChanged(axis="Z", position_um=5.0))
"""

from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar, TYPE_CHECKING

import foilview.core.logging

if TYPE_CHECKING:
    from foilview.core.errors import FoilviewError

_log = foilview.core.logging.get_logger("events")


@dataclass
class Event:
    """Base class for all events."""

    pass


E = TypeVar("E", bound=Event)


class EventBus:
    """
    Thread-safe publish/subscribe bus.

    Handler exceptions are logged and do not stop delivery to the remaining handlers.

    Example:
        bus = EventBus()
        bus.subscribe(PositionChanged, self.on_position)
        bus.publish(PositionChanged(axis="Z", position_um=1.0))
        bus.unsubscribe(PositionChanged, self.on_position)
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable]] = {}
        self._lock = Lock()
        self._debug = False

    def set_debug(self, enabled: bool) -> None:
        """Enable or disable logging of every published event."""
        self._debug = enabled
        if enabled:
            _log.info("EventBus debug mode enabled - all events will be logged")

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)

    def subscriber_count(self, event_type: Type[Event]) -> int:
        with self._lock:
            return len(self._subscribers.get(event_type, []))

    def publish(self, event: Event) -> None:
        """
        Deliver an event to all subscribers of its exact type, on the calling thread.
        """
        if self._debug:
            _log.debug(f"[EventBus] {type(event).__name__}: {event}")

        with self._lock:
            handlers = list(self._subscribers.get(type(event), []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                _log.exception(f"Handler {handler} failed for event {event}: {e}")

    def clear(self) -> None:
        """Remove all subscriptions."""
        with self._lock:
            self._subscribers.clear()


# ============================================================
# State Events (core -> UI)
# ============================================================


@dataclass
class ConnectionStateChanged(Event):
    """Emitted on every ConnectionManager transition."""

    state: str  # ConnectionState name
    message: str = ""


@dataclass
class PositionChanged(Event):
    """Emitted once per committed axis position."""

    axis: str
    position_um: float


@dataclass
class AutoStepStarted(Event):
    axis: str
    step_um: float  # signed
    total_steps: int
    delay_s: float
    record_metrics: bool


@dataclass
class AutoStepProgress(Event):
    current_step: int
    total_steps: int
    position_um: float


@dataclass
class AutoStepCompleted(Event):
    """Emitted when a run finishes all of its steps.

    peak_position_um is the position of the largest sampled metric, or None when no metric
    was recorded.  Bookmark managers use it to mark the best focus.
    """

    samples: List[Tuple[float, float]]
    peak_position_um: Optional[float]
    current_step: int
    total_steps: int
    summary: Optional[object] = None  # AutoStepSummary


@dataclass
class AutoStepFailed(Event):
    error: "FoilviewError"
    current_step: int
    total_steps: int


@dataclass
class AutoStepCancelled(Event):
    current_step: int
    total_steps: int


# ============================================================
# Command Events (UI -> core)
# ============================================================


@dataclass
class ReconnectCommand(Event):
    """Request a fresh background connection attempt."""

    pass


@dataclass
class MoveAxisCommand(Event):
    axis: str
    delta_um: float


@dataclass
class MoveAxisToCommand(Event):
    axis: str
    target_um: float


@dataclass
class SetPositionCommand(Event):
    x_um: float
    y_um: float
    z_um: float


@dataclass
class ResetAxisCommand(Event):
    axis: str = "ALL"


@dataclass
class RefreshPositionsCommand(Event):
    pass


@dataclass
class StartAutoStepCommand(Event):
    step_size_um: float
    num_steps: int
    delay_s: float
    direction: object = 1  # "up", "down", or a signed number
    record_metrics: bool = True
    axis: str = "Z"
    metric_sampler: Optional[Callable[[], float]] = field(default=None, repr=False)


@dataclass
class StopAutoStepCommand(Event):
    pass
