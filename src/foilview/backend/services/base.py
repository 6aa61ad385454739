# foilview/backend/services/base.py
"""Base class for services that own authoritative state and talk over the EventBus."""

from abc import ABC
from typing import Callable, List, Tuple, Type, TypeVar

import foilview.core.logging
from foilview.core.events import Event, EventBus

E = TypeVar("E", bound=Event)


class BaseService(ABC):
    """
    Command events come in through subscribe(), state events go out through publish().
    Every subscription made here is undone by shutdown().

    Usage:
        class StageMotionController(BaseService):
            def __init__(self, connection, event_bus):
                super().__init__(event_bus)
                self.subscribe(MoveAxisCommand, lambda e: self.move_relative(e.axis, e.delta_um))
    """

    def __init__(self, event_bus: EventBus):
        self._event_bus = event_bus
        self._log = foilview.core.logging.get_logger(type(self).__name__)
        self._subscriptions: List[Tuple[Type[Event], Callable]] = []

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> None:
        self._event_bus.subscribe(event_type, handler)  # type: ignore
        self._subscriptions.append((event_type, handler))  # type: ignore

    def publish(self, event: Event):
        self._event_bus.publish(event)

    def shutdown(self):
        """Drop every subscription.  Safe to call more than once."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for event_type, handler in subscriptions:
            self._event_bus.unsubscribe(event_type, handler)
        if subscriptions:
            self._log.debug(f"Unsubscribed from {', '.join(t.__name__ for t, _ in subscriptions)}")
