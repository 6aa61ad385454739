"""UI-aware wrapper around the core EventBus.

Services and controllers publish on the core bus from their own threads; widgets subscribe
through UIEventBus and always get called on the Qt main thread.
"""

import threading
from typing import Callable, Dict, Tuple, Type

import foilview.core.logging
from foilview.core.events import Event, EventBus
from foilview.ui.qt_event_dispatcher import QtEventDispatcher

_log = foilview.core.logging.get_logger(__name__)


class UIEventBus:
    """Event bus for widgets.

    Usage:
        ui_bus = UIEventBus(core_bus, QtEventDispatcher())
        ui_bus.subscribe(PositionChanged, self._on_position_changed)
    """

    def __init__(self, core_bus: EventBus, dispatcher: QtEventDispatcher):
        self._core_bus = core_bus
        self._dispatcher = dispatcher
        self._wrapper_map: Dict[Tuple[Type[Event], Callable], Callable] = {}
        self._lock = threading.RLock()

    @property
    def core_bus(self) -> EventBus:
        return self._core_bus

    def publish(self, event: Event) -> None:
        """Publish on the core bus.  Used by widgets to send command events."""
        self._core_bus.publish(event)

    def subscribe(self, event_type: Type[Event], handler: Callable[[Event], None]) -> None:
        """Subscribe handler; it will run on the Qt main thread."""
        with self._lock:
            if (event_type, handler) in self._wrapper_map:
                _log.debug(f"UIEventBus: {handler} already subscribed to {event_type.__name__}")
                return

            def wrapper(event: Event, _handler=handler) -> None:
                if self._dispatcher.is_main_thread():
                    _handler(event)
                else:
                    self._dispatcher.dispatch.emit(_handler, event)

            self._wrapper_map[(event_type, handler)] = wrapper
            self._core_bus.subscribe(event_type, wrapper)

    def unsubscribe(self, event_type: Type[Event], handler: Callable[[Event], None]) -> None:
        with self._lock:
            wrapper = self._wrapper_map.pop((event_type, handler), None)

        if wrapper is not None:
            self._core_bus.unsubscribe(event_type, wrapper)
        else:
            _log.warning(f"UIEventBus: tried to unsubscribe unknown handler {handler} from {event_type.__name__}")

    def unsubscribe_all(self) -> None:
        """Drop every subscription made through this bus, e.g. when the window closes."""
        with self._lock:
            items = list(self._wrapper_map.items())
            self._wrapper_map.clear()
        for (event_type, _), wrapper in items:
            self._core_bus.unsubscribe(event_type, wrapper)
