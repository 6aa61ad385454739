"""Qt event dispatcher for main-thread execution.

Core events are published on whatever thread committed the change (an auto-step timer, the
connection retry worker, ...).  QtEventDispatcher marshals the handler call onto the Qt main
thread through a queued signal so widgets can be touched safely.
"""

import threading
from typing import Any, Callable

from qtpy.QtCore import QObject, QThread, Signal, Slot

import foilview.core.logging

_log = foilview.core.logging.get_logger(__name__)


class QtEventDispatcher(QObject):
    """Executes callables on the Qt main thread.

    Create it on the main thread, then from any thread:

        dispatcher.dispatch.emit(handler, event)
    """

    dispatch = Signal(object, object)

    def __init__(self, parent: QObject = None):
        super().__init__(parent)
        self.dispatch.connect(self._on_dispatch)
        self._qt_main_thread = QThread.currentThread()
        # QThread.currentThread() can report the main thread for plain threading.Thread
        # workers, so the Python side is checked too.
        self._python_main_thread = threading.main_thread()

    @Slot(object, object)
    def _on_dispatch(self, handler: Callable, event: Any) -> None:
        try:
            handler(event)
        except Exception as e:
            _log.exception(f"Handler {getattr(handler, '__name__', handler)} raised for {type(event).__name__}: {e}")

    def is_main_thread(self) -> bool:
        if threading.current_thread() is not self._python_main_thread:
            return False
        return QThread.currentThread() is self._qt_main_thread
