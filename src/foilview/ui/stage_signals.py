"""Qt signals mirroring the stage core's events.

Widgets built with Qt Designer like to connect to signals rather than bus handlers;
StageSignalRelay subscribes once through the UIEventBus and re-emits every stage event as a
plain Qt signal on the main thread.
"""

from qtpy.QtCore import QObject, Signal

from foilview.core.events import (
    AutoStepCancelled,
    AutoStepCompleted,
    AutoStepFailed,
    AutoStepProgress,
    AutoStepStarted,
    ConnectionStateChanged,
    PositionChanged,
)
from foilview.ui.ui_event_bus import UIEventBus


class StageSignalRelay(QObject):
    connection_state_changed = Signal(str, str)  # state, message
    position_changed = Signal(str, float)  # axis, position_um
    auto_step_started = Signal(int)  # total_steps
    auto_step_progress = Signal(int, int)  # current, total
    auto_step_completed = Signal(object)  # AutoStepCompleted
    auto_step_failed = Signal(str)  # user message
    auto_step_cancelled = Signal(int, int)  # current, total

    def __init__(self, ui_bus: UIEventBus, parent: QObject = None):
        super().__init__(parent)
        self._ui_bus = ui_bus
        self._handlers = [
            (ConnectionStateChanged, self._on_connection_state_changed),
            (PositionChanged, self._on_position_changed),
            (AutoStepStarted, self._on_auto_step_started),
            (AutoStepProgress, self._on_auto_step_progress),
            (AutoStepCompleted, self._on_auto_step_completed),
            (AutoStepFailed, self._on_auto_step_failed),
            (AutoStepCancelled, self._on_auto_step_cancelled),
        ]
        for event_type, handler in self._handlers:
            ui_bus.subscribe(event_type, handler)

    def detach(self) -> None:
        for event_type, handler in self._handlers:
            self._ui_bus.unsubscribe(event_type, handler)

    def _on_connection_state_changed(self, event: ConnectionStateChanged):
        self.connection_state_changed.emit(event.state, event.message)

    def _on_position_changed(self, event: PositionChanged):
        self.position_changed.emit(event.axis, float(event.position_um))

    def _on_auto_step_started(self, event: AutoStepStarted):
        self.auto_step_started.emit(event.total_steps)

    def _on_auto_step_progress(self, event: AutoStepProgress):
        self.auto_step_progress.emit(event.current_step, event.total_steps)

    def _on_auto_step_completed(self, event: AutoStepCompleted):
        self.auto_step_completed.emit(event)

    def _on_auto_step_failed(self, event: AutoStepFailed):
        error = event.error
        self.auto_step_failed.emit(error.user_message() if hasattr(error, "user_message") else str(error))

    def _on_auto_step_cancelled(self, event: AutoStepCancelled):
        self.auto_step_cancelled.emit(event.current_step, event.total_steps)
