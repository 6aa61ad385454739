# Qt bridge: delivers core events to widgets on the main thread.
# Importing this package requires a Qt binding (qtpy + PyQt5).
from foilview.ui.qt_event_dispatcher import QtEventDispatcher
from foilview.ui.ui_event_bus import UIEventBus
from foilview.ui.stage_signals import StageSignalRelay

__all__ = ["QtEventDispatcher", "UIEventBus", "StageSignalRelay"]
