"""
Application context for dependency management.

Builds the stage core from a FoilviewConfig: one EventBus, the simulator, the
ConnectionManager, the StageMotionController and the AutoStepSequencer, each handed its
collaborators explicitly.

Usage:
    context = ApplicationContext(config=load_config("foilview.yaml"), hardware=my_adapter)
    context.start()
    context.controllers.motion.move_relative("Z", 5.0)

    # Later:
    context.shutdown()
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union, TYPE_CHECKING

import foilview.core.logging
from foilview.backend.controllers.auto_step_controller import AutoStepSequencer
from foilview.backend.controllers.connection_controller import ConnectionManager
from foilview.backend.drivers.simulated import SimulatedStageBackend
from foilview.backend.services.stage_service import StageMotionController
from foilview.core.abc import AbstractStageBackend
from foilview.core.config import FoilviewConfig, load_config
from foilview.core.events import EventBus
from foilview.core.utils.worker_manager import WorkerManager

if TYPE_CHECKING:
    from foilview.ui.qt_event_dispatcher import QtEventDispatcher
    from foilview.ui.ui_event_bus import UIEventBus


@dataclass
class Controllers:
    """Container for the core components."""

    connection: ConnectionManager
    motion: StageMotionController
    auto_step: AutoStepSequencer


class ApplicationContext:
    def __init__(
        self,
        config: Optional[FoilviewConfig] = None,
        hardware: Optional[AbstractStageBackend] = None,
        simulator: Optional[AbstractStageBackend] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """
        Args:
            config: Settings; defaults apply when omitted
            hardware: Adapter for the acquisition program.  None means simulation only.
            simulator: Replacement for the default SimulatedStageBackend (tests)
            event_bus: Bus to publish on; a private one is created when omitted
        """
        self._log = foilview.core.logging.get_logger(self.__class__.__name__)
        self._config = config or FoilviewConfig()
        self._event_bus = event_bus or EventBus()
        self._hardware = hardware
        self._simulator = simulator or SimulatedStageBackend(axes=self._config.stage.axes)
        self._worker_manager = WorkerManager(max_workers=1, name="foilview-connection")
        self._controllers: Optional[Controllers] = None
        self._started = False

        self._qt_dispatcher: Optional["QtEventDispatcher"] = None
        self._ui_event_bus: Optional["UIEventBus"] = None

        self._log.info(f"Creating ApplicationContext (hardware={hardware.name if hardware else None})")
        self._build_controllers()

    @classmethod
    def from_config_file(cls, path: Union[str, Path], **kwargs) -> "ApplicationContext":
        return cls(config=load_config(path), **kwargs)

    def _build_controllers(self) -> None:
        axes = self._config.stage.axes
        connection = ConnectionManager(
            hardware=self._hardware,
            simulator=self._simulator,
            event_bus=self._event_bus,
            retry_policy=self._config.retry,
            health_check=self._config.health_check,
            worker_manager=self._worker_manager,
            health_axis="Z" if "Z" in axes else axes[0],
        )
        motion = StageMotionController(connection, self._event_bus, self._config.stage)
        auto_step = AutoStepSequencer(motion, self._event_bus, self._config.auto_step)
        self._controllers = Controllers(connection=connection, motion=motion, auto_step=auto_step)
        self._log.info("Controllers built successfully")

    @property
    def config(self) -> FoilviewConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def controllers(self) -> Controllers:
        if self._controllers is None:
            raise RuntimeError("ApplicationContext has been shut down")
        return self._controllers

    @property
    def ui_event_bus(self) -> Optional["UIEventBus"]:
        return self._ui_event_bus

    def start(self, blocking: bool = False) -> None:
        """
        Connect (with retry) and start the health monitor.  Positions are read from whichever
        backend ends up active once the connection settles.

        Args:
            blocking: Run the retry loop on this thread instead of the worker
        """
        if self._started:
            return
        self._started = True
        controllers = self.controllers

        def _connected(success: bool, message: str) -> None:
            self._log.info(f"Connection settled ({'hardware' if success else 'simulation'}): {message}")
            controllers.motion.initialize_positions()

        if blocking:
            _connected(*controllers.connection.connect_with_retry_blocking())
        else:
            controllers.connection.connect_with_retry(on_complete=_connected)
        controllers.connection.start_health_monitor()

    def create_ui_event_bus(self) -> "UIEventBus":
        """Create the UIEventBus for widgets.  Call on the Qt main thread after QApplication exists."""
        if self._ui_event_bus is None:
            from foilview.ui.qt_event_dispatcher import QtEventDispatcher
            from foilview.ui.ui_event_bus import UIEventBus

            self._qt_dispatcher = QtEventDispatcher()
            self._ui_event_bus = UIEventBus(self._event_bus, self._qt_dispatcher)
            self._log.info("Created UIEventBus for thread-safe widget updates")
        return self._ui_event_bus

    def shutdown(self) -> None:
        """Stop every timer and worker.  No component threads are left running afterwards."""
        self._log.info("Shutting down application...")

        if self._ui_event_bus is not None:
            self._ui_event_bus.unsubscribe_all()
            self._ui_event_bus = None

        if self._controllers is not None:
            self._controllers.auto_step.shutdown()
            self._controllers.motion.shutdown()
            self._controllers.connection.shutdown()
            self._controllers = None

        self._worker_manager.shutdown(wait=True)
        self._log.info("Application shutdown complete")
