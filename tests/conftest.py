"""
Shared pytest fixtures for foilview tests.

Everything runs against SimulatedStageBackend plus FakeHardwareBackend, a scriptable
stand-in for the acquisition program adapter:

    def test_something(fake_hardware, connection_manager):
        fake_hardware.connect_results = [False, True]
        ...
"""

import logging
import os
import pathlib
import sys
import threading
from typing import Dict, Generator, List

import pytest

# Add src/ to Python path for imports
_repo_root = pathlib.Path(__file__).resolve().parent.parent
_src_dir = _repo_root / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

# Qt tests run headless.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from foilview.core.abc import AbstractStageBackend
from foilview.core.config import AutoStepLimits, HealthCheckConfig, RetryPolicy, StageConfig
from foilview.core.errors import StageMovementError
from foilview.core.events import EventBus

logger = logging.getLogger(__name__)


class FakeHardwareBackend(AbstractStageBackend):
    """
    Hardware adapter whose behaviour is scripted by the test.

    connect_results: consumed one per connect() call; an Exception instance is raised, the
        last entry repeats once the list runs out
    fail_reads: get_position() raises while set
    fail_moves: move_relative() raises StageMovementError while set
    report_offset_um: added to every confirmed position, to mimic a stage that doesn't land
        exactly where it was sent
    """

    def __init__(self, axes=("X", "Y", "Z")):
        super().__init__("FakeHardwareBackend")
        self.positions: Dict[str, float] = {a: 0.0 for a in axes}
        self.connect_results: List = [True]
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.fail_reads = False
        self.fail_moves = False
        self.report_offset_um = 0.0
        self.moves: List = []
        self._lock = threading.Lock()

    def connect(self) -> bool:
        with self._lock:
            self.connect_calls += 1
            index = min(self.connect_calls - 1, len(self.connect_results) - 1)
            result = self.connect_results[index]
        if isinstance(result, Exception):
            raise result
        return bool(result)

    def disconnect(self) -> None:
        self.disconnect_calls += 1

    def get_position(self, axis: str) -> float:
        if self.fail_reads:
            raise TimeoutError("acquisition window not responding")
        return self.positions[axis]

    def move_relative(self, axis: str, delta_um: float) -> float:
        if self.fail_moves:
            raise StageMovementError("motor stalled", axis=axis)
        self.moves.append((axis, delta_um))
        self.positions[axis] += delta_um + self.report_offset_um
        return self.positions[axis]


class EventRecorder:
    """Collects events of the given types published on a bus, with the publishing thread."""

    def __init__(self, bus: EventBus, *event_types):
        self.events = []
        self.threads = []
        self._lock = threading.Lock()
        for event_type in event_types:
            bus.subscribe(event_type, self._record)

    def _record(self, event):
        with self._lock:
            self.events.append(event)
            self.threads.append(threading.current_thread())

    def of_type(self, event_type):
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]

    def clear(self):
        with self._lock:
            self.events.clear()
            self.threads.clear()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def record_events(event_bus):
    """Factory: record_events(PositionChanged, ...) -> EventRecorder on the test bus."""

    def _factory(*event_types) -> EventRecorder:
        return EventRecorder(event_bus, *event_types)

    return _factory


@pytest.fixture
def stage_config() -> StageConfig:
    return StageConfig()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Three attempts with millisecond backoff."""
    return RetryPolicy(max_attempts=3, base_delay_s=0.001, multiplier=2.0, max_delay_s=0.01)


@pytest.fixture
def fast_limits() -> AutoStepLimits:
    """Auto-step bounds that allow millisecond tick delays."""
    return AutoStepLimits(min_delay_s=0.001)


@pytest.fixture
def simulator():
    from foilview.backend.drivers.simulated import SimulatedStageBackend

    return SimulatedStageBackend()


@pytest.fixture
def fake_hardware() -> FakeHardwareBackend:
    return FakeHardwareBackend()


@pytest.fixture
def connection_manager(fake_hardware, simulator, event_bus, fast_retry) -> Generator:
    from foilview.backend.controllers.connection_controller import ConnectionManager

    manager = ConnectionManager(
        hardware=fake_hardware,
        simulator=simulator,
        event_bus=event_bus,
        retry_policy=fast_retry,
        health_check=HealthCheckConfig(interval_s=0.01),
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def simulation_connection(simulator, event_bus, fast_retry) -> Generator:
    """ConnectionManager with no hardware at all, already settled in SIMULATION."""
    from foilview.backend.controllers.connection_controller import ConnectionManager

    manager = ConnectionManager(hardware=None, simulator=simulator, event_bus=event_bus, retry_policy=fast_retry)
    manager.connect()
    yield manager
    manager.shutdown()


@pytest.fixture
def motion_controller(simulation_connection, event_bus, stage_config) -> Generator:
    from foilview.backend.services.stage_service import StageMotionController

    controller = StageMotionController(simulation_connection, event_bus, stage_config)
    yield controller
    controller.shutdown()


@pytest.fixture
def sequencer(motion_controller, event_bus, fast_limits) -> Generator:
    from foilview.backend.controllers.auto_step_controller import AutoStepSequencer

    seq = AutoStepSequencer(motion_controller, event_bus, fast_limits)
    yield seq
    seq.shutdown()
