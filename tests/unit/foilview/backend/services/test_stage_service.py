# tests/unit/foilview/backend/services/test_stage_service.py
"""Tests for StageMotionController."""

import math
from unittest.mock import Mock

import numpy as np
import pytest

from foilview.backend.drivers.simulated import SimulatedStageBackend
from foilview.backend.services.stage_service import StageMotionController
from foilview.core.config import StageConfig
from foilview.core.errors import ErrorKind, StageMovementError, StageValidationError
from foilview.core.events import (
    ConnectionStateChanged,
    MoveAxisCommand,
    MoveAxisToCommand,
    PositionChanged,
    RefreshPositionsCommand,
    ResetAxisCommand,
    SetPositionCommand,
)


class TestMoveRelative:
    def test_scenario_move_z(self, motion_controller, record_events):
        recorder = record_events(PositionChanged)

        result = motion_controller.move_relative("Z", 5)

        assert result.success is True
        assert result.position_um == 5
        assert motion_controller.get_positions()["Z"] == 5
        assert recorder.events == [PositionChanged(axis="Z", position_um=5)]

    def test_axis_is_case_insensitive(self, motion_controller):
        assert motion_controller.move_relative("x", 1.0).axis == "X"
        assert motion_controller.get_axis_position("X") == 1.0

    @pytest.mark.parametrize("delta", [0.0, 0.001, -0.009, 1000.5, -2000, math.nan, math.inf])
    def test_out_of_bounds_rejected_without_mutation(self, motion_controller, record_events, delta):
        recorder = record_events(PositionChanged)
        before = motion_controller.get_positions()

        result = motion_controller.move_relative("Z", delta)

        assert result.success is False
        assert result.error.kind is ErrorKind.VALIDATION
        assert motion_controller.get_positions() == before
        assert recorder.events == []

    @pytest.mark.parametrize("delta", [0.01, -0.01, 1000, -1000])
    def test_bounds_are_inclusive(self, motion_controller, delta):
        assert motion_controller.move_relative("Z", delta).success

    def test_unknown_axis_rejected(self, motion_controller):
        result = motion_controller.move_relative("W", 1.0)
        assert not result.success
        assert result.error.kind is ErrorKind.VALIDATION
        assert "W" in str(result.error)

    def test_backend_fault_leaves_position(self, motion_controller, simulator, record_events):
        motion_controller.move_relative("Z", 2.0)
        recorder = record_events(PositionChanged)
        simulator.inject_fault("Z", "stall")

        result = motion_controller.move_relative("Z", 1.0)

        assert not result.success
        assert isinstance(result.error, StageMovementError)
        assert result.position_um == 2.0
        assert motion_controller.get_axis_position("Z") == 2.0
        assert recorder.events == []

    def test_generic_backend_exception_becomes_movement_error(self, event_bus):
        backend = Mock()
        backend.move_relative.side_effect = OSError("pipe closed")
        connection = Mock()
        connection.get_active_backend.return_value = backend
        controller = StageMotionController(connection, event_bus)

        result = controller.move_relative("Z", 1.0)

        assert result.error.kind is ErrorKind.MOVEMENT
        assert isinstance(result.error.cause, OSError)

    def test_hardware_confirmed_position_is_committed(self, event_bus):
        backend = Mock()
        backend.is_simulated = False
        backend.move_relative.return_value = 5.03
        connection = Mock()
        connection.get_active_backend.return_value = backend
        controller = StageMotionController(connection, event_bus)

        result = controller.move_relative("Z", 5.0)

        assert result.position_um == 5.03
        assert controller.get_axis_position("Z") == 5.03
        assert not controller.is_settled("Z")

    def test_simulator_limit_is_committed(self, event_bus, record_events):
        simulator = SimulatedStageBackend(limits_um={"Z": (None, 10.0)})
        connection = Mock()
        connection.get_active_backend.return_value = simulator
        controller = StageMotionController(connection, event_bus)
        recorder = record_events(PositionChanged)

        result = controller.move_relative("Z", 15.0)

        assert result.position_um == 10.0
        assert controller.get_axis_position("Z") == simulator.get_position("Z") == 10.0
        assert not controller.is_settled("Z")
        assert recorder.events == [PositionChanged(axis="Z", position_um=10.0)]

    def test_unreadable_confirmation_is_a_movement_error(self, event_bus):
        backend = Mock()
        backend.move_relative.return_value = None
        connection = Mock()
        connection.get_active_backend.return_value = backend
        controller = StageMotionController(connection, event_bus)

        result = controller.move_relative("Z", 1.0)

        assert result.error.kind is ErrorKind.MOVEMENT
        assert controller.get_axis_position("Z") == 0.0

    @pytest.mark.parametrize("delta", [np.float32(1.5), np.float64(-2.0), np.int64(3)])
    def test_numpy_scalars_accepted(self, motion_controller, simulator, delta):
        result = motion_controller.move_relative("Z", delta)

        assert result.success
        assert result.position_um == float(delta)
        assert type(motion_controller.get_axis_position("Z")) is float
        assert simulator.get_position("Z") == float(delta)

    @pytest.mark.parametrize("delta", [True, "1.0", None, np.float64(np.nan)])
    def test_non_numbers_rejected(self, motion_controller, delta):
        assert motion_controller.move_relative("Z", delta).error.kind is ErrorKind.VALIDATION
        assert motion_controller.get_axis_position("Z") == 0.0

    def test_configured_step_bounds_apply(self, event_bus):
        backend = Mock()
        connection = Mock()
        connection.get_active_backend.return_value = backend
        controller = StageMotionController(connection, event_bus, StageConfig(min_step_um=1.0, max_step_um=5.0))

        assert controller.move_relative("Z", 0.5).error.kind is ErrorKind.VALIDATION
        with pytest.raises(StageValidationError, match="outside"):
            controller.validate_relative_move("Z", 6.0)
        checked = controller.validate_relative_move("z", np.float32(2.0))
        assert checked == 2.0 and type(checked) is float
        backend.move_relative.assert_not_called()

    def test_active_backend_fetched_per_move(self, event_bus):
        first, second = Mock(is_simulated=True), Mock(is_simulated=True)
        first.move_relative.return_value = 1.0
        second.move_relative.return_value = 2.0
        connection = Mock()
        connection.get_active_backend.side_effect = [first, second]
        controller = StageMotionController(connection, event_bus)

        controller.move_relative("Z", 1.0)
        controller.move_relative("Z", 1.0)

        first.move_relative.assert_called_once_with("Z", 1.0)
        second.move_relative.assert_called_once_with("Z", 1.0)


class TestMoveAbsolute:
    def test_moves_by_difference(self, motion_controller, simulator):
        motion_controller.move_relative("Z", 5.0)
        result = motion_controller.move_absolute("Z", 12.5)
        assert result.success
        assert motion_controller.get_axis_position("Z") == 12.5
        assert simulator.get_position("Z") == 12.5

    def test_within_tolerance_skips_backend_but_notifies(self, event_bus, record_events):
        backend = Mock(is_simulated=True)
        connection = Mock()
        connection.get_active_backend.return_value = backend
        controller = StageMotionController(connection, event_bus)
        recorder = record_events(PositionChanged)

        result = controller.move_absolute("Z", 0.005)

        assert result.success
        assert result.position_um == 0.0
        backend.move_relative.assert_not_called()
        assert recorder.events == [PositionChanged(axis="Z", position_um=0.0)]

    def test_non_finite_target_rejected(self, motion_controller):
        assert motion_controller.move_absolute("Z", math.nan).error.kind is ErrorKind.VALIDATION


class TestMultiAxis:
    def test_moves_x_y_z_in_order(self, motion_controller, record_events):
        recorder = record_events(PositionChanged)

        result = motion_controller.set_multi_axis(10.0, 20.0, 30.0)

        assert result.success
        assert result.moved_axes == ["X", "Y", "Z"]
        assert result.positions == {"X": 10.0, "Y": 20.0, "Z": 30.0}
        assert [e.axis for e in recorder.events] == ["X", "Y", "Z"]

    def test_none_axes_are_left_alone(self, motion_controller):
        result = motion_controller.set_multi_axis(z_um=3.0)
        assert result.moved_axes == ["Z"]
        assert motion_controller.get_positions() == {"X": 0.0, "Y": 0.0, "Z": 3.0}

    def test_stops_at_first_failure(self, motion_controller, simulator):
        simulator.inject_fault("Y")

        result = motion_controller.set_multi_axis(10.0, 20.0, 30.0)

        assert not result.success
        assert result.moved_axes == ["X"]
        assert result.failed_axis == "Y"
        assert isinstance(result.error, StageMovementError)
        assert result.positions == {"X": 10.0, "Y": 0.0, "Z": 0.0}

    def test_partial_failure_is_recoverable(self, motion_controller, simulator):
        simulator.inject_fault("Y")
        motion_controller.set_multi_axis(10.0, 20.0, 30.0)
        simulator.clear_fault()

        result = motion_controller.set_multi_axis(10.0, 20.0, 30.0)

        assert result.success
        assert result.positions == {"X": 10.0, "Y": 20.0, "Z": 30.0}


class TestReset:
    def test_reset_single_axis(self, motion_controller):
        motion_controller.set_multi_axis(1.0, 2.0, 3.0)
        assert motion_controller.reset_axis("y")
        assert motion_controller.get_positions() == {"X": 1.0, "Y": 0.0, "Z": 3.0}

    def test_reset_all(self, motion_controller):
        motion_controller.set_multi_axis(1.0, 2.0, 3.0)
        assert motion_controller.reset_axis("ALL")
        assert motion_controller.get_positions() == {"X": 0.0, "Y": 0.0, "Z": 0.0}

    def test_reset_reports_failure(self, motion_controller, simulator):
        motion_controller.move_relative("Z", 3.0)
        simulator.inject_fault("Z")
        assert motion_controller.reset_axis() is False


class TestRefresh:
    def test_picks_up_external_moves(self, motion_controller, simulator, record_events):
        recorder = record_events(PositionChanged)
        simulator.set_position("Y", 42.0)

        assert motion_controller.refresh() is True
        assert motion_controller.get_axis_position("Y") == 42.0
        assert recorder.events == [PositionChanged(axis="Y", position_um=42.0)]

    def test_changes_within_tolerance_are_ignored(self, motion_controller, simulator, record_events):
        recorder = record_events(PositionChanged)
        simulator.set_position("Z", 0.005)

        assert motion_controller.refresh() is False
        assert motion_controller.get_axis_position("Z") == 0.0
        assert recorder.events == []

    def test_read_errors_skip_axis(self, event_bus):
        backend = Mock()
        backend.get_position.side_effect = lambda axis: {"X": 1.0, "Z": 3.0}[axis]
        connection = Mock()
        connection.get_active_backend.return_value = backend
        controller = StageMotionController(connection, event_bus)

        assert controller.refresh() is True
        assert controller.get_positions() == {"X": 1.0, "Y": 0.0, "Z": 3.0}

    def test_initialize_positions(self, motion_controller, simulator):
        simulator.set_position("Z", 7.0)
        assert motion_controller.initialize_positions() == {"X": 0.0, "Y": 0.0, "Z": 7.0}


class TestHelpers:
    def test_calculate_distance(self, motion_controller):
        motion_controller.set_multi_axis(1.0, 2.0, 3.0)
        assert motion_controller.calculate_distance(4.0, 6.0, 3.0) == pytest.approx(5.0)
        assert motion_controller.calculate_distance(x_um=1.0) == 0.0

    @pytest.mark.parametrize(
        "distance,step",
        [(0.5, 0.1), (1, 0.1), (3, 0.5), (5, 0.5), (20, 1.0), (50, 5.0), (100, 5.0), (500, 10.0), (-3, 0.5)],
    )
    def test_optimal_step_size(self, motion_controller, distance, step):
        assert motion_controller.optimal_step_size(distance) == step

    def test_optimal_step_size_respects_bounds(self, event_bus):
        controller = StageMotionController(Mock(), event_bus, StageConfig(min_step_um=1.0, max_step_um=5.0))
        assert controller.optimal_step_size(0.5) == 1.0
        assert controller.optimal_step_size(1000) == 5.0

    def test_presets(self, motion_controller):
        assert motion_controller.available_step_sizes() == [0.1, 0.5, 1.0, 5.0, 10.0, 50.0]
        assert motion_controller.default_step_size() == 1.0


class TestCommands:
    def test_move_commands(self, motion_controller, event_bus):
        event_bus.publish(MoveAxisCommand(axis="Z", delta_um=2.0))
        event_bus.publish(MoveAxisToCommand(axis="X", target_um=-4.0))
        assert motion_controller.get_positions() == {"X": -4.0, "Y": 0.0, "Z": 2.0}

    def test_set_position_and_reset_commands(self, motion_controller, event_bus):
        event_bus.publish(SetPositionCommand(x_um=1.0, y_um=2.0, z_um=3.0))
        assert motion_controller.get_positions() == {"X": 1.0, "Y": 2.0, "Z": 3.0}

        event_bus.publish(ResetAxisCommand())
        assert motion_controller.get_positions() == {"X": 0.0, "Y": 0.0, "Z": 0.0}

    def test_refresh_command(self, motion_controller, event_bus, simulator):
        simulator.set_position("X", 9.0)
        event_bus.publish(RefreshPositionsCommand())
        assert motion_controller.get_axis_position("X") == 9.0

    def test_shutdown_unsubscribes(self, motion_controller, event_bus):
        motion_controller.shutdown()
        event_bus.publish(MoveAxisCommand(axis="Z", delta_um=2.0))
        assert motion_controller.get_axis_position("Z") == 0.0


class TestSimulationSeeding:
    def test_simulator_continues_from_last_hardware_position(self, event_bus, simulator):
        hardware = Mock(is_simulated=False)
        hardware.move_relative.return_value = 250.0
        connection = Mock()
        connection.simulator = simulator
        connection.get_active_backend.return_value = hardware
        controller = StageMotionController(connection, event_bus)
        controller.move_relative("Z", 250.0)

        event_bus.publish(ConnectionStateChanged(state="SIMULATION", message="lost"))
        connection.get_active_backend.return_value = simulator

        assert simulator.get_position("Z") == 250.0
        assert controller.move_relative("Z", 1.0).position_um == 251.0
        assert simulator.get_position("Z") == 251.0

    def test_other_states_do_not_seed(self, event_bus, simulator):
        connection = Mock()
        connection.simulator = simulator
        connection.get_active_backend.return_value = Mock(is_simulated=False, **{"move_relative.return_value": 5.0})
        controller = StageMotionController(connection, event_bus)
        controller.move_relative("Z", 5.0)

        event_bus.publish(ConnectionStateChanged(state="FAILED"))

        assert simulator.get_position("Z") == 0.0
