"""Tests for SimulatedStageBackend."""

import pytest

from foilview.backend.drivers.simulated import SimulatedStageBackend
from foilview.core.errors import StageMovementError


def test_starts_at_origin():
    stage = SimulatedStageBackend()
    assert stage.is_simulated
    assert stage.connect() is True
    assert stage.get_positions(["X", "Y", "Z"]) == {"X": 0.0, "Y": 0.0, "Z": 0.0}


def test_move_relative_returns_confirmed_position():
    stage = SimulatedStageBackend()
    assert stage.move_relative("Z", 5.0) == 5.0
    assert stage.move_relative("z", -1.5) == 3.5
    assert stage.get_position("Z") == 3.5


def test_unknown_axis():
    stage = SimulatedStageBackend(axes=["Z"])
    with pytest.raises(ValueError):
        stage.move_relative("X", 1.0)


def test_limits_clamp():
    stage = SimulatedStageBackend(limits_um={"Z": (-10.0, 10.0)})
    assert stage.move_relative("Z", 25.0) == 10.0
    assert stage.move_relative("Z", -50.0) == -10.0


def test_fault_injection():
    stage = SimulatedStageBackend()
    stage.inject_fault("Z", "limit switch")

    with pytest.raises(StageMovementError) as exc_info:
        stage.move_relative("Z", 1.0)
    assert exc_info.value.axis == "Z"
    assert stage.get_position("Z") == 0.0

    stage.clear_fault("Z")
    assert stage.move_relative("Z", 1.0) == 1.0


def test_set_position_and_reset():
    stage = SimulatedStageBackend()
    stage.set_position("X", 120.0)
    assert stage.get_position("X") == 120.0
    stage.reset()
    assert stage.get_position("X") == 0.0


def test_simulated_delays(monkeypatch):
    sleeps = []
    monkeypatch.setattr("foilview.backend.drivers.simulated.time.sleep", sleeps.append)
    stage = SimulatedStageBackend(simulate_delays=True, move_delay_per_um=0.01)

    stage.move_relative("Z", 100.0)

    assert sleeps == [pytest.approx(1.0)]
