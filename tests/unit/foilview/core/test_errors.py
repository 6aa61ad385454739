"""Tests for the error taxonomy."""

from foilview.core.errors import (
    ErrorKind,
    FoilviewError,
    SchedulerResourceError,
    StageConnectionError,
    StageMovementError,
    StageValidationError,
)


def test_kinds():
    assert StageConnectionError("x").kind is ErrorKind.CONNECTION
    assert StageValidationError("x").kind is ErrorKind.VALIDATION
    assert StageMovementError("x").kind is ErrorKind.MOVEMENT
    assert SchedulerResourceError("x").kind is ErrorKind.RESOURCE


def test_all_errors_share_a_base():
    for cls in (StageConnectionError, StageValidationError, StageMovementError, SchedulerResourceError):
        assert issubclass(cls, FoilviewError)


def test_cause_is_kept():
    cause = OSError("pipe closed")
    error = StageMovementError("move failed", axis="Z", cause=cause)
    assert error.cause is cause
    assert error.axis == "Z"
    assert str(error) == "move failed"


def test_user_messages():
    assert "timed out" in StageConnectionError("Timeout waiting for window").user_message()
    assert "simulation" in StageConnectionError("window not found").user_message()
    assert StageMovementError("limit hit", axis="Z").user_message() == "Stage movement on Z failed: limit hit"
    assert StageMovementError("limit hit").user_message() == "Stage movement failed: limit hit"
    assert StageValidationError("Step too big").user_message() == "Step too big"
    assert "timer" in SchedulerResourceError("can't start new thread").user_message()
