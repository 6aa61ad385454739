"""
Error taxonomy for the stage control core.

Errors are split by how they are handled, not by where they come from:

- CONNECTION: discovery failure, lost link, failed health check.  Always absorbed by the
  ConnectionManager and turned into a state transition plus a log line.
- VALIDATION: bad step size/count/delay, unknown axis, start() while running.  Rejected
  before any state mutation and returned to the caller inside a result object.
- MOVEMENT: the backend reported a fault.  Aborts an auto-step run and is surfaced
  through AutoStepFailed; positions stay at the last confirmed value.
- RESOURCE: a periodic task or worker could not be created.  Fails the operation that
  asked for it, never the process.

None of these are meant to cross the core boundary as raised exceptions; they are carried
in results and events.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    CONNECTION = "connection"
    VALIDATION = "validation"
    MOVEMENT = "movement"
    RESOURCE = "resource"


class FoilviewError(Exception):
    """Base class for all stage control errors."""

    kind: ErrorKind = ErrorKind.MOVEMENT

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def user_message(self) -> str:
        """Short, non-technical description suitable for a status bar."""
        return self.message


class StageConnectionError(FoilviewError):
    kind = ErrorKind.CONNECTION

    def user_message(self) -> str:
        text = self.message.lower()
        if "timeout" in text or "timed out" in text:
            return "Connection timed out. Check that the acquisition software is running and try again."
        return "The acquisition software is not available. Running in simulation mode."


class StageValidationError(FoilviewError):
    kind = ErrorKind.VALIDATION


class StageMovementError(FoilviewError):
    kind = ErrorKind.MOVEMENT

    def __init__(self, message: str, axis: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)
        self.axis = axis

    def user_message(self) -> str:
        if self.axis:
            return f"Stage movement on {self.axis} failed: {self.message}"
        return f"Stage movement failed: {self.message}"


class SchedulerResourceError(FoilviewError):
    kind = ErrorKind.RESOURCE

    def user_message(self) -> str:
        return f"Could not start background timer: {self.message}"
