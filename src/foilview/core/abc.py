"""Abstract interfaces the core consumes from hardware collaborators."""

import abc
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import foilview.core.logging


class MoveKind(Enum):
    RELATIVE = "relative"
    ABSOLUTE = "absolute"


@dataclass(frozen=True)
class MoveRequest:
    """One requested move.  Relative moves need min_step_um <= abs(magnitude_um) <= max_step_um."""

    axis: str
    kind: MoveKind
    magnitude_um: float
    min_step_um: float = 0.01
    max_step_um: float = 1000.0


@dataclass
class AxisPosition:
    """Confirmed position of one axis plus the last target it was commanded to."""

    current_um: float = 0.0
    target_um: float = 0.0
    tolerance_um: float = 0.01

    @property
    def is_settled(self) -> bool:
        return abs(self.current_um - self.target_um) <= self.tolerance_um


class AbstractStageBackend(abc.ABC):
    """
    The thing that actually moves an axis: a hardware adapter or a simulator.

    Any UI automation or driver detail needed to reach the acquisition program lives behind
    this interface.  Positions and deltas are micrometers.
    """

    def __init__(self, name: Optional[str] = None):
        self._name = name or self.__class__.__name__
        self._log = foilview.core.logging.get_logger(self._name)

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_simulated(self) -> bool:
        return False

    @abc.abstractmethod
    def connect(self) -> bool:
        """
        Try to reach the control surface.  Returns True on success.  May raise on discovery
        errors; the caller treats a raise the same as False, using the exception text as the
        reason.
        """
        pass

    def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    def get_position(self, axis: str) -> float:
        pass

    @abc.abstractmethod
    def move_relative(self, axis: str, delta_um: float) -> float:
        """Move axis by delta_um and return the confirmed absolute position."""
        pass

    def get_positions(self, axes) -> Dict[str, float]:
        return {axis: self.get_position(axis) for axis in axes}
