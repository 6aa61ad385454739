"""
Simulated stage backend used whenever the acquisition program can't be reached.

Positions are tracked in software, in micrometers, for every configured axis.  Moves are
confirmed immediately unless simulate_delays is on.
"""

import threading
import time
from typing import Dict, Iterable, Optional, Tuple

from foilview.core.abc import AbstractStageBackend
from foilview.core.errors import StageMovementError


class SimulatedStageBackend(AbstractStageBackend):
    """
    Software-only stage.

    Features:
        - Internal position tracking per axis
        - Optional software limits (moves are clamped, with a warning)
        - Optional movement delays for realistic timing
        - Test helpers for setting positions and injecting faults
    """

    def __init__(
        self,
        axes: Iterable[str] = ("X", "Y", "Z"),
        simulate_delays: bool = False,
        move_delay_per_um: float = 0.0001,
        limits_um: Optional[Dict[str, Tuple[Optional[float], Optional[float]]]] = None,
    ):
        """
        Args:
            axes: Axis identifiers this simulator models
            simulate_delays: If True, sleep move_delay_per_um seconds per micrometer moved
            limits_um: Optional axis -> (min, max) software limits; None means unbounded
        """
        super().__init__("SimulatedStageBackend")
        self._positions: Dict[str, float] = {axis.upper(): 0.0 for axis in axes}
        self._limits = {axis.upper(): lim for axis, lim in (limits_um or {}).items()}
        self._simulate_delays = simulate_delays
        self._move_delay_per_um = move_delay_per_um
        self._lock = threading.Lock()
        self._fault_axes: Dict[str, str] = {}

        self._log.info(f"SimulatedStageBackend initialized for axes {list(self._positions)}")

    @property
    def is_simulated(self) -> bool:
        return True

    @property
    def axes(self):
        return list(self._positions)

    def connect(self) -> bool:
        return True

    def get_position(self, axis: str) -> float:
        with self._lock:
            return self._positions[self._check_axis(axis)]

    def move_relative(self, axis: str, delta_um: float) -> float:
        axis = self._check_axis(axis)
        fault = self._fault_axes.get(axis)
        if fault is not None:
            raise StageMovementError(fault, axis=axis)

        with self._lock:
            current = self._positions[axis]
            target = self._clamp(axis, current + delta_um)

        if self._simulate_delays and target != current:
            time.sleep(abs(target - current) * self._move_delay_per_um)

        with self._lock:
            self._positions[axis] = target

        self._log.debug(f"Simulated {axis} movement: {current:.2f} um -> {target:.2f} um")
        return target

    def set_position(self, axis: str, position_um: float) -> None:
        """Place an axis without a move, e.g. to continue from the last hardware position."""
        axis = self._check_axis(axis)
        with self._lock:
            self._positions[axis] = position_um

    def reset(self) -> None:
        with self._lock:
            for axis in self._positions:
                self._positions[axis] = 0.0
        self._log.info("Simulation reset to initial state")

    def inject_fault(self, axis: str, message: str = "simulated motor fault") -> None:
        """Make every move on axis fail until clear_fault() is called."""
        self._fault_axes[self._check_axis(axis)] = message

    def clear_fault(self, axis: Optional[str] = None) -> None:
        if axis is None:
            self._fault_axes.clear()
        else:
            self._fault_axes.pop(axis.upper(), None)

    def _check_axis(self, axis: str) -> str:
        normalized = axis.upper()
        if normalized not in self._positions:
            raise ValueError(f"Unknown axis: {axis}")
        return normalized

    def _clamp(self, axis: str, target: float) -> float:
        lower, upper = self._limits.get(axis, (None, None))
        clamped = target
        if upper is not None:
            clamped = min(clamped, upper)
        if lower is not None:
            clamped = max(clamped, lower)
        if clamped != target:
            self._log.warning(f"Movement to {axis}={target:.3f} clamped to {clamped:.3f} due to limits")
        return clamped
