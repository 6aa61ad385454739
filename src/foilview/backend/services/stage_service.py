# foilview/backend/services/stage_service.py
"""Service for stage positioning."""

import math
import numbers
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, TYPE_CHECKING

import numpy as np

from foilview.backend.services.base import BaseService
from foilview.core.abc import AxisPosition, MoveKind, MoveRequest
from foilview.core.config import StageConfig
from foilview.core.errors import FoilviewError, StageMovementError, StageValidationError
from foilview.core.events import (
    ConnectionStateChanged,
    EventBus,
    MoveAxisCommand,
    MoveAxisToCommand,
    PositionChanged,
    RefreshPositionsCommand,
    ResetAxisCommand,
    SetPositionCommand,
)

if TYPE_CHECKING:
    from foilview.backend.controllers.connection_controller import ConnectionManager

ALL_AXES = "ALL"


@dataclass
class MoveResult:
    """Outcome of a single axis move.  position_um is the confirmed position afterwards."""

    success: bool
    axis: str
    position_um: Optional[float] = None
    error: Optional[FoilviewError] = None


@dataclass
class MultiAxisResult:
    success: bool
    moved_axes: List[str] = field(default_factory=list)
    failed_axis: Optional[str] = None
    error: Optional[FoilviewError] = None
    positions: Dict[str, float] = field(default_factory=dict)


class StageMotionController(BaseService):
    """
    Authoritative per-axis stage position.

    Every move is validated, sent to whatever backend the ConnectionManager says is active
    right now, and committed only once the backend confirms it.  Each committed position is
    announced with exactly one PositionChanged.

    All public methods are safe to call from any thread; moves are serialised by an RLock
    which is held while the backend is driven.
    """

    def __init__(self, connection: "ConnectionManager", event_bus: EventBus, config: Optional[StageConfig] = None):
        super().__init__(event_bus)
        self._connection = connection
        self._config = config or StageConfig()
        self._lock = threading.RLock()
        self._positions: Dict[str, AxisPosition] = {
            axis: AxisPosition(tolerance_um=self._config.position_tolerance_um) for axis in self._config.axes
        }

        self.subscribe(MoveAxisCommand, self._on_move_axis_command)
        self.subscribe(MoveAxisToCommand, self._on_move_axis_to_command)
        self.subscribe(SetPositionCommand, self._on_set_position_command)
        self.subscribe(ResetAxisCommand, self._on_reset_axis_command)
        self.subscribe(RefreshPositionsCommand, self._on_refresh_command)
        self.subscribe(ConnectionStateChanged, self._on_connection_state_changed)

    @property
    def config(self) -> StageConfig:
        return self._config

    @property
    def axes(self) -> List[str]:
        return list(self._config.axes)

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    def _on_move_axis_command(self, event: MoveAxisCommand):
        self.move_relative(event.axis, event.delta_um)

    def _on_move_axis_to_command(self, event: MoveAxisToCommand):
        self.move_absolute(event.axis, event.target_um)

    def _on_set_position_command(self, event: SetPositionCommand):
        self.set_multi_axis(event.x_um, event.y_um, event.z_um)

    def _on_reset_axis_command(self, event: ResetAxisCommand):
        self.reset_axis(event.axis)

    def _on_refresh_command(self, event: RefreshPositionsCommand):
        self.refresh()

    def _on_connection_state_changed(self, event: ConnectionStateChanged):
        if event.state != "SIMULATION":
            return
        # Keep the simulated stage where the hardware was last seen.
        set_position = getattr(self._connection.simulator, "set_position", None)
        if set_position is None:
            return
        with self._lock:
            for axis, position in self._positions.items():
                try:
                    set_position(axis, position.current_um)
                except Exception as e:
                    self._log.warning(f"Could not seed simulator position for {axis}: {e}")
        self._log.info(f"Simulator seeded with last known positions {self.get_positions()}")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def normalize_axis(self, axis: str) -> str:
        normalized = axis.strip().upper() if isinstance(axis, str) else ""
        if normalized not in self._positions:
            raise StageValidationError(f"Unknown axis '{axis}'. Valid axes: {', '.join(self._config.axes)}")
        return normalized

    @staticmethod
    def _validate(request: MoveRequest) -> None:
        magnitude = request.magnitude_um
        if isinstance(magnitude, bool) or not isinstance(magnitude, numbers.Real) or not math.isfinite(magnitude):
            raise StageValidationError(f"Movement for {request.axis} must be a finite number, got {magnitude!r}")
        if request.kind is MoveKind.RELATIVE:
            size = abs(magnitude)
            if size < request.min_step_um or size > request.max_step_um:
                raise StageValidationError(
                    f"Step size {size:g} um on {request.axis} is outside "
                    f"[{request.min_step_um:g}, {request.max_step_um:g}] um"
                )

    def validate_relative_move(self, axis: str, delta_um: float) -> float:
        """
        Check a relative move without performing it.  Returns delta_um as a plain float.

        Raises:
            StageValidationError: unknown axis, non-numeric delta or step out of bounds
        """
        return self._request(axis, MoveKind.RELATIVE, delta_um).magnitude_um

    def _request(self, axis: str, kind: MoveKind, magnitude_um: float) -> MoveRequest:
        request = MoveRequest(
            axis=self.normalize_axis(axis),
            kind=kind,
            magnitude_um=magnitude_um,
            min_step_um=self._config.min_step_um,
            max_step_um=self._config.max_step_um,
        )
        self._validate(request)
        # numpy scalars and ints become plain floats from here on.
        return replace(request, magnitude_um=float(magnitude_um))

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    def move_relative(self, axis: str, delta_um: float) -> MoveResult:
        """Move one axis by delta_um.  Nothing is mutated unless the backend confirms."""
        try:
            request = self._request(axis, MoveKind.RELATIVE, delta_um)
        except StageValidationError as e:
            self._log.warning(f"Rejected move: {e}")
            return MoveResult(success=False, axis=str(axis), error=e)

        axis = request.axis
        with self._lock:
            position = self._positions[axis]
            backend = self._connection.get_active_backend()
            target = position.current_um + request.magnitude_um
            try:
                # Both backends report where the axis actually ended: hardware may land off
                # target and the simulator clamps to its software limits.
                new_position = float(backend.move_relative(axis, request.magnitude_um))
            except Exception as e:
                error = e if isinstance(e, StageMovementError) else StageMovementError(str(e), axis=axis, cause=e)
                self._log.error(f"Move of {axis} by {request.magnitude_um:g} um failed: {e}")
                return MoveResult(success=False, axis=axis, position_um=position.current_um, error=error)

            position.current_um = new_position
            position.target_um = target
            self._log.debug(f"{axis} moved by {request.magnitude_um:g} um to {new_position:.3f} um")
            self.publish(PositionChanged(axis=axis, position_um=new_position))
            return MoveResult(success=True, axis=axis, position_um=new_position)

    def move_absolute(self, axis: str, target_um: float) -> MoveResult:
        """
        Move one axis to target_um.  A target already within tolerance succeeds without
        touching the backend but is still announced.
        """
        try:
            request = self._request(axis, MoveKind.ABSOLUTE, target_um)
        except StageValidationError as e:
            self._log.warning(f"Rejected move: {e}")
            return MoveResult(success=False, axis=str(axis), error=e)

        axis = request.axis
        with self._lock:
            position = self._positions[axis]
            delta = request.magnitude_um - position.current_um
            if abs(delta) <= position.tolerance_um:
                position.target_um = request.magnitude_um
                self.publish(PositionChanged(axis=axis, position_um=position.current_um))
                return MoveResult(success=True, axis=axis, position_um=position.current_um)
            return self.move_relative(axis, delta)

    def set_multi_axis(
        self, x_um: Optional[float] = None, y_um: Optional[float] = None, z_um: Optional[float] = None
    ) -> MultiAxisResult:
        """
        Absolute move of X, then Y, then Z.  Axes given as None are left alone.  Stops at the
        first failure; axes already moved stay where they are.
        """
        result = MultiAxisResult(success=True)
        with self._lock:
            for axis, target in (("X", x_um), ("Y", y_um), ("Z", z_um)):
                if target is None:
                    continue
                move = self.move_absolute(axis, target)
                if not move.success:
                    self._log.warning(f"Multi-axis move stopped at {axis}: {move.error}")
                    result.success = False
                    result.failed_axis = move.axis
                    result.error = move.error
                    break
                result.moved_axes.append(move.axis)
            result.positions = self.get_positions()
        return result

    def reset_axis(self, axis: str = ALL_AXES) -> bool:
        """Move axis (or every axis, for "ALL") back to zero."""
        if isinstance(axis, str) and axis.strip().upper() == ALL_AXES:
            with self._lock:
                results = [self.move_absolute(a, 0.0) for a in self._config.axes]
            return all(r.success for r in results)
        return self.move_absolute(axis, 0.0).success

    def refresh(self) -> bool:
        """
        Re-read every axis from the active backend, e.g. after the stage was moved outside
        this application.  Returns True if any axis changed by more than the tolerance.
        """
        changed = False
        with self._lock:
            backend = self._connection.get_active_backend()
            for axis, position in self._positions.items():
                try:
                    reported = float(backend.get_position(axis))
                except Exception as e:
                    self._log.warning(f"Could not read {axis} position from {backend.name}: {e}")
                    continue
                if abs(reported - position.current_um) > position.tolerance_um:
                    position.current_um = reported
                    position.target_um = reported
                    changed = True
                    self.publish(PositionChanged(axis=axis, position_um=reported))
        return changed

    def initialize_positions(self) -> Dict[str, float]:
        self.refresh()
        positions = self.get_positions()
        self._log.info(
            "Stage positions initialized: " + ", ".join(f"{a}={p:.1f}" for a, p in positions.items())
        )
        return positions

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_positions(self) -> Dict[str, float]:
        with self._lock:
            return {axis: position.current_um for axis, position in self._positions.items()}

    def get_axis_position(self, axis: str) -> float:
        with self._lock:
            return self._positions[self.normalize_axis(axis)].current_um

    def is_settled(self, axis: str) -> bool:
        with self._lock:
            return self._positions[self.normalize_axis(axis)].is_settled

    def calculate_distance(
        self, x_um: Optional[float] = None, y_um: Optional[float] = None, z_um: Optional[float] = None
    ) -> float:
        """Straight-line distance from the current position to a target; omitted axes don't move."""
        current = self.get_positions()
        target = {"X": x_um, "Y": y_um, "Z": z_um}
        deltas = [
            (target[axis] if target.get(axis) is not None else position) - position
            for axis, position in current.items()
        ]
        return float(np.linalg.norm(deltas))

    def optimal_step_size(self, distance_um: float) -> float:
        """Preset step size suited to covering distance_um, clamped to the step bounds."""
        distance = abs(distance_um)
        if distance <= 1:
            step = 0.1
        elif distance <= 5:
            step = 0.5
        elif distance <= 20:
            step = 1.0
        elif distance <= 100:
            step = 5.0
        else:
            step = 10.0
        return max(self._config.min_step_um, min(self._config.max_step_um, step))

    def available_step_sizes(self) -> List[float]:
        return list(self._config.step_sizes_um)

    def default_step_size(self) -> float:
        return self._config.default_step_size_um
