"""
Unattended focus-search sweeps.

An auto-step run moves one axis by a fixed signed step every `delay_s`, optionally sampling a
caller-supplied metric after each move, and reports the position where the metric peaked.

    IDLE -> RUNNING -> {COMPLETED | CANCELLED | ERRORED} -> IDLE

Ticks run on a PeriodicTask thread and hold the sequencer lock for their whole body, so a
stop() from any thread either happens before a tick starts (the tick then sees the run is
over) or waits for it to finish.  Lock order is sequencer -> motion controller -> connection
manager; code holding the motion controller's lock must not call into the sequencer.
"""

from __future__ import annotations

import numbers
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, List, Optional, Tuple, Union

import numpy as np

import foilview.core.logging
from foilview.backend.services.stage_service import StageMotionController
from foilview.core.config import AutoStepLimits
from foilview.core.errors import FoilviewError, SchedulerResourceError, StageMovementError, StageValidationError
from foilview.core.events import (
    AutoStepCancelled,
    AutoStepCompleted,
    AutoStepFailed,
    AutoStepProgress,
    AutoStepStarted,
    EventBus,
    StartAutoStepCommand,
    StopAutoStepCommand,
)
from foilview.core.state_machine import StateMachine
from foilview.core.utils.periodic_task import PeriodicTask
from foilview.core.utils.safe_callback import safe_callback

MetricSampler = Callable[[], float]
Sample = Tuple[float, float]


class AutoStepState(Enum):
    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    ERRORED = auto()


@dataclass(frozen=True)
class AutoStepParameters:
    """What the operator asked for.  step_size_um is a magnitude; direction carries the sign."""

    step_size_um: float
    num_steps: int
    delay_s: float
    direction: Union[int, float, str] = 1
    record_metrics: bool = True
    axis: str = "Z"

    @property
    def signed_step_um(self) -> float:
        return float(abs(self.step_size_um)) * parse_direction(self.direction)


@dataclass
class AutoStepSession:
    """Live state of one run.  Owned by the sequencer and dropped when the run ends."""

    axis: str
    step_um: float  # signed
    total_steps: int
    delay_s: float
    record_metrics: bool
    start_position_um: float = 0.0
    current_step: int = 0
    samples: List[Sample] = field(default_factory=list)
    positions: List[float] = field(default_factory=list)
    start_time: float = field(default_factory=time.monotonic)


@dataclass
class AutoStepSummary:
    total_steps: int
    duration_s: float
    average_step_rate: float
    start_position_um: float
    end_position_um: float
    total_distance_um: float
    actual_step_size_um: float
    requested_step_um: float
    requested_steps: int
    direction: int
    peak_position_um: Optional[float] = None
    peak_metric: Optional[float] = None


@dataclass
class ExecutionPlan:
    is_valid: bool
    steps_um: List[float] = field(default_factory=list)  # offsets from the start position
    total_distance_um: float = 0.0
    estimated_duration_s: float = 0.0
    direction: int = 1
    error_message: str = ""


@dataclass
class StartResult:
    success: bool
    error: Optional[FoilviewError] = None


# ============================================================
# Pure helpers
# ============================================================


def parse_direction(value) -> int:
    """
    Normalize a direction as the UI provides it.

    "up"/"down" (any case) map to +1/-1, numbers map to their sign, and anything else
    (including 0) means up.
    """
    if isinstance(value, str):
        return -1 if value.strip().lower() == "down" else 1
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        return -1 if value < 0 else 1
    return 1


def _as_step_count(num_steps) -> int:
    if isinstance(num_steps, bool) or not isinstance(num_steps, numbers.Real):
        raise StageValidationError(f"Number of steps must be an integer, got {num_steps!r}")
    if not np.isfinite(num_steps) or int(num_steps) != num_steps:
        raise StageValidationError(f"Number of steps must be an integer, got {num_steps!r}")
    return int(num_steps)


def validate_auto_step_parameters(
    step_size_um,
    num_steps,
    delay_s=None,
    limits: Optional[AutoStepLimits] = None,
) -> None:
    """
    Check an auto-step request against limits.  delay_s may be None to skip the delay check.

    Raises:
        StageValidationError: describing the first problem found
    """
    limits = limits or AutoStepLimits()

    if (
        isinstance(step_size_um, bool)
        or not isinstance(step_size_um, numbers.Real)
        or not limits.min_step_um <= step_size_um <= limits.max_step_um
    ):
        raise StageValidationError(
            f"Step size must be between {limits.min_step_um:.2f} and {limits.max_step_um:.0f} um"
        )

    steps = _as_step_count(num_steps)
    if not limits.min_steps <= steps <= limits.max_steps:
        raise StageValidationError(f"Number of steps must be between {limits.min_steps} and {limits.max_steps}")

    if delay_s is not None and (
        isinstance(delay_s, bool)
        or not isinstance(delay_s, numbers.Real)
        or not limits.min_delay_s <= delay_s <= limits.max_delay_s
    ):
        raise StageValidationError(
            f"Delay must be between {limits.min_delay_s:.1f} and {limits.max_delay_s:.1f} seconds"
        )


def create_execution_plan(
    step_size_um: float,
    num_steps: int,
    direction=1,
    delay_s: Optional[float] = None,
    limits: Optional[AutoStepLimits] = None,
) -> ExecutionPlan:
    """Preview of a run: target offsets per step, total distance and expected duration."""
    try:
        validate_auto_step_parameters(step_size_um, num_steps, delay_s, limits)
    except StageValidationError as e:
        return ExecutionPlan(is_valid=False, error_message=e.message)

    sign = parse_direction(direction)
    steps = _as_step_count(num_steps)
    offsets = (np.arange(1, steps + 1) * step_size_um * sign).tolist()
    return ExecutionPlan(
        is_valid=True,
        steps_um=offsets,
        total_distance_um=steps * step_size_um,
        estimated_duration_s=steps * delay_s if delay_s is not None else 0.0,
        direction=sign,
    )


def find_peak(samples: List[Sample]) -> Tuple[Optional[float], Optional[float]]:
    """(position, metric) of the largest metric; the earliest wins ties."""
    if not samples:
        return None, None
    metrics = np.asarray([metric for _, metric in samples], dtype=float)
    index = int(np.argmax(metrics))
    return samples[index][0], samples[index][1]


def summarize_session(session: AutoStepSession, end_time: Optional[float] = None) -> AutoStepSummary:
    duration = (end_time if end_time is not None else time.monotonic()) - session.start_time
    steps = session.current_step
    end_position = session.positions[-1] if session.positions else session.start_position_um
    total_distance = abs(end_position - session.start_position_um)
    peak_position, peak_metric = find_peak(session.samples)

    return AutoStepSummary(
        total_steps=steps,
        duration_s=duration,
        average_step_rate=steps / max(duration, 0.1),
        start_position_um=session.start_position_um,
        end_position_um=end_position,
        total_distance_um=total_distance,
        actual_step_size_um=total_distance / steps if steps else 0.0,
        requested_step_um=abs(session.step_um),
        requested_steps=session.total_steps,
        direction=1 if session.step_um >= 0 else -1,
        peak_position_um=peak_position,
        peak_metric=peak_metric,
    )


# ============================================================
# Sequencer
# ============================================================


class AutoStepSequencer(StateMachine[AutoStepState]):
    def __init__(
        self,
        motion: StageMotionController,
        event_bus: EventBus,
        limits: Optional[AutoStepLimits] = None,
    ) -> None:
        transitions = {
            AutoStepState.IDLE: {AutoStepState.RUNNING},
            AutoStepState.RUNNING: {AutoStepState.COMPLETED, AutoStepState.CANCELLED, AutoStepState.ERRORED},
            AutoStepState.COMPLETED: {AutoStepState.IDLE},
            AutoStepState.CANCELLED: {AutoStepState.IDLE},
            AutoStepState.ERRORED: {AutoStepState.IDLE},
        }
        super().__init__(
            initial_state=AutoStepState.IDLE,
            transitions=transitions,
            event_bus=event_bus,
        )

        self._log = foilview.core.logging.get_logger(self.__class__.__name__)
        # Note: StateMachine base class provides self._lock (an RLock)
        self._bus = event_bus
        self._motion = motion
        self._limits = limits or AutoStepLimits()
        self._session: Optional[AutoStepSession] = None
        self._sampler: Optional[MetricSampler] = None
        self._task: Optional[PeriodicTask] = None
        self._last_samples: List[Sample] = []
        self._last_summary: Optional[AutoStepSummary] = None

        self._bus.subscribe(StartAutoStepCommand, self._on_start_command)
        self._bus.subscribe(StopAutoStepCommand, self._on_stop_command)

    def _publish_state_changed(self, old_state: AutoStepState, new_state: AutoStepState) -> None:
        # Lifecycle events carry run data and are published explicitly by start/stop/_tick.
        self._log.debug(f"Auto-step {old_state.name} -> {new_state.name}")

    def _on_start_command(self, event: StartAutoStepCommand) -> None:
        params = AutoStepParameters(
            step_size_um=event.step_size_um,
            num_steps=event.num_steps,
            delay_s=event.delay_s,
            direction=event.direction,
            record_metrics=event.record_metrics,
            axis=event.axis,
        )
        result = self.start(params, event.metric_sampler)
        if not result.success:
            self._log.warning(f"StartAutoStepCommand rejected: {result.error}")

    def _on_stop_command(self, event: StopAutoStepCommand) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def limits(self) -> AutoStepLimits:
        return self._limits

    def is_sequence_running(self) -> bool:
        return self._is_in_state(AutoStepState.RUNNING)

    def get_progress(self) -> Tuple[int, int]:
        """(current_step, total_steps) of the active run, (0, 0) when idle."""
        with self._lock:
            if self._session is None:
                return 0, 0
            return self._session.current_step, self._session.total_steps

    def get_last_samples(self) -> List[Sample]:
        """Samples of the most recent run, however it ended."""
        with self._lock:
            return list(self._last_samples)

    def get_last_summary(self) -> Optional[AutoStepSummary]:
        """Summary of the most recent completed run."""
        with self._lock:
            return self._last_summary

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start(self, params: AutoStepParameters, metric_sampler: Optional[MetricSampler] = None) -> StartResult:
        """
        Validate params and arm a run.  Rejections never change state; the returned result
        carries a StageValidationError (bad request, or already running) or a
        SchedulerResourceError (the timer thread couldn't be created).
        """
        with self._lock:
            if self._state is not AutoStepState.IDLE:
                error = StageValidationError("An auto-step sequence is already running")
                self._log.warning(f"Rejected start: {error}")
                return StartResult(success=False, error=error)

            try:
                validate_auto_step_parameters(params.step_size_um, params.num_steps, params.delay_s, self._limits)
                axis = self._motion.normalize_axis(params.axis)
                # The per-tick move must also pass the motion controller's own step bounds.
                self._motion.validate_relative_move(axis, params.signed_step_um)
                if params.record_metrics and not callable(metric_sampler):
                    raise StageValidationError("Recording metrics requires a metric sampler")
            except StageValidationError as e:
                self._log.warning(f"Rejected start: {e}")
                return StartResult(success=False, error=e)

            session = AutoStepSession(
                axis=axis,
                step_um=params.signed_step_um,
                total_steps=_as_step_count(params.num_steps),
                delay_s=float(params.delay_s),
                record_metrics=bool(params.record_metrics),
                start_position_um=self._motion.get_axis_position(axis),
            )

            task: Optional[PeriodicTask] = None

            def _tick():
                self._tick(session, task)

            task = PeriodicTask(f"auto-step-{axis}", session.delay_s, _tick)
            try:
                task.start()
            except SchedulerResourceError as e:
                self._log.error(f"Could not arm auto-step timer: {e}")
                return StartResult(success=False, error=e)

            self._session = session
            self._sampler = metric_sampler if session.record_metrics else None
            self._task = task
            self._last_samples = []
            self._transition_to(AutoStepState.RUNNING)
            self._log.info(
                f"Auto-step started: {session.total_steps} steps of {session.step_um:+g} um on {axis} "
                f"every {session.delay_s:g}s"
            )
            self._bus.publish(
                AutoStepStarted(
                    axis=axis,
                    step_um=session.step_um,
                    total_steps=session.total_steps,
                    delay_s=session.delay_s,
                    record_metrics=session.record_metrics,
                )
            )
            return StartResult(success=True)

    def stop(self) -> bool:
        """
        Cancel the active run.  Idempotent; returns False if nothing was running.

        The timer thread has exited by the time this returns (unless called from inside a
        tick, in which case it exits as soon as that tick unwinds).
        """
        with self._lock:
            if self._state is not AutoStepState.RUNNING:
                return False
            session = self._session
            self._transition_to(AutoStepState.CANCELLED)
            task = self._detach(session)
            self._log.info(f"Auto-step cancelled at step {session.current_step}/{session.total_steps}")
            self._bus.publish(AutoStepCancelled(current_step=session.current_step, total_steps=session.total_steps))
            self._transition_to(AutoStepState.IDLE)

        # Joined outside the lock: an in-flight tick may be waiting for it.
        if task is not None:
            task.cancel()
        return True

    def shutdown(self) -> None:
        self.stop()
        self._bus.unsubscribe(StartAutoStepCommand, self._on_start_command)
        self._bus.unsubscribe(StopAutoStepCommand, self._on_stop_command)

    def _detach(self, session: AutoStepSession) -> Optional[PeriodicTask]:
        task = self._task
        self._task = None
        self._session = None
        self._sampler = None
        self._last_samples = list(session.samples)
        if task is not None and task.in_task_thread():
            task.cancel()
        return task

    def _is_current(self, session: AutoStepSession) -> bool:
        return self._state is AutoStepState.RUNNING and self._session is session

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def _tick(self, session: AutoStepSession, task: Optional[PeriodicTask]) -> None:
        with self._lock:
            if not self._is_current(session):
                if task is not None:
                    task.cancel()
                return

            move = self._motion.move_relative(session.axis, session.step_um)
            if not move.success:
                self._fail(session, move.error)
                return
            # Handlers of the PositionChanged above may already have stopped the run.
            if not self._is_current(session):
                return

            if session.record_metrics:
                sampled = safe_callback(self._sample, label="metric sampler")
                if not sampled.success:
                    self._fail(
                        session,
                        StageMovementError(
                            f"Metric sampler failed: {sampled.error}", axis=session.axis, cause=sampled.error
                        ),
                    )
                    return
                session.samples.append((move.position_um, sampled.value))

            session.current_step += 1
            session.positions.append(move.position_um)
            self._bus.publish(
                AutoStepProgress(
                    current_step=session.current_step,
                    total_steps=session.total_steps,
                    position_um=move.position_um,
                )
            )
            if not self._is_current(session):
                return

            if session.current_step >= session.total_steps:
                self._complete(session)

    def _sample(self) -> float:
        return float(self._sampler())

    def _fail(self, session: AutoStepSession, error: Optional[FoilviewError]) -> None:
        error = error or StageMovementError("Stage move failed", axis=session.axis)
        self._transition_to(AutoStepState.ERRORED)
        self._detach(session)
        self._log.error(f"Auto-step failed at step {session.current_step}/{session.total_steps}: {error}")
        self._bus.publish(
            AutoStepFailed(error=error, current_step=session.current_step, total_steps=session.total_steps)
        )
        self._transition_to(AutoStepState.IDLE)

    def _complete(self, session: AutoStepSession) -> None:
        self._transition_to(AutoStepState.COMPLETED)
        self._detach(session)
        summary = summarize_session(session)
        self._last_summary = summary
        self._log.info(
            f"Auto-step completed: {session.current_step} steps, "
            f"{summary.total_distance_um:.2f} um in {summary.duration_s:.2f}s"
            + (f", peak at {summary.peak_position_um:.2f} um" if summary.peak_position_um is not None else "")
        )
        self._bus.publish(
            AutoStepCompleted(
                samples=list(session.samples),
                peak_position_um=summary.peak_position_um,
                current_step=session.current_step,
                total_steps=session.total_steps,
                summary=summary,
            )
        )
        self._transition_to(AutoStepState.IDLE)
