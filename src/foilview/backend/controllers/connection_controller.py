"""
Connection lifecycle for the external acquisition program.

ConnectionManager owns the hardware backend handle and the simulator, and decides which of
the two is active.  Connection problems never escape as exceptions: a failed attempt is a
state transition (and a log line), and the manager settles in SIMULATION so the operator can
keep working with a software stage.

States:
    DISCONNECTED -> CONNECTING
    CONNECTING   -> CONNECTED | SIMULATION | FAILED | DISCONNECTED
    CONNECTED    -> FAILED | DISCONNECTED
    FAILED       -> CONNECTING | SIMULATION | DISCONNECTED
    SIMULATION   -> CONNECTING | DISCONNECTED

SIMULATION is sticky: only an explicit reconnect (connect(), connect_with_retry() or a
ReconnectCommand) leaves it.

Every transition is published as ConnectionStateChanged.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, List, Optional, Tuple

import foilview.core.logging
from foilview.core.abc import AbstractStageBackend
from foilview.core.config import HealthCheckConfig, RetryPolicy
from foilview.core.errors import SchedulerResourceError, StageConnectionError
from foilview.core.events import ConnectionStateChanged, EventBus, ReconnectCommand
from foilview.core.state_machine import StateMachine
from foilview.core.utils.periodic_task import PeriodicTask
from foilview.core.utils.safe_callback import safe_callback
from foilview.core.utils.worker_manager import WorkerManager, WorkerResult

RETRY_TASK_NAME = "connect_with_retry"


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    SIMULATION = auto()
    FAILED = auto()


@dataclass
class ConnectionStatus:
    """Snapshot of the connection for status bars and diagnostics."""

    state: ConnectionState
    message: str
    is_connected: bool
    is_simulation: bool
    attempt_count: int
    last_attempt_time: Optional[float]


class ConnectionManager(StateMachine[ConnectionState]):
    def __init__(
        self,
        hardware: Optional[AbstractStageBackend],
        simulator: AbstractStageBackend,
        event_bus: EventBus,
        retry_policy: Optional[RetryPolicy] = None,
        health_check: Optional[HealthCheckConfig] = None,
        worker_manager: Optional[WorkerManager] = None,
        health_axis: str = "Z",
    ) -> None:
        """
        Args:
            hardware: Adapter for the acquisition program, or None when there is none to try
            simulator: Backend used whenever hardware is not CONNECTED
            retry_policy: Backoff used by connect_with_retry when none is passed explicitly
            health_check: Interval for the periodic health monitor
            worker_manager: Pool for background retries; one is created (and owned) if omitted
            health_axis: Axis read by the health check
        """
        transitions = {
            ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
            ConnectionState.CONNECTING: {
                ConnectionState.CONNECTED,
                ConnectionState.SIMULATION,
                ConnectionState.FAILED,
                ConnectionState.DISCONNECTED,
            },
            ConnectionState.CONNECTED: {ConnectionState.FAILED, ConnectionState.DISCONNECTED},
            ConnectionState.FAILED: {
                ConnectionState.CONNECTING,
                ConnectionState.SIMULATION,
                ConnectionState.DISCONNECTED,
            },
            ConnectionState.SIMULATION: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
        }
        super().__init__(
            initial_state=ConnectionState.DISCONNECTED,
            transitions=transitions,
            event_bus=event_bus,
        )
        if simulator is None:
            raise ValueError("ConnectionManager requires a simulator backend")

        self._log = foilview.core.logging.get_logger(self.__class__.__name__)
        # Note: StateMachine base class provides self._lock, which guards state reads only.
        # _transition_lock serialises "set message + transition + publish" so every
        # ConnectionStateChanged carries the message of its own transition.
        self._transition_lock = threading.RLock()
        self._bus = event_bus
        self._hardware = hardware
        self._simulator = simulator
        self._retry_policy = retry_policy or RetryPolicy()
        self._health_config = health_check or HealthCheckConfig()
        self._owns_worker_manager = worker_manager is None
        self._worker_manager = worker_manager or WorkerManager(max_workers=1, name="foilview-connection")
        self._health_axis = health_axis

        self._message = "Not connected"
        self._attempt_count = 0
        self._last_attempt_time: Optional[float] = None
        self._retry_future: Optional[Future] = None
        self._retry_cancel = threading.Event()
        self._retry_thread: Optional[threading.Thread] = None
        self._health_task: Optional[PeriodicTask] = None
        self._shut_down = False

        self._subscriptions: List[Tuple[type, Callable]] = []
        self._subscribe_to_bus(event_bus)

    def _publish_state_changed(self, old_state: ConnectionState, new_state: ConnectionState) -> None:
        if self._bus:
            self._bus.publish(ConnectionStateChanged(state=new_state.name, message=self._message))

    def _subscribe_to_bus(self, bus: Optional[EventBus]) -> None:
        if bus is None:
            return
        bus.subscribe(ReconnectCommand, self._on_reconnect_command)
        self._subscriptions.append((ReconnectCommand, self._on_reconnect_command))

    def _on_reconnect_command(self, event: ReconnectCommand) -> None:
        self._log.info("Reconnect requested")
        self.connect_with_retry()

    def _set_state(self, new_state: ConnectionState, message: str = "") -> bool:
        """
        Transition and publish.  Returns False (without raising) when another thread already
        moved the manager somewhere the transition is not allowed from, e.g. a disconnect()
        racing a background attempt.
        """
        with self._transition_lock:
            if not self._can_transition_to(new_state):
                self._log.debug(f"Skipping transition {self.state_name} -> {new_state.name}")
                return False
            self._message = message
            self._transition_to(new_state)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_connection_state(self) -> ConnectionState:
        return self.state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def is_simulation(self) -> bool:
        return self.state is ConnectionState.SIMULATION

    @property
    def simulator(self) -> AbstractStageBackend:
        return self._simulator

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def get_active_backend(self) -> AbstractStageBackend:
        """The hardware backend when CONNECTED, otherwise the simulator.  Don't cache it."""
        with self._lock:
            if self._state is ConnectionState.CONNECTED and self._hardware is not None:
                return self._hardware
            return self._simulator

    def get_status(self) -> ConnectionStatus:
        with self._transition_lock:
            state = self.state
            return ConnectionStatus(
                state=state,
                message=self._message,
                is_connected=state is ConnectionState.CONNECTED,
                is_simulation=state is ConnectionState.SIMULATION,
                attempt_count=self._attempt_count,
                last_attempt_time=self._last_attempt_time,
            )

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    def connect(self) -> Tuple[ConnectionState, str]:
        """
        Make a single discovery attempt.  On failure the manager goes straight to SIMULATION.
        Never raises for connection problems.
        """
        state = self.state
        if state is ConnectionState.CONNECTED:
            return state, "Already connected"
        if state is ConnectionState.CONNECTING or self._worker_manager.is_running(RETRY_TASK_NAME):
            return state, "Connection attempt already in progress"

        success, message = self._attempt(1, 1)
        if not success:
            self._fall_back_to_simulation(message)
        return self.state, self._message

    def connect_with_retry(
        self,
        policy: Optional[RetryPolicy] = None,
        on_complete: Optional[Callable[[bool, str], None]] = None,
    ) -> Optional[Future]:
        """
        Retry the connection on a background worker with exponential backoff.

        Returns the worker's Future (its result is a WorkerResult wrapping (success, message)).
        If a retry is already running its Future is returned and on_complete is not
        registered.  Returns None when already CONNECTED, after calling on_complete.

        Raises:
            SchedulerResourceError: the background worker could not be started
        """
        if self.state is ConnectionState.CONNECTED:
            if on_complete is not None:
                safe_callback(on_complete, True, "Already connected", label="connect on_complete")
            return None

        if self._worker_manager.is_running(RETRY_TASK_NAME) and self._retry_future is not None:
            self._log.info("Connection retry already running")
            return self._retry_future

        policy = policy or self._retry_policy
        cancel_event = threading.Event()
        self._retry_cancel = cancel_event

        def _done(result: WorkerResult) -> None:
            if on_complete is not None:
                safe_callback(on_complete, *result.value, label="connect on_complete")

        def _failed(result: WorkerResult) -> None:
            # The loop itself blew up; nothing sensible left to do but simulate.
            message = f"Connection retry failed unexpectedly: {result.error}"
            self._fall_back_to_simulation(message)
            if on_complete is not None:
                safe_callback(on_complete, False, message, label="connect on_complete")

        self._retry_future = self._worker_manager.submit(
            task_name=RETRY_TASK_NAME,
            task=lambda: self._run_retry_loop(policy, cancel_event),
            on_complete=_done,
            on_error=_failed,
        )
        return self._retry_future

    def connect_with_retry_blocking(self, policy: Optional[RetryPolicy] = None) -> Tuple[bool, str]:
        """Same retry loop as connect_with_retry(), run on the calling thread."""
        if self.state is ConnectionState.CONNECTED:
            return True, "Already connected"
        cancel_event = threading.Event()
        self._retry_cancel = cancel_event
        return self._run_retry_loop(policy or self._retry_policy, cancel_event)

    def cancel_retry(self, timeout_s: Optional[float] = 5.0) -> None:
        """Cancel a running retry and wait for it to finish."""
        self._retry_cancel.set()
        future = self._retry_future
        if future is None or future.done():
            return
        if threading.current_thread() is self._retry_thread:
            # Called from the retry worker itself, e.g. by a state change handler.
            return
        try:
            future.result(timeout=timeout_s)
        except Exception as e:
            self._log.warning(f"Connection retry did not finish cleanly: {e}")

    def _run_retry_loop(self, policy: RetryPolicy, cancel_event: threading.Event) -> Tuple[bool, str]:
        self._retry_thread = threading.current_thread()
        last_message = "Acquisition software did not respond"

        for attempt in range(policy.max_attempts):
            if cancel_event.is_set():
                return self._retry_cancelled()

            success, message = self._attempt(attempt + 1, policy.max_attempts)
            if success:
                return True, message
            last_message = message

            if not self._set_state(ConnectionState.FAILED, message):
                return False, "Connection attempt aborted"

            if not policy.is_retryable(message):
                self._log.warning(f"Not retrying, error is not retryable: {message}")
                break

            if attempt + 1 < policy.max_attempts:
                delay = policy.delay_for_attempt(attempt)
                self._log.info(f"Retrying connection in {delay:.1f}s")
                if cancel_event.wait(delay):
                    return self._retry_cancelled()

        self._fall_back_to_simulation(last_message)
        return False, last_message

    def _retry_cancelled(self) -> Tuple[bool, str]:
        message = "Connection retry cancelled"
        self._log.info(message)
        self._fall_back_to_simulation(message)
        return False, message

    def _attempt(self, attempt: int, max_attempts: int) -> Tuple[bool, str]:
        if not self._set_state(ConnectionState.CONNECTING, f"Connecting (attempt {attempt}/{max_attempts})"):
            return False, f"Cannot connect from state {self.state_name}"

        with self._transition_lock:
            self._attempt_count += 1
            self._last_attempt_time = time.time()
        self._log.info(f"Connection attempt {attempt}/{max_attempts}")

        try:
            if self._hardware is None:
                raise StageConnectionError("Acquisition software backend not found")
            connected = self._hardware.connect()
            message = "" if connected else "Acquisition software did not respond"
        except Exception as e:
            connected = False
            message = str(e) or type(e).__name__

        if connected:
            with self._transition_lock:
                if self.state is not ConnectionState.CONNECTING:
                    return False, "Connection attempt aborted"
                self._attempt_count = 0
                self._set_state(ConnectionState.CONNECTED, "Connected to acquisition software")
            self._log.info("Connected to acquisition software")
            return True, "Connected to acquisition software"

        self._log.warning(f"Connection attempt {attempt}/{max_attempts} failed: {message}")
        return False, message

    def _fall_back_to_simulation(self, reason: str) -> None:
        message = f"Simulation mode: {reason}" if reason else "Simulation mode"
        if self._set_state(ConnectionState.SIMULATION, message):
            self._log.warning(f"Falling back to simulation ({reason})")

    # ------------------------------------------------------------------
    # Health monitoring
    # ------------------------------------------------------------------

    def health_check(self) -> bool:
        """
        Probe the active backend without blocking on the network.

        While CONNECTED the hardware is asked for one axis position; a failure moves the
        manager to FAILED and starts a fresh connect_with_retry().  In SIMULATION the
        simulator is always usable.  In the transient states there is nothing settled to
        report, so the answer is False with no side effects.
        """
        state = self.state
        if state is ConnectionState.SIMULATION:
            return True
        if state is not ConnectionState.CONNECTED or self._hardware is None:
            return False

        try:
            self._hardware.get_position(self._health_axis)
            return True
        except Exception as e:
            self._log.warning(f"Health check failed: {e}")

        with self._transition_lock:
            if self.state is not ConnectionState.CONNECTED:
                return False
            self._set_state(ConnectionState.FAILED, "Lost connection to acquisition software")

        try:
            self.connect_with_retry()
        except SchedulerResourceError as e:
            self._log.error(f"Could not start reconnection: {e}")
            self._fall_back_to_simulation(e.message)
        return False

    def start_health_monitor(self, interval_s: Optional[float] = None) -> bool:
        """Run health_check() periodically.  Returns False if the monitor is disabled."""
        if not self._health_config.enabled:
            self._log.info("Health monitor disabled by configuration")
            return False
        if self._health_task is not None and self._health_task.is_running:
            return True

        task = PeriodicTask("health-check", interval_s or self._health_config.interval_s, self.health_check)
        task.start()
        self._health_task = task
        self._log.info(f"Health monitor started ({task.interval_s}s)")
        return True

    def stop_health_monitor(self) -> None:
        task, self._health_task = self._health_task, None
        if task is not None:
            task.cancel()
            self._log.info("Health monitor stopped")

    @property
    def health_monitor_running(self) -> bool:
        return self._health_task is not None and self._health_task.is_running

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def disconnect(self) -> None:
        self.cancel_retry()
        with self._transition_lock:
            was_connected = self.state is ConnectionState.CONNECTED
            if self.state is ConnectionState.DISCONNECTED:
                return
            self._set_state(ConnectionState.DISCONNECTED, "Disconnected")
        if was_connected and self._hardware is not None:
            try:
                self._hardware.disconnect()
            except Exception as e:
                self._log.warning(f"Error while disconnecting hardware: {e}")

    def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        self._log.info("Shutting down connection manager")
        self.stop_health_monitor()
        self.disconnect()
        for event_type, handler in self._subscriptions:
            self._bus.unsubscribe(event_type, handler)
        self._subscriptions.clear()
        if self._owns_worker_manager:
            self._worker_manager.shutdown(wait=True)
