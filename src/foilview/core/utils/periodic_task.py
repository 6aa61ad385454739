"""
Cancellable periodic task.

Runs a callback every interval_s on a dedicated daemon thread.  Unlike a chain of
threading.Timer objects that each schedule the next, there is exactly one thread per task,
and cancel() stops it with a single call:

- from any other thread, cancel() sets the stop event and joins the thread, so once it
  returns the callback is not running and will never run again;
- from inside the callback (the task cancelling itself), cancel() only sets the stop event;
  the loop exits as soon as the callback returns.

Usage:
    task = PeriodicTask("health-check", 2.0, manager.health_check)
    task.start()
    ...
    task.cancel()
"""

import threading
from typing import Callable, Optional

import foilview.core.logging
from foilview.core.errors import SchedulerResourceError

_log = foilview.core.logging.get_logger("utils.periodic_task")


class PeriodicTask:
    def __init__(self, name: str, interval_s: float, callback: Callable[[], None], run_immediately: bool = False):
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        self._name = name
        self._interval_s = interval_s
        self._callback = callback
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_count = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval_s(self) -> float:
        return self._interval_s

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        """
        Arm the task.  Raises SchedulerResourceError if the thread can't be created, and
        RuntimeError if the task was already started or cancelled.
        """
        if self._thread is not None or self._stop_event.is_set():
            raise RuntimeError(f"PeriodicTask '{self._name}' can only be started once")

        thread = threading.Thread(target=self._run, name=f"PeriodicTask-{self._name}", daemon=True)
        try:
            thread.start()
        except RuntimeError as e:
            raise SchedulerResourceError(f"could not start thread for '{self._name}': {e}", cause=e) from e
        self._thread = thread
        _log.debug(f"PeriodicTask '{self._name}' started (interval={self._interval_s}s)")

    def cancel(self, timeout_s: Optional[float] = None) -> bool:
        """
        Stop the task.  Idempotent.  Returns True if the task thread is no longer running (or
        is the caller and will exit once the current callback returns).
        """
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return True
        if thread is threading.current_thread():
            return True
        thread.join(timeout_s)
        if thread.is_alive():
            _log.warning(f"PeriodicTask '{self._name}' did not stop within {timeout_s}s")
            return False
        return True

    def in_task_thread(self) -> bool:
        return self._thread is not None and self._thread is threading.current_thread()

    def _run(self) -> None:
        if self._run_immediately and not self._stop_event.is_set():
            self._tick()
        while not self._stop_event.wait(self._interval_s):
            self._tick()
        _log.debug(f"PeriodicTask '{self._name}' exited after {self._tick_count} ticks")

    def _tick(self) -> None:
        self._tick_count += 1
        try:
            self._callback()
        except Exception as e:
            _log.exception(f"PeriodicTask '{self._name}' callback raised: {e}")
