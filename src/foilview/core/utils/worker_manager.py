"""
Background worker pool for long-running operations.

Connection retries can take tens of seconds, so they run here instead of on the caller's
thread.  Each task reports through on_complete / on_error callbacks with a WorkerResult;
exceptions from the task are captured rather than lost in the pool.

Usage:
    from foilview.core.utils.worker_manager import WorkerManager

    manager = WorkerManager(max_workers=2)
    manager.submit(
        task_name="connect",
        task=lambda: do_connect(),
        on_complete=lambda r: print(f"Done: {r.value}"),
        on_error=lambda r: print(f"Failed: {r.error}"),
    )
"""

import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import foilview.core.logging
from foilview.core.errors import SchedulerResourceError


@dataclass
class WorkerResult:
    """
    Result of a worker task.

    Attributes:
        success: True if task completed without error
        value: Return value of task (None if failed)
        error: Exception if task failed
        stack_trace: Formatted traceback if task failed
    """

    success: bool
    value: Any = None
    error: Optional[Exception] = None
    stack_trace: Optional[str] = None


class WorkerManager:
    def __init__(self, max_workers: int = 2, name: str = "foilview-worker"):
        self._log = foilview.core.logging.get_logger(self.__class__.__name__)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._active_tasks: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._shut_down = False

    def submit(
        self,
        task_name: str,
        task: Callable[[], Any],
        on_complete: Optional[Callable[[WorkerResult], None]] = None,
        on_error: Optional[Callable[[WorkerResult], None]] = None,
    ) -> Future:
        """
        Run task on the pool.  Raises SchedulerResourceError if the pool is shut down or a
        task with the same name is still active.
        """
        with self._lock:
            if self._shut_down:
                raise SchedulerResourceError(f"cannot submit '{task_name}': worker manager is shut down")
            existing = self._active_tasks.get(task_name)
            if existing is not None and not existing.done():
                raise SchedulerResourceError(f"task '{task_name}' is already running")

            self._log.info(f"Submitting task: {task_name}")

            def wrapped_task():
                try:
                    return WorkerResult(success=True, value=task())
                except Exception as e:
                    return WorkerResult(success=False, error=e, stack_trace=traceback.format_exc())

            try:
                future = self._executor.submit(wrapped_task)
            except RuntimeError as e:
                raise SchedulerResourceError(f"could not submit '{task_name}': {e}", cause=e) from e
            self._active_tasks[task_name] = future

        future.add_done_callback(lambda f: self._handle_completion(task_name, f, on_complete, on_error))
        return future

    def is_running(self, task_name: str) -> bool:
        with self._lock:
            future = self._active_tasks.get(task_name)
        return future is not None and not future.done()

    def wait(self, task_name: str, timeout_s: Optional[float] = None) -> Optional[WorkerResult]:
        """Block until the named task finishes.  Returns None if no such task is known."""
        with self._lock:
            future = self._active_tasks.get(task_name)
        if future is None:
            return None
        return future.result(timeout=timeout_s)

    def _handle_completion(
        self,
        task_name: str,
        future: Future,
        on_complete: Optional[Callable[[WorkerResult], None]],
        on_error: Optional[Callable[[WorkerResult], None]],
    ):
        with self._lock:
            if self._active_tasks.get(task_name) is future:
                del self._active_tasks[task_name]

        try:
            result = future.result(timeout=0)
        except Exception as e:
            result = WorkerResult(success=False, error=e, stack_trace=traceback.format_exc())

        if result.success:
            self._log.info(f"Task completed: {task_name}")
            callback = on_complete
        else:
            self._log.error(f"Task failed: {task_name}: {result.error}")
            callback = on_error

        if callback:
            try:
                callback(result)
            except Exception as e:
                self._log.error(f"{task_name} completion callback failed: {e}")

    def shutdown(self, wait: bool = True):
        self._log.info("Shutting down worker manager")
        with self._lock:
            self._shut_down = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
