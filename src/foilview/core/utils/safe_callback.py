"""
Containment for code the stage core calls but does not own.

Metric samplers, retry completion callbacks and state observers are supplied from outside.
They run on auto-step and worker threads, where an escaping exception would end a sweep's
timer or the retry worker without a trace.  safe_callback runs them, logs what went wrong
under a readable label, and hands the outcome back for the caller to act on:

    sampled = safe_callback(sampler, label="metric sampler")
    if not sampled.success:
        fail_run(sampled.error)
"""

import traceback
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

import foilview.core.logging

T = TypeVar("T")

_log = foilview.core.logging.get_logger("utils.safe_callback")


def describe_callable(callback: Callable) -> str:
    """Best-effort readable name, e.g. 'AutoStepSequencer._sample' or a functools.partial repr."""
    return getattr(callback, "__qualname__", None) or getattr(callback, "__name__", None) or repr(callback)


@dataclass
class CallbackResult(Generic[T]):
    """value is set when success is True; error and stack_trace when it is False."""

    success: bool
    value: Optional[T] = None
    error: Optional[Exception] = None
    stack_trace: Optional[str] = None

    def raise_if_error(self) -> None:
        if self.error is not None:
            raise self.error


def safe_callback(
    callback: Callable[..., T],
    *args: Any,
    label: Optional[str] = None,
    on_error: Optional[Callable[[Exception, str], None]] = None,
    **kwargs: Any,
) -> CallbackResult[T]:
    """
    Call callback(*args, **kwargs).  Exceptions are logged and returned, never raised.

    Args:
        label: What the callback is, for the log line ("metric sampler"); defaults to its name
        on_error: Called with (exception, stack trace) after a failure; its own failures are logged
    """
    try:
        value = callback(*args, **kwargs)
    except Exception as e:
        stack = traceback.format_exc()
        _log.error(f"{label or describe_callable(callback)} raised {type(e).__name__}: {e}\n{stack}")
        if on_error is not None:
            try:
                on_error(e, stack)
            except Exception as handler_error:
                _log.error(f"on_error handler for {label or describe_callable(callback)} failed: {handler_error}")
        return CallbackResult(success=False, error=e, stack_trace=stack)
    return CallbackResult(success=True, value=value)
