"""foilview utilities package."""

from foilview.core.utils.safe_callback import safe_callback, CallbackResult
from foilview.core.utils.periodic_task import PeriodicTask
from foilview.core.utils.worker_manager import WorkerManager, WorkerResult

__all__ = [
    "safe_callback",
    "CallbackResult",
    "PeriodicTask",
    "WorkerManager",
    "WorkerResult",
]
