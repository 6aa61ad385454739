import datetime
import logging as py_logging
import logging.handlers
import os.path
import queue
import sys
import threading
from types import TracebackType
from typing import List, Optional, Tuple, Type

import platformdirs

_foilview_root_logger_name = "foilview"

LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(thread_id)d - %(name)s - %(levelname)s - %(message)s (%(filename)s:%(lineno)d)"
LOG_DATEFORMAT = "%Y-%m-%d %H:%M:%S"


class _ColorFormatter(py_logging.Formatter):
    """Wraps each record in an ANSI color picked by level.  Timestamps use a '.' before the ms."""

    _RESET = "\x1b[0m"
    _LEVEL_COLORS = {
        py_logging.DEBUG: "\x1b[38;20m",
        py_logging.INFO: "\x1b[38;20m",
        py_logging.WARNING: "\x1b[33;20m",
        py_logging.ERROR: "\x1b[31;20m",
        py_logging.CRITICAL: "\x1b[31;1m",
    }

    def __init__(self):
        super().__init__(fmt=LOG_FORMAT, datefmt=LOG_DATEFORMAT)

    def format(self, record):
        color = self._LEVEL_COLORS.get(record.levelno, "")
        return f"{color}{super().format(record)}{self._RESET}"


def _thread_id_filter(record: py_logging.LogRecord):
    # Stage moves happen on timer and worker threads; the native id ties a line to its thread.
    record.thread_id = threading.get_native_id()
    return True


def _plain_formatter() -> py_logging.Formatter:
    return py_logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFORMAT)


_console_handler = py_logging.StreamHandler()
_console_handler.addFilter(_thread_id_filter)
_console_handler.setFormatter(_ColorFormatter())
_console_handler.setLevel(py_logging.INFO)

_root = py_logging.getLogger(_foilview_root_logger_name)
_root.addHandler(_console_handler)
# The console starts at INFO; the logger itself passes DEBUG on to file handlers.
_root.setLevel(py_logging.DEBUG)


def get_logger(name: Optional[str] = None) -> py_logging.Logger:
    """
    The "foilview" logger, or the child `foilview.<name>` when a name is given.

    Module names may be passed as is: get_logger(__name__) in foilview.core.state_machine
    gives "foilview.core.state_machine", not a doubled prefix.
    """
    root = py_logging.getLogger(_foilview_root_logger_name)
    if name is None or name == _foilview_root_logger_name:
        return root
    prefix = _foilview_root_logger_name + "."
    return root.getChild(name[len(prefix):] if name.startswith(prefix) else name)


log = get_logger(__name__)


def set_stdout_log_level(level):
    """Change the console level.  File handlers always record DEBUG and up."""
    for handler in get_logger().handlers:
        if not isinstance(handler, py_logging.FileHandler):
            handler.setLevel(level)


def register_crash_handler(handler, call_existing_too=True):
    """
    Route exceptions that escape the main thread, a worker or a timer thread to handler.

    handler receives (exception_type, value, traceback) and must not raise.
    """
    logger = get_logger()
    previous_hook = sys.excepthook
    previous_thread_hook = threading.excepthook

    def _call(exception_type, value, tb):
        try:
            handler(exception_type, value, tb)
        except BaseException as e:
            logger.critical(f"Crash handler {handler.__name__} raised: {e}")

    def _process_hook(exception_type: Type[BaseException], value: BaseException, tb: TracebackType):
        _call(exception_type, value, tb)
        if call_existing_too:
            previous_hook(exception_type, value, tb)

    def _thread_hook(hook_args: threading.ExceptHookArgs):
        _call(hook_args.exc_type, hook_args.exc_value, hook_args.exc_traceback)
        if call_existing_too:
            previous_thread_hook(hook_args)

    logger.info(f"Installing crash handler {handler.__name__} for the process and its threads")
    sys.excepthook = _process_hook
    threading.excepthook = _thread_hook


def setup_uncaught_exception_logging():
    """Log uncaught exceptions on the foilview logger instead of printing them."""
    logger = get_logger()

    def _log_uncaught(exception_type: Type[BaseException], value: BaseException, tb: TracebackType):
        logger.error("Uncaught exception", exc_info=(exception_type, value, tb))

    register_crash_handler(_log_uncaught, call_existing_too=False)


def get_default_log_directory():
    return platformdirs.user_log_path(_foilview_root_logger_name, "foilview")


def session_log_path(log_dir=None, now: Optional[datetime.datetime] = None) -> str:
    """Path of a per-session log file, e.g. <log dir>/foilview_20240131_142500.log."""
    stamp = (now or datetime.datetime.now()).strftime("%Y%m%d_%H%M%S")
    return os.path.join(str(log_dir or get_default_log_directory()), f"foilview_{stamp}.log")


def add_file_logging(log_filename, replace_existing=False):
    """
    Also write every foilview record (DEBUG and up) to log_filename.

    An existing file is rolled over to a numbered backup first.  Returns False if a file
    handler for the same path is already installed and replace_existing is False.
    """
    root_logger = get_logger()
    abs_path = os.path.abspath(log_filename)
    for handler in list(root_logger.handlers):
        if isinstance(handler, logging.handlers.BaseRotatingHandler) and handler.baseFilename == abs_path:
            if not replace_existing:
                log.error(f"File logging to {abs_path} is already active")
                return False
            remove_handler(handler)

    had_previous_session = os.path.isfile(abs_path)
    os.makedirs(os.path.dirname(abs_path), exist_ok=True)

    # maxBytes=0: no size rollover, one file per session.  utf-8 for the micro sign.
    file_handler = logging.handlers.RotatingFileHandler(
        abs_path, maxBytes=0, backupCount=25, encoding="utf-8", errors="replace"
    )
    file_handler.setLevel(py_logging.DEBUG)
    file_handler.setFormatter(_plain_formatter())
    file_handler.addFilter(_thread_id_filter)

    log.info(f"Logging to file '{file_handler.baseFilename}'")
    root_logger.addHandler(file_handler)
    if had_previous_session:
        file_handler.doRollover()
    return True


def remove_handler(handler: py_logging.Handler) -> None:
    """Detach handler from the foilview logger and close it.  Unknown handlers are fine."""
    get_logger().removeHandler(handler)
    try:
        handler.close()
    except Exception as e:
        log.warning(f"Failed to close handler {getattr(handler, 'baseFilename', repr(handler))}: {e}")


def get_current_log_file_path() -> Optional[str]:
    for handler in get_logger().handlers:
        if isinstance(handler, py_logging.FileHandler):
            return handler.baseFilename
    return None


class BufferingHandler(py_logging.Handler):
    """Holds formatted records until a status pane polls them with get_pending().

    Qt-free.  At most MAX_BUFFERED_MESSAGES are held; further records are counted in
    dropped_count and discarded.
    """

    MAX_BUFFERED_MESSAGES = 1000

    def __init__(self, min_level: int = py_logging.WARNING):
        super().__init__(level=min_level)
        self._pending: queue.Queue = queue.Queue(maxsize=self.MAX_BUFFERED_MESSAGES)
        self._dropped_count = 0
        self.setFormatter(_plain_formatter())
        self.addFilter(_thread_id_filter)

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    def emit(self, record: py_logging.LogRecord):
        try:
            self._pending.put_nowait((record.levelno, record.name, self.format(record)))
        except queue.Full:
            self._dropped_count += 1
        except Exception:
            self.handleError(record)

    def get_pending(self) -> List[Tuple[int, str, str]]:
        """Drain the buffer as (level, logger name, formatted message) tuples."""
        drained = []
        while not self._pending.empty():
            try:
                drained.append(self._pending.get_nowait())
            except queue.Empty:
                break
        return drained
