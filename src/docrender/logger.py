# src/docrender/logger.py

import logging
import sys
from pathlib import Path
from queue import Queue
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Union, Optional

# --- Custom Log Level for Progress ---
PROGRESS = 25
logging.addLevelName(PROGRESS, "PROGRESS")

def progress(self, msg, *args, **kwargs):
    if self.isEnabledFor(PROGRESS):
        self._log(PROGRESS, msg, args, **kwargs)

logging.Logger.progress = progress

LOGGER_NAME = "docrender"


# --- Custom Handlers (for the Listener) ---
class ProgressEventHandler(logging.Handler):
    """Emits structured progress events (dicts) to a queue for UIs or dashboards."""
    def __init__(self, q: Queue):
        super().__init__()
        self.q = q
    def emit(self, record: logging.LogRecord):
        try:
            evt = {
                "level": record.levelname,
                "msg": record.getMessage(),
                "job_id": getattr(record, "job_id", None),
                "phase": getattr(record, "phase", None),
                "pct": getattr(record, "pct", None),
                "current": getattr(record, "current", None),
                "total": getattr(record, "total", None),
            }
            self.q.put(evt)
        except Exception:
            self.handleError(record)

# --- Custom Filters ---
class OnlyLevelFilter(logging.Filter):
    def __init__(self, levelno: int):
        super().__init__()
        self.levelno = levelno
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno == self.levelno

class ExcludeLevelFilter(logging.Filter):
    def __init__(self, levelno: int):
        super().__init__()
        self.levelno = levelno
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno != self.levelno

# --- Main Configuration Function ---
def setup_logging(
    *,
    level: int = logging.INFO,
    console: bool = True,
    event_queue: Optional[Queue] = None,
    file_path: Optional[Union[str, Path]] = None,
    file_level: Optional[int] = None,
) -> QueueListener:
    """
    Route the "docrender" logger through a queue to the real handlers.

    Worker threads only ever touch the QueueHandler, so a slow file or console
    never stalls a conversion.

    Args:
        level: The base logging level for console output.
        console: Whether to attach a stderr handler.
        event_queue: Optional queue that receives PROGRESS records as dicts.
        file_path: Path to the persistent log file.
        file_level: The logging level for the file.

    Returns:
        A QueueListener instance. You must call .start() on it.
    """
    # --- Step 1: Create the actual handlers (file, console, events) ---
    handlers = []

    if file_path:
        fp = Path(file_path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(fp, maxBytes=5*1024*1024, backupCount=2, encoding="utf-8")
        fh.setLevel(file_level if file_level is not None else level)
        fh.setFormatter(logging.Formatter("%(asctime)s | %(threadName)-15s | %(levelname)-8s | %(message)s"))
        fh.addFilter(ExcludeLevelFilter(PROGRESS))
        handlers.append(fh)

    if console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)-8s | %(message)s"))
        ch.addFilter(ExcludeLevelFilter(PROGRESS))
        handlers.append(ch)

    if event_queue is not None:
        eh = ProgressEventHandler(event_queue)
        eh.setLevel(PROGRESS)
        eh.addFilter(OnlyLevelFilter(PROGRESS))
        handlers.append(eh)

    # --- Step 2: Attach the queue handler to the package logger ---
    log_queue: Queue = Queue(-1)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(min([level, PROGRESS if event_queue is not None else level, file_level or level]))
    for h in list(logger.handlers):
        if isinstance(h, QueueHandler):
            logger.removeHandler(h)
    logger.addHandler(QueueHandler(log_queue))
    logger.propagate = False

    # --- Step 3: Create and return the listener ---
    return QueueListener(log_queue, *handlers, respect_handler_level=True)


def teardown_logging(listener: Optional[QueueListener] = None) -> None:
    """Stop the listener and hand the "docrender" logger back to the root handlers."""
    if listener is not None:
        listener.stop()
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        if isinstance(h, QueueHandler):
            logger.removeHandler(h)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
