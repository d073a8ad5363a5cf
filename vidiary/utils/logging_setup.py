from __future__ import annotations

import contextvars
import logging
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(operation)s | %(entity_id)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOG_OPERATION: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_operation", default=None)
LOG_ENTITY_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_entity_id", default=None)


class ContextFilter(logging.Filter):
    """
    Fill ``operation`` and ``entity_id`` on every record.

    Context variables win; otherwise a logged exception carrying those
    attributes (every StoreError does) supplies them.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        exc = record.exc_info[1] if record.exc_info else None
        record.operation = LOG_OPERATION.get() or getattr(exc, "operation", None) or "-"
        record.entity_id = LOG_ENTITY_ID.get() or getattr(exc, "entity_id", None) or "-"
        return True


@contextmanager
def log_context(
    operation: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> Iterator[None]:
    tokens = []
    if operation is not None:
        tokens.append((LOG_OPERATION, LOG_OPERATION.set(operation)))
    if entity_id is not None:
        tokens.append((LOG_ENTITY_ID, LOG_ENTITY_ID.set(entity_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging(
    log_file: str = "logs/vidiary.log",
    level: int = logging.INFO,
    enable_console: bool = False,
    force: bool = False,
) -> logging.Logger:
    root = logging.getLogger()
    if getattr(root, "_vidiary_logging_configured", False) and not force:
        return root

    if force:
        for handler in list(root.handlers):
            if getattr(handler, "_vidiary_handler", False):
                root.removeHandler(handler)
                handler.close()

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    # Filters on the root logger are skipped for records from child loggers.
    file_handler.addFilter(ContextFilter())
    file_handler._vidiary_handler = True
    root.addHandler(file_handler)

    if enable_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler.addFilter(ContextFilter())
        stream_handler._vidiary_handler = True
        root.addHandler(stream_handler)

    root.setLevel(level)
    logging.captureWarnings(True)
    root._vidiary_logging_configured = True
    root._vidiary_log_file = str(log_path)
    return root


def read_log(log_file: str, max_lines: Optional[int] = None) -> str:
    """Return the log contents (or its last ``max_lines`` lines); empty if absent."""
    path = Path(log_file)
    if not path.exists():
        return ""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        if max_lines is None:
            return f.read()
        return "".join(deque(f, maxlen=max_lines))


def clear_log(log_file: str) -> None:
    """Truncate the log file in place so open handlers keep writing to it."""
    path = Path(log_file)
    if path.exists():
        with open(path, "w", encoding="utf-8"):
            pass


def configure_from_settings(settings: Any, force: bool = False) -> Optional[logging.Logger]:
    """Configure logging from StoreSettings; returns None when file logging is off."""
    log_path = settings.log_path
    if log_path is None:
        return None
    return configure_logging(
        log_file=str(log_path),
        level=settings.log_level_value,
        enable_console=settings.log_console,
        force=force,
    )
