"""
Logging for Pickrr.

Records carry lifecycle context (request, upstream id, season, client hash)
set through ``LogContext``. The context lives in a ``ContextVar`` so that
webhook handlers, poller runs and best-effort tasks running on the same event
loop each see their own fields.
"""

import json
import logging
import logging.handlers
import sys
import threading
from collections import deque
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

# Fields recognised on records, in output order
CONTEXT_FIELDS = (
    "request_id",
    "upstream_id",
    "season",
    "media_kind",
    "torrent_hash",
    "torrent_name",
    "operation",
    "job_id",
    "error",
)

# Shown inline by the console formatter
CONSOLE_FIELDS = ("request_id", "upstream_id", "season", "torrent_hash", "job_id")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime"}

_context: ContextVar[Dict[str, Any]] = ContextVar("pickrr_log_context", default={})


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _record_context(record: logging.LogRecord, fields=CONTEXT_FIELDS) -> Dict[str, Any]:
    """Non-empty context fields present on ``record``."""
    found = {}
    for name in fields:
        value = getattr(record, name, None)
        if value is not None and value != "":
            found[name] = value
    return found


class ContextFilter(logging.Filter):
    """Copy the active lifecycle context onto every record passing through."""

    @staticmethod
    def set_context(**fields) -> None:
        _context.set({**_context.get(), **fields})

    @staticmethod
    def clear_context(*keys) -> None:
        """Drop ``keys`` from the context, or everything when none are given."""
        if not keys:
            _context.set({})
            return
        _context.set({k: v for k, v in _context.get().items() if k not in keys})

    @staticmethod
    def get_context() -> Dict[str, Any]:
        return dict(_context.get())

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields promoted to top-level keys."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_record_context(record))

        if record.exc_info:
            exc_type = record.exc_info[0]
            entry["exception"] = self.formatException(record.exc_info)
            entry["exception_type"] = exc_type.__name__ if exc_type else None

        if self.include_extra:
            for key, value in vars(record).items():
                if key in entry or key in _STANDARD_ATTRS or key in CONTEXT_FIELDS:
                    continue
                if key.startswith("_"):
                    continue
                try:
                    json.dumps(value)
                except (TypeError, ValueError):
                    value = str(value)
                entry[key] = value

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: colored level name, context appended in brackets."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)

        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color:
            text = text.replace(record.levelname, f"{color}{record.levelname}{self.RESET}", 1)

        context = _record_context(record, CONSOLE_FIELDS)
        if context:
            text += " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return text


@dataclass
class ActivityLogEntry:
    """A buffered log line as served by ``GET /api/logs``."""
    timestamp: str
    level: str
    logger: str
    message: str
    request_id: Optional[str] = None
    upstream_id: Optional[int] = None
    torrent_hash: Optional[str] = None
    job_id: Optional[str] = None
    operation: Optional[str] = None


class ActivityLogHandler(logging.Handler):
    """
    In-memory ring buffer of recent records.

    Lets an operator see what happened to a request without shipping logs
    anywhere. Filters mirror the context fields the workflows set.
    """

    def __init__(self, max_entries: int = 1000, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self._buffer: deque = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = ActivityLogEntry(
                timestamp=_utc_timestamp(),
                level=record.levelname,
                logger=record.name,
                message=record.getMessage(),
                request_id=getattr(record, "request_id", None),
                upstream_id=getattr(record, "upstream_id", None),
                torrent_hash=getattr(record, "torrent_hash", None),
                job_id=getattr(record, "job_id", None),
                operation=getattr(record, "operation", None),
            )
        except Exception:
            self.handleError(record)
            return
        with self._lock:
            self._buffer.append(entry)

    def get_logs(
        self,
        limit: int = 100,
        level: str = None,
        request_id: str = None,
        torrent_hash: str = None,
    ) -> List[Dict[str, Any]]:
        """
        Return at most ``limit`` of the newest entries, oldest first.

        ``level`` is a minimum (``"WARNING"`` includes errors); unknown level
        names are ignored.
        """
        with self._lock:
            entries = list(self._buffer)

        min_level = logging.getLevelName(level.upper()) if level else None
        if isinstance(min_level, int):
            entries = [e for e in entries if logging.getLevelName(e.level) >= min_level]
        if request_id:
            entries = [e for e in entries if e.request_id == request_id]
        if torrent_hash:
            entries = [e for e in entries if e.torrent_hash == torrent_hash]

        return [asdict(e) for e in entries[-limit:]]

    def clear(self) -> int:
        with self._lock:
            count = len(self._buffer)
            self._buffer.clear()
        return count


# Third-party loggers are noisy at INFO (per-request access lines, SQL)
COMPONENT_LOG_LEVELS = {
    "pickrr": "INFO",
    "pickrr.persistence": "WARNING",
    "aiohttp": "WARNING",
    "aiosqlite": "WARNING",
    "uvicorn.access": "WARNING",
    "uvicorn.error": "INFO",
}


def _formatter(log_format: str, use_colors: bool) -> logging.Formatter:
    if log_format == "json":
        return JSONFormatter()
    return ColoredFormatter(use_colors=use_colors)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = "text",
    max_file_size_mb: int = 10,
    backup_count: int = 5,
    use_colors: bool = True,
    activity_log_size: int = 1000,
) -> ActivityLogHandler:
    """
    Replace the root handlers with Pickrr's console, file and activity handlers.

    Args:
        log_level: Root level name
        log_file: Rotating log file; parent directories are created
        log_format: "text" or "json"
        max_file_size_mb: Rotation threshold
        backup_count: Rotated files kept
        use_colors: Color console output when stdout is a terminal
        activity_log_size: Capacity of the in-memory activity buffer

    Returns:
        The activity handler backing ``GET /api/logs``
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    context_filter = ContextFilter()
    handlers: List[logging.Handler] = []

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_formatter(log_format, use_colors))
    handlers.append(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding="utf-8",
        )
        rotating.setFormatter(_formatter(log_format, use_colors=False))
        handlers.append(rotating)

    activity = ActivityLogHandler(max_entries=activity_log_size)
    handlers.append(activity)

    for handler in handlers:
        handler.addFilter(context_filter)
        root.addHandler(handler)

    for name, level in COMPONENT_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(getattr(logging, level))

    logging.getLogger(__name__).info(
        f"Logging configured: level={log_level}, format={log_format}, "
        f"file={log_file or 'none'}"
    )
    return activity


class LogContext:
    """
    Attach lifecycle fields to every record logged inside the block.

        with LogContext(request_id=request.id, season=2):
            logger.info("Torrent selected")

    Nesting adds fields; leaving a block restores the enclosing context.
    """

    def __init__(self, **fields):
        self.fields = fields
        self._token = None

    def __enter__(self):
        self._token = _context.set({**_context.get(), **self.fields})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _context.reset(self._token)
        return False
