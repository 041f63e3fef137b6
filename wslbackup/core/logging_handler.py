"""
Logging setup: SUCCESS level, timestamped console/file format and an
in-memory ring buffer served by the logs endpoint.
"""
import logging
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import List, Dict, Any, Optional

from wslbackup.core.config import Settings

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Display names for progress/log lines
_LEVEL_TAGS = {
    "WARNING": "WARN",
    "CRITICAL": "ERROR",
}


def log_success(logger: logging.Logger, message: str, *args, **kwargs):
    """Log a message at SUCCESS level."""
    logger.log(SUCCESS, message, *args, **kwargs)


def level_tag(levelname: str) -> str:
    return _LEVEL_TAGS.get(levelname, levelname)


class TaggedFormatter(logging.Formatter):
    """Formatter that renders levels as INFO/WARN/ERROR/SUCCESS tags."""

    def __init__(self, fmt: str = LOG_FORMAT, datefmt: str = DATE_FORMAT):
        super().__init__(fmt=fmt, datefmt=datefmt)

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        record.levelname = level_tag(original)
        try:
            return super().format(record)
        finally:
            record.levelname = original


class InMemoryLogHandler(logging.Handler):
    """
    Ring buffer of formatted records for the logs endpoint.
    Oldest entries are dropped once ``max_records`` is reached.
    """

    def __init__(self, max_records: int = 1000):
        """
        Args:
            max_records: Buffer capacity
        """
        super().__init__()
        self.max_records = max_records
        self.records = deque(maxlen=max_records)
        self.lock = Lock()

    def emit(self, record: logging.LogRecord):
        try:
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": level_tag(record.levelname),
                "logger": record.name,
                "message": record.getMessage(),
                "line": self.format(record),
            }

            details = getattr(record, "details", None)
            if details:
                log_entry["details"] = details

            if record.exc_info:
                log_entry["exception"] = logging.Formatter().formatException(record.exc_info)

            with self.lock:
                self.records.append(log_entry)

        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        level: Optional[str] = None,
        logger: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Get filtered log entries, newest first.

        Args:
            level: Filter by level tag (INFO, WARN, ERROR, SUCCESS, DEBUG)
            logger: Filter by logger name (partial match)
            search: Search in log messages (case-insensitive)
            limit: Maximum number of records to return
            offset: Number of records to skip from the newest end
        """
        with self.lock:
            logs = list(self.records)

        if level:
            wanted = level_tag(level.upper())
            logs = [log for log in logs if log["level"] == wanted]

        if logger:
            logs = [log for log in logs if logger.lower() in log["logger"].lower()]

        if search:
            search_lower = search.lower()
            logs = [log for log in logs if search_lower in log["message"].lower()]

        logs.reverse()
        return logs[offset:offset + limit]

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            logs = list(self.records)

        level_counts = {"DEBUG": 0, "INFO": 0, "SUCCESS": 0, "WARN": 0, "ERROR": 0}
        for log in logs:
            if log["level"] in level_counts:
                level_counts[log["level"]] += 1

        return {
            "total": len(logs),
            "max_records": self.max_records,
            "by_level": level_counts,
        }

    def clear(self):
        with self.lock:
            self.records.clear()


def create_file_log_handler(
    log_dir: str,
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 10
) -> RotatingFileHandler:
    """Create a rotating file handler writing ``application.log`` in log_dir."""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(
        filename=str(log_path / "application.log"),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8"
    )
    handler.setFormatter(TaggedFormatter())
    return handler


def setup_logging(settings: Settings) -> InMemoryLogHandler:
    """
    Attach the in-memory handler (and the file handler when enabled) to the
    ``wslbackup`` logger.

    The root logger is left alone so host applications (uvicorn, pytest)
    keep their own configuration.

    Returns:
        The in-memory handler, for the logs endpoint
    """
    app_logger = logging.getLogger("wslbackup")
    app_logger.setLevel(settings.LOG_LEVEL.upper())

    memory_handler = InMemoryLogHandler(max_records=settings.LOG_BUFFER_SIZE)
    memory_handler.setFormatter(TaggedFormatter())
    app_logger.addHandler(memory_handler)

    if settings.LOG_FILE_ENABLED:
        try:
            file_handler = create_file_log_handler(
                settings.LOG_DIR,
                max_bytes=settings.LOG_MAX_BYTES,
                backup_count=settings.LOG_BACKUP_COUNT
            )
            app_logger.addHandler(file_handler)
            app_logger.info(f"File logging enabled: {settings.LOG_DIR}")
        except OSError as e:
            app_logger.warning(f"Failed to setup file logging in {settings.LOG_DIR}: {e}")

    return memory_handler


def teardown_logging(handler: logging.Handler):
    """Detach the handlers previously attached by ``setup_logging``."""
    app_logger = logging.getLogger("wslbackup")
    file_handlers = [h for h in app_logger.handlers if isinstance(h, RotatingFileHandler)]
    for attached in [handler, *file_handlers]:
        app_logger.removeHandler(attached)
        attached.close()
