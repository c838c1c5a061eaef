"""
Logging setup for the drone relay.

Relay messages read ``Component | event=name | key=value``. The JSON
formatter lifts those pairs into fields and the rate limiter groups repeats
by logger and event, so a noisy ffmpeg stderr stream or a flapping viewer
costs one line per interval.
"""

import gzip
import json
import logging
import logging.handlers
import os
import re
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

APP_LOG_FILE = "drone_relay.log"
ERROR_LOG_FILE = "drone_relay_error.log"
HISTORY_DIR = "history"

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def parse_event(message: str) -> Dict[str, str]:
    """
    Split a ``Component | event=name | key=value`` message into fields.

    Returns:
        {"component": ..., "event": ..., <key>: <value>}, or an empty dict
        for messages not written in that shape
    """
    parts = [part.strip() for part in message.split(" | ")]
    if len(parts) < 2 or not parts[1].startswith("event="):
        return {}

    fields = {"component": parts[0]}
    for part in parts[1:]:
        key, sep, value = part.partition("=")
        if sep and key:
            fields[key] = value
    return fields


class FlushingStreamHandler(logging.StreamHandler):
    """Console handler that flushes after every record."""

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        self.flush()


class HistoryRotatingFileHandler(logging.handlers.TimedRotatingFileHandler):
    """
    Midnight-rotating log file.

    Each finished day is gzipped into ``history/<stem>_<date><suffix>.gz``
    and only the newest ``retention_days`` archives of this file are kept.
    """

    def __init__(self, path: Path, retention_days: int):
        self.history_dir = path.parent / HISTORY_DIR
        self.history_dir.mkdir(parents=True, exist_ok=True)
        super().__init__(str(path), when="midnight", backupCount=max(retention_days, 1), encoding="utf-8")
        self.namer = self._archive_name
        self.rotator = self._archive
        self._archive_pattern = re.compile(
            rf"^{re.escape(path.stem)}_\d{{4}}-\d{{2}}-\d{{2}}{re.escape(path.suffix)}\.gz$"
        )

    def emit(self, record: logging.LogRecord) -> None:
        super().emit(record)
        self.flush()

    def _archive_name(self, default_name: str) -> str:
        # default_name is "<baseFilename>.<date>"
        path = Path(self.baseFilename)
        stamp = default_name[len(self.baseFilename) + 1:]
        return str(self.history_dir / f"{path.stem}_{stamp}{path.suffix}.gz")

    @staticmethod
    def _archive(source: str, dest: str) -> None:
        with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
            shutil.copyfileobj(src, dst)
        os.remove(source)

    def getFilesToDelete(self) -> List[str]:
        archives = sorted(
            entry.path for entry in os.scandir(self.history_dir)
            if self._archive_pattern.match(entry.name)
        )
        if len(archives) <= self.backupCount:
            return []
        return archives[:len(archives) - self.backupCount]


class EventJsonFormatter(logging.Formatter):
    """One JSON object per record with the event fields lifted out of the message."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
        }
        fields = parse_event(message)
        if fields:
            payload.update({key: value for key, value in fields.items() if key not in payload})
        else:
            payload["message"] = message
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class EventRateLimitFilter(logging.Filter):
    """
    Let one record per (logger, event) through per interval.

    Records at or above ``exempt_level`` always pass. The first record let
    through after a suppressed burst carries ``suppressed=<count>``.
    """

    def __init__(self, interval_seconds: float, exempt_level: int = logging.WARNING):
        super().__init__()
        self.interval = max(float(interval_seconds), 0.0)
        self.exempt_level = exempt_level
        self._seen: Dict[Tuple[str, str], Tuple[float, int]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def event_key(record: logging.LogRecord) -> Tuple[str, str]:
        template = record.msg if isinstance(record.msg, str) else str(record.msg)
        return record.name, parse_event(template).get("event", template)

    def filter(self, record: logging.LogRecord) -> bool:
        if self.interval <= 0 or record.levelno >= self.exempt_level:
            return True

        key = self.event_key(record)
        now = time.monotonic()
        with self._lock:
            last_emit, suppressed = self._seen.get(key, (None, 0))
            if last_emit is not None and now - last_emit < self.interval:
                self._seen[key] = (last_emit, suppressed + 1)
                return False
            self._seen[key] = (now, 0)

        if suppressed:
            record.msg = f"{record.getMessage()} | suppressed={suppressed}"
            record.args = ()
        return True


def setup_logging(
    logs_dir: Path,
    *,
    log_level: int = logging.INFO,
    retention_days: int = 14,
    error_retention_days: int = 30,
    use_json: bool = False,
    console_level: Optional[int] = None,
) -> None:
    """Install console, application and error handlers on the root logger."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    file_formatter = EventJsonFormatter() if use_json else logging.Formatter(DEFAULT_FORMAT)

    console_handler = FlushingStreamHandler()
    console_handler.setLevel(console_level if console_level is not None else log_level)
    console_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))

    app_handler = HistoryRotatingFileHandler(logs_dir / APP_LOG_FILE, retention_days)
    app_handler.setLevel(log_level)
    app_handler.setFormatter(file_formatter)

    error_handler = HistoryRotatingFileHandler(logs_dir / ERROR_LOG_FILE, error_retention_days)
    error_handler.setLevel(logging.WARNING)
    error_handler.setFormatter(file_formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    for handler in (console_handler, app_handler, error_handler):
        root_logger.addHandler(handler)

    logging.captureWarnings(True)


def apply_rate_limit_filters(rate_limits: Mapping[str, Any], *, exempt_level: int = logging.WARNING) -> None:
    """Attach an EventRateLimitFilter to each named logger; unparsable or non-positive intervals are skipped."""
    for logger_name, interval in rate_limits.items():
        try:
            seconds = float(interval)
        except (TypeError, ValueError):
            continue
        if seconds <= 0:
            continue

        target_logger = logging.getLogger(logger_name)
        if not any(isinstance(existing, EventRateLimitFilter) for existing in target_logger.filters):
            target_logger.addFilter(EventRateLimitFilter(seconds, exempt_level=exempt_level))
