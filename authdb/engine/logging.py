"""
authdb Logging — stdlib logging setup plus a structured JSONL event log.

Implements:
- MaskingFilter: redacts credentials from every record before formatting
- JsonFormatter: one JSON object per line for log shippers
- configure_logging(): installs handler/filter on the "authdb" logger
- FileLogger: per-category event files (daily): {dir}/{category}/{YYYY-MM-DD}.jsonl
- log_resolution_event / log_health_event: masked event builders
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from authdb.engine.config import LoggingSettings
from authdb.engine.masking import default_masker

logger = logging.getLogger("authdb.engine.logging")

ROOT_LOGGER = "authdb"

# Valid event categories
CATEGORIES = ("resolution", "health")


class MaskingFilter(logging.Filter):
    """Render the record message once and replace it with a masked copy."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        record.msg = default_masker.mask(message)
        record.args = None
        return True


class JsonFormatter(logging.Formatter):
    """Format records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            data["exception"] = default_masker.mask(self.formatException(record.exc_info))
        return json.dumps(data, default=str, separators=(",", ":"))


def configure_logging(settings: Optional[LoggingSettings] = None) -> logging.Logger:
    """
    Configure the "authdb" logger hierarchy. Safe to call more than once;
    the previously installed handler is replaced.
    """
    settings = settings or LoggingSettings()
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(settings.level)

    for handler in list(root.handlers):
        if getattr(handler, "_authdb_handler", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._authdb_handler = True  # type: ignore[attr-defined]
    handler.addFilter(MaskingFilter())
    if settings.format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)

    if settings.directory:
        set_file_logger(FileLogger(settings.directory))
    return root


class LogEntry:
    """A structured event destined for a category file."""

    __slots__ = ("category", "data")

    def __init__(self, category: str, data: Dict[str, Any]):
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes JSONL events to per-category files, rotated daily:
    {log_dir}/{category}/{YYYY-MM-DD}.jsonl

    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        for category in CATEGORIES:
            (self._log_dir / category).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def write(self, entry: LogEntry) -> None:
        """Append a single entry to today's file for its category."""
        if entry.category not in CATEGORIES:
            raise ValueError(f"Unknown log category '{entry.category}'")
        file_path = self._resolve_path(entry.category)
        with self._file_locks[str(file_path)]:
            with open(file_path, "a", encoding="utf-8") as f:
                f.write(entry.to_json())
                f.write("\n")

    def _resolve_path(self, category: str, day: Optional[date] = None) -> Path:
        return self._log_dir / category / f"{(day or date.today()).isoformat()}.jsonl"

    def query(
        self,
        category: str,
        *,
        days: int = 7,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Read entries for ``category`` from the last ``days`` days, newest first.
        Entries must match every key/value in ``filters``.
        """
        results: List[Dict[str, Any]] = []
        current = date.today()
        oldest = current - timedelta(days=days)
        while current >= oldest and len(results) < limit:
            path = self._resolve_path(category, current)
            if path.exists():
                day_entries = self._read_jsonl(path, filters)
                day_entries.reverse()
                results.extend(day_entries[: limit - len(results)])
            current -= timedelta(days=1)
        return results

    @staticmethod
    def _read_jsonl(path: Path, filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if filters and not all(data.get(k) == v for k, v in filters.items()):
                        continue
                    entries.append(data)
        except OSError as exc:
            logger.warning("Could not read log file %s: %s", path, exc)
        return entries


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------

_file_logger: Optional[FileLogger] = None


def set_file_logger(file_logger: Optional[FileLogger]) -> None:
    global _file_logger
    _file_logger = file_logger


def get_file_logger() -> Optional[FileLogger]:
    return _file_logger


def _emit(category: str, data: Dict[str, Any]) -> Dict[str, Any]:
    entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **default_masker.mask_mapping(data)}
    if _file_logger is not None:
        try:
            _file_logger.write(LogEntry(category, entry))
        except OSError as e:
            logger.error(f"Failed to write {category} event: {e}")
    return entry


def log_resolution_event(event: str, **data: Any) -> Dict[str, Any]:
    """Record a supervisor event (attempt, failure, configured, fallback)."""
    return _emit("resolution", {"event": event, **data})


def log_health_event(name: str, report: Any) -> Dict[str, Any]:
    """Record a health report (anything with to_dict())."""
    return _emit("health", {"event": "probe", "check": name, **report.to_dict()})
