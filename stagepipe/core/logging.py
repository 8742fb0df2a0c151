from __future__ import annotations

import json
import logging
import threading
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Correlation id of the run executing in the current task or worker thread.
current_run: ContextVar[Optional[str]] = ContextVar("stagepipe_run", default=None)


class RunFilter(logging.Filter):
    """Passes only records emitted while ``correlation_id`` is the current run."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__()
        self.correlation_id = correlation_id

    def filter(self, record: logging.LogRecord) -> bool:
        return current_run.get() == self.correlation_id


def get_logger(
    name: str, logs_dir: Optional[Path] = None, correlation_id: Optional[str] = None
) -> logging.Logger:
    logger = logging.getLogger(f"stagepipe.{name}" if name else "stagepipe")
    if logs_dir is None:
        return logger
    logs_dir.mkdir(parents=True, exist_ok=True)
    target = str((logs_dir / f"{name or 'stagepipe'}.log").resolve())
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return logger
    file_handler = logging.FileHandler(target)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if correlation_id is not None:
        file_handler.addFilter(RunFilter(correlation_id))
    logger.addHandler(file_handler)
    if logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    return logger


def release_logger(logger: logging.Logger, logs_dir: Path) -> None:
    target_dir = logs_dir.resolve()
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename).parent == target_dir:
            logger.removeHandler(handler)
            handler.close()


class EventLogger:
    def __init__(self, path: Path, **context: Any) -> None:
        self.path = path
        self.context = dict(context)
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, event: Dict[str, Any]) -> None:
        payload = dict(self.context)
        payload.update(event)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        line = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


class MemoryEventLogger:
    def __init__(self, **context: Any) -> None:
        self.context = dict(context)
        self.events: list[Dict[str, Any]] = []

    def record(self, event: Dict[str, Any]) -> None:
        payload = dict(self.context)
        payload.update(event)
        self.events.append(payload)

    def names(self) -> list[str]:
        return [e.get("event", "") for e in self.events]


def get_event_logger(logs_dir: Path, **context: Any) -> EventLogger:
    return EventLogger(logs_dir / "events.jsonl", **context)


def log_event(event_logger: Any, event: str, **data: Any) -> None:
    if event_logger is None:
        return
    payload = {"event": event}
    payload.update(data)
    try:
        event_logger.record(payload)
    except Exception:
        return


class BoundEventLogger:
    def __init__(self, event_logger: Any, **context: Any) -> None:
        self.event_logger = event_logger
        self.context = dict(context)

    def record(self, event: Dict[str, Any]) -> None:
        payload = dict(self.context)
        payload.update(event)
        self.event_logger.record(payload)


def bind_events(event_logger: Any, **context: Any) -> Any:
    if event_logger is None:
        return None
    return BoundEventLogger(event_logger, **context)
