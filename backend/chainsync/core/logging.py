from __future__ import annotations

import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 10

_RESERVED = (
    "args", "msg", "levelno", "levelname", "pathname", "filename", "module", "exc_info", "exc_text",
    "stack_info", "lineno", "funcName", "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "name", "taskName",
)


class _ContextFilter(logging.Filter):
    def __init__(self, service: str, worker: Optional[str], version: str) -> None:
        super().__init__()
        self.service = service
        self.worker = worker
        self.version = version

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service
        if not hasattr(record, "worker"):
            record.worker = self.worker
        if not hasattr(record, "version"):
            record.version = self.version
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "service": getattr(record, "service", None),
            "worker": getattr(record, "worker", None),
            "version": getattr(record, "version", None),
            "event": getattr(record, "event", None),
            "job_kind": getattr(record, "job_kind", None),
            "mode": getattr(record, "mode", None),
            "worker_id": getattr(record, "worker_id", None),
            "pid": getattr(record, "pid", None),
            "message": record.getMessage(),
        }
        # remaining extra keys
        for k, v in getattr(record, "__dict__", {}).items():
            if k.startswith("_") or k in payload or k in _RESERVED:
                continue
            try:
                json.dumps({k: v})
                payload[k] = v
            except (TypeError, ValueError):
                payload[k] = str(v)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _as_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return logging.INFO


def configure_logging(
    *,
    service: str,
    worker: Optional[str] = None,
    level: str | int | None = None,
    log_dir: Optional[str] = None,
) -> None:
    lvl = _as_level(level or os.getenv("LOG_LEVEL", "INFO"))
    version = os.getenv("SERVICE_VERSION", os.getenv("GIT_SHA", "dev"))
    log_dir = log_dir if log_dir is not None else os.getenv("LOG_DIR", "")

    formatter = JsonFormatter()
    ctx = _ContextFilter(service=service, worker=worker, version=version)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(ctx)

    root = logging.getLogger()
    root.setLevel(lvl)
    root.handlers.clear()
    root.addHandler(handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        fname = f"{worker}.log" if worker and worker != "coordinator" else f"{service}.log"
        fh = RotatingFileHandler(
            os.path.join(log_dir, fname), maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
        )
        fh.setFormatter(formatter)
        fh.addFilter(ctx)
        root.addHandler(fh)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def format_duration(seconds: float) -> str:
    """Seconds -> HH:MM:SS (hours are not wrapped at 24)."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
