"""JSON log output with trace propagation and secret masking."""
from __future__ import annotations

import json
import logging
import logging.config
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, Optional

from utils.logging_utils import install_sensitive_filter, mask_payload

TRACE_ID_VAR: ContextVar[str] = ContextVar("fahampesa_trace_id", default="-")

_RESERVED = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "trace_id",
        "message",
        "asctime",
    }
)


class TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging API
        record.trace_id = TRACE_ID_VAR.get("-") or "-"
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields land under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "trace_id": getattr(record, "trace_id", None) or TRACE_ID_VAR.get("-"),
            "module": record.module,
            "line": record.lineno,
        }
        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)

        extras: Dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            try:
                json.dumps(value)
                extras[key] = value
            except TypeError:
                extras[key] = repr(value)
        if extras:
            base["context"] = mask_payload(extras)
        return json.dumps(base, ensure_ascii=False)


def configure_structured_logging(*, level: Optional[str] = None) -> None:
    """Route the root logger through the JSON formatter."""

    desired_level = str(level or os.getenv("LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, desired_level, logging.INFO)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "trace": {"()": "utils.structured_logging.TraceIdFilter"},
                "mask": {"()": "utils.logging_utils.SensitiveDataFilter"},
            },
            "formatters": {"json": {"()": "utils.structured_logging.JsonLogFormatter"}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "level": numeric_level,
                    "filters": ["trace", "mask"],
                    "formatter": "json",
                }
            },
            "root": {"level": numeric_level, "handlers": ["default"]},
        }
    )


def get_logger(name: str, *, mask_fields: Iterable[str] = ()) -> logging.Logger:
    logger = logging.getLogger(name)
    install_sensitive_filter(logger, fields=mask_fields)
    return logger


@contextmanager
def trace_context(trace_id: str) -> Iterator[str]:
    token = TRACE_ID_VAR.set(trace_id)
    try:
        yield trace_id
    finally:
        TRACE_ID_VAR.reset(token)


def current_trace_id() -> str:
    return TRACE_ID_VAR.get("-") or "-"
