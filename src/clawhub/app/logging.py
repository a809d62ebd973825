"""JSON logging for the orchestrator.

Every line carries the service name, schema version and, inside a background
run, the trace and instance it belongs to. Credential fields passed through
``extra`` are masked before they reach the output.
"""

import logging
import sys
import time
from collections import defaultdict
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pythonjsonlogger import jsonlogger

from clawhub.app.config import get_settings
from clawhub.core.vault import mask_token

trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)
instance_id_ctx: ContextVar[str | None] = ContextVar("instance_id", default=None)

# extra= keys whose values are credentials
SECRET_LOG_FIELDS = frozenset({"bot_token", "ai_api_key", "api_token", "github_token"})

SUPPRESSION_WINDOW = 60.0  # seconds


def get_trace_id() -> str | None:
    return trace_id_ctx.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Set trace_id in context, generating one if not provided."""
    tid = trace_id or uuid4().hex
    trace_id_ctx.set(tid)
    return tid


def get_instance_id() -> str | None:
    return instance_id_ctx.get()


def bind_instance(instance_id: str) -> str:
    """Attribute subsequent log lines in this task to instance_id.

    Starts a fresh trace so separate runs for the same instance (provision,
    then a later retry) can be told apart.

    Returns:
        The new trace id.
    """
    instance_id_ctx.set(instance_id)
    return set_trace_id()


def clear_trace_context() -> None:
    trace_id_ctx.set(None)
    instance_id_ctx.set(None)


def _record_instance_id(record: logging.LogRecord) -> str | None:
    return getattr(record, "instance_id", None) or get_instance_id()


class RateLimitFilter(logging.Filter):
    """Suppress repeats of the same message for the same instance.

    The key includes the instance id, so one instance failing every sync
    tick does not mute the same message for healthy instances. ERROR and
    above always pass.
    """

    def __init__(self, rate_per_minute: int = 100) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._seen: dict[tuple, list[float]] = defaultdict(list)
        self._suppressed: set[tuple] = set()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        key = (record.name, record.lineno, record.msg, _record_instance_id(record))
        now = time.monotonic()
        recent = [t for t in self._seen[key] if now - t < SUPPRESSION_WINDOW]
        self._seen[key] = recent

        if len(recent) < self.rate_per_minute:
            if len(recent) < self.rate_per_minute // 2:
                self._suppressed.discard(key)
            recent.append(now)
            return True

        if key in self._suppressed:
            return False

        # First suppressed line is let through as a marker
        self._suppressed.add(key)
        record.msg = f"[RATE LIMITED] {record.msg} (max {self.rate_per_minute}/min)"
        recent.append(now)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        settings = get_settings()
        self._schema_version = settings.logging.schema_version
        self._service = settings.logging.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["pid"] = record.process
        log_record["schema_version"] = self._schema_version
        log_record["service"] = self._service

        if trace_id := get_trace_id():
            log_record["trace_id"] = trace_id
        if "instance_id" not in log_record and (instance_id := get_instance_id()):
            log_record["instance_id"] = instance_id

        for field in SECRET_LOG_FIELDS.intersection(log_record):
            log_record[field] = mask_token(log_record[field])

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(level: int | None = None) -> None:
    """Install the JSON handler on the root logger.

    Args:
        level: Log level. If None, uses LOGGING_LEVEL from settings.
    """
    settings = get_settings()

    if level is None:
        level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter())
    handler.addFilter(RateLimitFilter(settings.logging.rate_limit_per_minute))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Status polling is noisy at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
