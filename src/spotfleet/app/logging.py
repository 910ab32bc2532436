"""JSON logging configuration with cycle tracing and rate limiting."""

import logging
import sys
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from pythonjsonlogger import jsonlogger

from spotfleet.app.config import get_settings

# One trace per monitor cycle or recovery attempt
trace_id_ctx: ContextVar[str | None] = ContextVar("trace_id", default=None)

TEXT_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_trace_id() -> str | None:
    """Get current trace_id from context."""
    return trace_id_ctx.get()


def set_trace_id(trace_id: str | None = None) -> str:
    """Set trace_id in context, generating one if not provided.

    Args:
        trace_id: Optional trace ID to set. If None, generates a short UUID.

    Returns:
        The trace ID that was set.
    """
    tid = trace_id or str(uuid4())[:8]
    trace_id_ctx.set(tid)
    return tid


def clear_trace_context() -> None:
    trace_id_ctx.set(None)


class RateLimitFilter(logging.Filter):
    """Rate limit filter to prevent log storms.

    Limits identical log messages to a configurable rate per minute.
    ERROR logs bypass rate limiting and are always logged.
    """

    def __init__(self, rate_per_minute: int = 100) -> None:
        super().__init__()
        self.rate_per_minute = rate_per_minute
        self._counts: dict[str, list[float]] = defaultdict(list)
        self._warned: set[str] = set()

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        key = f"{record.name}:{record.lineno}:{record.msg}"
        now = time.time()

        self._counts[key] = [t for t in self._counts[key] if now - t < 60]

        if len(self._counts[key]) >= self.rate_per_minute:
            if key not in self._warned:
                self._warned.add(key)
                record.msg = f"[RATE LIMITED] {record.msg} (max {self.rate_per_minute}/min)"
                self._counts[key].append(now)
                return True
            return False

        if key in self._warned and len(self._counts[key]) < self.rate_per_minute // 2:
            self._warned.discard(key)

        self._counts[key].append(now)
        return True


class TraceFilter(logging.Filter):
    """Pass only records emitted under one trace_id."""

    def __init__(self, trace_id: str) -> None:
        super().__init__()
        self.trace_id = trace_id

    def filter(self, record: logging.LogRecord) -> bool:
        return get_trace_id() == self.trace_id


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with schema version and trace context.

    Adds the following standard fields to all logs:
    - timestamp: ISO 8601 format with timezone
    - level: Log level name
    - logger: Logger name
    - pid: Process ID
    - schema_version: Log schema version
    - service: Service name
    - trace_id: Cycle / recovery attempt ID (if set in context)
    """

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

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(level: int | None = None) -> None:
    """Configure logging for the CLI.

    Logs go to stderr so stdout stays free for command output.

    Args:
        level: Log level. If None, uses LOGGING_LEVEL from settings.
    """
    settings = get_settings()

    if level is None:
        level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "text":
        formatter: logging.Formatter = logging.Formatter(TEXT_FORMAT, TEXT_DATEFMT)
    else:
        formatter = CustomJsonFormatter()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(RateLimitFilter(settings.logging.rate_limit_per_minute))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # botocore is chatty at INFO (credential lookup, endpoint resolution)
    for name in ("botocore", "aiobotocore", "aioboto3", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def trace_file_log(path: Path, trace_id: str) -> Iterator[Path]:
    """Copy every record of ``trace_id`` into ``path`` while active.

    The file is truncated first so its tail always belongs to the latest
    attempt.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, mode="w")
    handler.setFormatter(logging.Formatter(TEXT_FORMAT, TEXT_DATEFMT))
    handler.addFilter(TraceFilter(trace_id))
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield path
    finally:
        root_logger.removeHandler(handler)
        handler.close()


def tail_file(path: Path, lines: int) -> str:
    """Last ``lines`` lines of ``path``, or a placeholder when missing."""
    try:
        content = path.read_text(errors="replace").splitlines()
    except OSError:
        return "No log available"
    return "\n".join(content[-lines:]) if content else "No log available"
