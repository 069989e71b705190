"""
Comfy Remote - Logging
=======================

Package-wide logging for the proxy.

- one ``comfy_remote`` logger tree with its own handlers (no propagation)
- text lines for the console, or one JSON object per line
- a per-task run id (contextvars) stamped on every record
- optional OpenTelemetry spans and trace ids ([observability] extra)

Usage:
    from comfy_remote.logging_config import get_logger, LogContext, log_timing

    logger = get_logger(__name__)

    with LogContext("run-1a2b3c4d"):
        with log_timing(logger, "submit_job", workflow_id="wf-1"):
            ...
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import settings

__all__ = [
    "StructuredFormatter",
    "get_logger",
    "set_log_level",
    "get_request_id",
    "LogContext",
    "log_timing",
    "traced_operation",
    "OTEL_AVAILABLE",
]

# Optional [observability] extra
try:
    from opentelemetry import trace
    from opentelemetry.instrumentation.logging import LoggingInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None

ROOT_LOGGER_NAME = "comfy_remote"

_run_id: ContextVar[str | None] = ContextVar("comfy_remote_run_id", default=None)

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def _otel_active() -> bool:
    return OTEL_AVAILABLE and settings.logging.otel_enabled


# =============================================================================
# FORMATTING
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Plain ``fmt`` lines, or JSON objects that keep every ``extra`` field."""

    def __init__(
        self, fmt: str | None = None, datefmt: str | None = None, json_output: bool = False
    ):
        super().__init__(fmt, datefmt)
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        if not self.json_output:
            return super().format(record)

        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in vars(record).items():
            if key in _RECORD_ATTRS or key.startswith("_"):
                continue
            entry[key] = value

        return json.dumps(entry, default=str)


class _RunContextFilter(logging.Filter):
    """Stamps run id and, with tracing on, the current trace/span ids."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _run_id.get() or "-"
        record.trace_id = record.span_id = "-"

        if _otel_active():
            span = trace.get_current_span()
            if span.is_recording():
                span_context = span.get_span_context()
                record.trace_id = f"{span_context.trace_id:032x}"
                record.span_id = f"{span_context.span_id:016x}"
        return True


# =============================================================================
# SETUP
# =============================================================================

_configured = False


def _start_tracing() -> None:
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.logging.otel_service_name,
                "service.version": settings.version,
            }
        )
    )
    trace.set_tracer_provider(provider)

    if settings.logging.otel_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.trace.export import BatchSpanProcessor
        except ImportError:
            logging.getLogger(ROOT_LOGGER_NAME).warning(
                "COMFY_REMOTE_LOGGING__OTEL_ENDPOINT is set but the OTLP exporter is not installed"
            )
        else:
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.logging.otel_endpoint))
            )

    LoggingInstrumentor().instrument()


def _setup_logging() -> None:
    global _configured
    if _configured:
        return
    _configured = True

    config = settings.logging
    if _otel_active():
        try:
            _start_tracing()
        except Exception as e:
            logging.getLogger(ROOT_LOGGER_NAME).warning(f"Tracing disabled: {e}")

    if config.json_output:
        formatter = StructuredFormatter(json_output=True)
    else:
        formatter = StructuredFormatter(fmt=config.format, datefmt=config.date_format)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.file:
        path = Path(config.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_RunContextFilter())
        root.addHandler(handler)
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``comfy_remote`` tree (module names are prefixed if needed)."""
    _setup_logging()
    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: str):
    _setup_logging()
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(getattr(logging, level.upper(), logging.INFO))


# =============================================================================
# RUN CONTEXT
# =============================================================================


def get_request_id() -> str | None:
    return _run_id.get()


class LogContext:
    """
    Scope a run id to the current task.

    Ids live in a ContextVar, so two runs awaited concurrently each log
    their own id, and nesting restores the outer id on exit.

    Usage:
        with LogContext("run-abc123"):
            logger.info("Polling")
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self._token = None

    def __enter__(self):
        self._token = _run_id.set(self.request_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _run_id.reset(self._token)
            self._token = None
        return False


# =============================================================================
# SPANS AND TIMING
# =============================================================================


@contextmanager
def traced_operation(name: str, attributes: dict[str, Any] | None = None):
    """Wrap a block in an OpenTelemetry span; a plain pass-through without tracing."""
    if not _otel_active():
        yield
        return
    tracer = trace.get_tracer(settings.logging.otel_service_name)
    with tracer.start_as_current_span(name, attributes=attributes or {}):
        yield


@contextmanager
def log_timing(logger: logging.Logger, operation: str, **extra):
    """
    Log how long a block took: INFO when it finishes, WARNING when it raises.

    Usage:
        with log_timing(logger, "submit_job", workflow_id=workflow.id):
            job_id = await client.submit(job)
    """
    started = time.perf_counter()
    ok = False
    try:
        yield
        ok = True
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        logger.log(
            logging.INFO if ok else logging.WARNING,
            f"{operation} {'completed' if ok else 'failed'} ({duration_ms:.1f}ms)",
            extra={
                "operation": operation,
                "success": ok,
                "duration_ms": round(duration_ms, 1),
                **extra,
            },
        )
