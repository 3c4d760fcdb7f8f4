"""
Secure Logging Utilities for the reservation pipeline
Provides structured logging with automatic PII redaction and correlation IDs
"""

import json
import logging
import socket
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Dict, Optional

import structlog

from .pii_redactor import PIIRedactorFilter, get_default_redactor

# Context variable for correlation ID
correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_RECORD_ATTRIBUTES = frozenset(
    [
        "name", "msg", "args", "created", "msecs", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "exc_info", "exc_text",
        "stack_info", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "taskName", "getMessage",
    ]
)


class StructuredFormatter(logging.Formatter):
    """
    Structured JSON formatter for logs

    Outputs one JSON object per record for log shipping
    """

    def __init__(self, service_name: str = "hotel-reservations"):
        super().__init__()
        self.service_name = service_name
        self.hostname = self._get_hostname()

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "@timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "hostname": self.hostname,
            "correlation_id": correlation_id.get(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_obj[key] = value

        return json.dumps(log_obj, default=str)

    @staticmethod
    def _get_hostname() -> str:
        try:
            return socket.gethostname()
        except OSError:
            return "unknown"


class StepLogger:
    """
    Logger for upstream step clients

    Features:
    - Automatic PII redaction
    - Correlation ID tracking
    - Keyword arguments become structured extra fields
    """

    def __init__(self, name: str, vendor: str):
        self.logger = logging.getLogger(name)
        self.vendor = vendor

        if not any(isinstance(f, PIIRedactorFilter) for f in self.logger.filters):
            self.logger.addFilter(PIIRedactorFilter())

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def with_correlation_id(self, correlation_id_val: Optional[str] = None) -> str:
        """Set or generate correlation ID for request tracking"""
        correlation_id.set(correlation_id_val or str(uuid.uuid4()))
        return correlation_id.get()

    def log_api_call(
        self,
        operation: str,
        request_data: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
        status_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ):
        """Log an upstream call with standardized fields"""
        log_data = {
            "vendor": self.vendor,
            "operation": operation,
            "duration_ms": duration_ms,
            "status_code": status_code,
        }

        if request_data:
            log_data["request"] = get_default_redactor().redact_dict(request_data)

        if error:
            log_data["error"] = str(error)
            log_data["error_type"] = type(error).__name__
            self.logger.error(f"API call failed: {operation}", extra=log_data)
        else:
            self.logger.info(f"API call completed: {operation}", extra=log_data)

    def log_step(self, operation: str, duration_ms: float, error: Optional[BaseException] = None):
        """Log a whole step, retries included; single upstream requests go through log_api_call"""
        log_data = {"vendor": self.vendor, "operation": operation, "step_duration_ms": duration_ms}
        if error:
            log_data["error"] = str(error)
            log_data["error_type"] = type(error).__name__
            self.logger.warning(f"Step failed: {operation}", extra=log_data)
        else:
            self.logger.debug(f"Step completed: {operation}", extra=log_data)

    def debug(self, msg: str, **kwargs):
        self.logger.debug(msg, extra={"vendor": self.vendor, **kwargs})

    def info(self, msg: str, **kwargs):
        self.logger.info(msg, extra={"vendor": self.vendor, **kwargs})

    def warning(self, msg: str, **kwargs):
        self.logger.warning(msg, extra={"vendor": self.vendor, **kwargs})

    def error(self, msg: str, exc_info=None, **kwargs):
        self.logger.error(msg, exc_info=exc_info, extra={"vendor": self.vendor, **kwargs})


class SafeLogger:
    """
    Thin wrapper over a structlog logger.

    Context fields are passed as keyword arguments; the correlation ID of the
    current task is attached automatically.
    """

    def __init__(self, logger: Any):
        self._logger = logger

    def _log(self, log_level: str, event: str, **kwargs) -> None:
        current = correlation_id.get()
        if current and "correlation_id" not in kwargs:
            kwargs["correlation_id"] = current
        getattr(self._logger, log_level)(event, **kwargs)

    def bind(self, **kwargs) -> "SafeLogger":
        return SafeLogger(self._logger.bind(**kwargs))

    def debug(self, event: str, **kwargs) -> None:
        self._log("debug", event, **kwargs)

    def info(self, event: str, **kwargs) -> None:
        self._log("info", event, **kwargs)

    def warning(self, event: str, **kwargs) -> None:
        self._log("warning", event, **kwargs)

    def error(self, event: str, **kwargs) -> None:
        self._log("error", event, **kwargs)

    warn = warning


def get_safe_logger(name: Optional[str] = None) -> SafeLogger:
    """Get a structlog-backed logger for module level use"""
    logger = structlog.get_logger(name) if name else structlog.get_logger()
    return SafeLogger(logger)


def log_performance(operation: str):
    """
    Decorator to log the duration of a whole client step

    Usage:
        @log_performance("lock_rate")
        async def lock_rate(self, ...):
            ...
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            start_time = time.perf_counter()
            error = None

            try:
                return await func(self, *args, **kwargs)
            except Exception as e:
                error = e
                raise
            finally:
                duration_ms = (time.perf_counter() - start_time) * 1000
                logger = getattr(self, "logger", None)
                if isinstance(logger, StepLogger):
                    logger.log_step(operation, duration_ms, error)

        return wrapper

    return decorator
