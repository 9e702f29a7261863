"""
Structured Logging
JSON-formatted logs with trace correlation for Cloud Logging.
"""

import logging
import re
import sys
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from pythonjsonlogger import jsonlogger
from opentelemetry import trace

from account_hierarchy.app.config import settings


class CloudLoggingFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for Google Cloud Logging.
    Adds trace_id, span_id, and severity mapping.
    """

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any]
    ):
        """Add custom fields to log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["severity"] = record.levelname

        span = trace.get_current_span()
        if span and span.get_span_context().is_valid:
            span_context = span.get_span_context()
            log_record["trace_id"] = f"{span_context.trace_id:032x}"
            log_record["span_id"] = f"{span_context.span_id:016x}"
            log_record["trace_sampled"] = span_context.trace_flags.sampled

        log_record["service"] = settings.app_name
        log_record["version"] = settings.app_version
        log_record["environment"] = settings.environment

        if "message" in log_record:
            log_record["msg"] = log_record.pop("message")


def setup_logging(log_level: Optional[str] = None):
    """
    Configure application-wide structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                  Defaults to settings.log_level
    """
    level = log_level or settings.log_level

    handler = logging.StreamHandler(sys.stdout)
    formatter = CloudLoggingFormatter(
        fmt="%(timestamp)s %(severity)s %(name)s %(msg)s",
        json_ensure_ascii=False
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.info(
        "Logging initialized",
        extra={
            "log_level": level,
            "environment": settings.environment
        }
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def should_include_stacktrace() -> bool:
    """Stack traces are only logged outside production."""
    return settings.environment.lower() in ("development", "staging")


_SENSITIVE_PATTERNS = [
    (re.compile(r'Bearer\s+[a-zA-Z0-9\-_.]+', re.IGNORECASE), 'Bearer [REDACTED]'),
    (re.compile(r'"private_key":\s*"[^"]+?"', re.IGNORECASE), '"private_key": "[REDACTED]"'),
    (re.compile(r'token["\']?\s*[:=]\s*["\']?[a-zA-Z0-9\-_.]{20,}', re.IGNORECASE), 'token: [REDACTED]'),
    (re.compile(r'password["\']?\s*[:=]\s*["\']?[^\s"\']+', re.IGNORECASE), 'password: [REDACTED]'),
]


def _sanitize_error_message(error_msg: str, max_length: int = 500) -> str:
    sanitized = error_msg
    for pattern, replacement in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "... [TRUNCATED]"
    return sanitized


def safe_error_log(
    logger: logging.Logger,
    message: str,
    error: Exception,
    **extra_context
) -> None:
    """
    Log an error, including the stack trace only outside production.

    Args:
        logger: Logger instance
        message: Error message
        error: The exception
        **extra_context: Additional context to include in logs
    """
    error_info = {
        "error_type": type(error).__name__,
        "error_module": type(error).__module__,
        **extra_context
    }

    if should_include_stacktrace():
        logger.error(f"{message}: {error}", exc_info=error, extra=error_info)
    else:
        logger.error(
            f"{message}: {_sanitize_error_message(str(error))}",
            extra={**error_info, "sanitized": True}
        )
