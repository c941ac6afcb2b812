"""
Genomic Mesh - Structured Logging

Logging configuration using structlog.

Features:
- JSON output for production, console output for development
- A correlation id per anchoring run or reconciliation pass
- Redaction of signatures and key material
- Ledger payload bytes rendered as short hex previews
- Duration logging for ledger calls
"""

from __future__ import annotations

import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.typing import EventDict, WrappedLogger

from genomic_mesh import __version__

SERVICE_NAME = "genomic-mesh"

# Substrings of keys whose values never reach log output
SENSITIVE_KEYS = frozenset({
    "password",
    "passwd",
    "secret",
    "api_key",
    "apikey",
    "authorization",
    "private_key",
    "privatekey",
    "operator_key",
    "signing_key",
    "encryption_key",
    "signature",
})

# Hex characters kept when a bytes value is logged
BYTES_PREVIEW_CHARS = 16

REDACTED = "[REDACTED]"


# =============================================================================
# Custom Processors
# =============================================================================

def add_service_info(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add service identification info."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = __version__
    return event_dict


def _is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and any(s in key.lower() for s in SENSITIVE_KEYS)


def sanitize_sensitive_data(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Mask signatures, keys and credentials at any nesting depth."""

    def _sanitize(obj: Any, depth: int = 0) -> Any:
        if depth > 10:
            return obj
        if isinstance(obj, dict):
            return {
                k: REDACTED if _is_sensitive(k) else _sanitize(v, depth + 1)
                for k, v in obj.items()
            }
        if isinstance(obj, list | tuple):
            return [_sanitize(item, depth + 1) for item in obj]
        return obj

    result: EventDict = _sanitize(event_dict)
    return result


def render_bytes(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """
    Replace raw bytes (log payloads, token metadata) with a hex preview.

    Keeps JSON output valid and stops whole ledger messages landing in logs.
    """
    for key, value in event_dict.items():
        if isinstance(value, bytes | bytearray):
            preview = value[: BYTES_PREVIEW_CHARS // 2].hex()
            event_dict[key] = f"<{len(value)} bytes {preview}...>"
    return event_dict


# =============================================================================
# Logging Configuration
# =============================================================================

def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    include_service_info: bool = True,
    sanitize_logs: bool = True,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON format (for production)
        include_service_info: Add service name/version
        sanitize_logs: Remove sensitive data
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        render_bytes,
    ]

    if include_service_info:
        processors.append(add_service_info)

    if sanitize_logs:
        processors.append(sanitize_sensitive_data)

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    # Driver and HTTP client chatter
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("neo4j").setLevel(logging.WARNING)


# =============================================================================
# Context Management
# =============================================================================

@contextmanager
def correlation_scope(**context: Any) -> Iterator[str]:
    """
    Bind a fresh correlation id plus ``context`` for the enclosed block.

    Previous values are restored on exit, so nested scopes (a poller pass
    driving several resources) keep their own ids.

    Usage:
        with correlation_scope(resource_id=rid) as correlation_id:
            ...
    """
    correlation_id = uuid.uuid4().hex[:16]
    with structlog.contextvars.bound_contextvars(correlation_id=correlation_id, **context):
        yield correlation_id


# =============================================================================
# Performance Logging
# =============================================================================

@contextmanager
def log_duration(
    logger: Any,
    operation: str,
    level: str = "debug",
    **extra_context: Any,
) -> Iterator[None]:
    """
    Log how long a ledger call took, or that it failed.

    Usage:
        with log_duration(logger, "ledger_submit_log", topic_id=topic):
            result = await client.submit_message(...)
    """
    start_time = time.monotonic()

    try:
        yield
    except Exception as e:
        logger.warning(
            f"{operation}_failed",
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            error=str(e),
            error_type=type(e).__name__,
            **extra_context,
        )
        raise

    getattr(logger, level)(
        f"{operation}_completed",
        duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        **extra_context,
    )


__all__ = [
    "configure_logging",
    "correlation_scope",
    "log_duration",
    "add_service_info",
    "render_bytes",
    "sanitize_sensitive_data",
]
