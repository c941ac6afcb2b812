"""
Genomic Mesh - Monitoring Module

Structured logging configuration and context helpers.
"""

from .logging import (
    configure_logging,
    correlation_scope,
    log_duration,
)

__all__ = [
    "configure_logging",
    "correlation_scope",
    "log_duration",
]
