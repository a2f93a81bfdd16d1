"""Structured logging."""

from repobatch.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    correlation_scope,
    get_correlation_context,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "get_correlation_context",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
