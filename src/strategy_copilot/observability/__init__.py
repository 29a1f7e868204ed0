"""Public observability primitives: structured logging and correlation context."""

from strategy_copilot.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    logging_config_from_mapping,
    set_correlation_fields,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "get_active_logging_handle",
    "get_correlation_context",
    "logging_config_from_mapping",
    "set_correlation_fields",
    "setup_structured_logging",
    "shutdown_logging",
]
