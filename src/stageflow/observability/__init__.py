"""Public observability primitives: structured logging and the pipeline event bus."""

from stageflow.observability.events import DispatchError, EventBus, Subscriber
from stageflow.observability.logging import (
    LoggingConfig,
    StructuredLoggingHandle,
    clear_secret_values,
    configure_structlog,
    correlation_scope,
    default_log_redactor,
    get_correlation_context,
    mask_secrets,
    register_secret_values,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "DispatchError",
    "EventBus",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "Subscriber",
    "clear_secret_values",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_correlation_context",
    "mask_secrets",
    "register_secret_values",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
