"""
Observability for the invoice ingestion pipeline.

Provides structured logging with correlation IDs (upload key, carrier,
workflow) so a single upload can be followed from parse to commit.
"""

from core.observability.logging import (
    get_logger,
    configure_logging,
    configure_from_settings,
    CorrelationContext,
    get_correlation_context,
    with_correlation,
    log_activity_start,
    log_activity_complete,
    log_activity_error,
)

__all__ = [
    "get_logger",
    "configure_logging",
    "configure_from_settings",
    "CorrelationContext",
    "get_correlation_context",
    "with_correlation",
    "log_activity_start",
    "log_activity_complete",
    "log_activity_error",
]
