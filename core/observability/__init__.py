"""
Observability Module for Committed Inventory Reconciliation

Provides:
- Structured logging with correlation IDs
- Metrics collection (passes, ledger effects, anomaly signals, timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
    record_pass_started,
    record_pass_completed,
    record_pass_skipped,
    record_pass_failed,
    record_processing_time,
)

from core.observability.logging import (
    configure_logging,
    get_logger,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "record_pass_started",
    "record_pass_completed",
    "record_pass_skipped",
    "record_pass_failed",
    "record_processing_time",
    # Logging
    "configure_logging",
    "get_logger",
    "CorrelationContext",
    "with_correlation",
]
