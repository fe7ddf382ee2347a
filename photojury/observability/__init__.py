"""Observability module.

Provides:
- Correlation ID context management for batch tracing
- Structured logging with context propagation
- Prometheus metrics for monitoring

Usage:
    from photojury.observability import (
        correlation_id_context,
        get_logger,
        ITEMS_PROCESSED,
    )
"""

from photojury.observability.context import (
    set_correlation_id,
    get_correlation_id,
    clear_correlation_id,
    correlation_id_context,
)
from photojury.observability.logging import (
    get_logger,
    configure_logging,
    bind_context,
    clear_context,
    add_correlation_id_processor,
)
from photojury.observability.metrics import (
    # Counters
    ITEMS_PROCESSED,
    INFERENCE_REQUESTS,
    CACHE_OPERATIONS,
    CHECKPOINT_OPERATIONS,
    COMBINATIONS_EVALUATED,
    # Gauges
    ACTIVE_SLOTS,
    SLOT_LIMIT,
    CACHE_ENTRIES,
    # Histograms
    INFERENCE_DURATION,
    get_metrics_text,
)

__all__ = [
    # Context
    "set_correlation_id",
    "get_correlation_id",
    "clear_correlation_id",
    "correlation_id_context",
    # Logging
    "get_logger",
    "configure_logging",
    "bind_context",
    "clear_context",
    "add_correlation_id_processor",
    # Counters
    "ITEMS_PROCESSED",
    "INFERENCE_REQUESTS",
    "CACHE_OPERATIONS",
    "CHECKPOINT_OPERATIONS",
    "COMBINATIONS_EVALUATED",
    # Gauges
    "ACTIVE_SLOTS",
    "SLOT_LIMIT",
    "CACHE_ENTRIES",
    # Histograms
    "INFERENCE_DURATION",
    "get_metrics_text",
]
