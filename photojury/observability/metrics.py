"""Prometheus metrics definitions for the photojury batch engine.

Defines counters, gauges, and histograms for monitoring:
- Item processing throughput and outcome
- Cache performance
- Checkpoint persistence
- Inference latency
- Concurrency slot pool status
- Set optimizer enumeration volume

Usage:
    from photojury.observability.metrics import (
        ITEMS_PROCESSED,
        INFERENCE_DURATION,
    )

    # Increment counter
    ITEMS_PROCESSED.labels(status="success", source="inference").inc()

    # Track histogram
    INFERENCE_DURATION.labels(kind="item").observe(12.4)

    # Set gauge
    SLOT_LIMIT.set(3)
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    generate_latest,
)

# Custom registry to avoid conflicts with default registry
# Allows clean testing and multiple instances
REGISTRY = CollectorRegistry(auto_describe=True)

# =============================================================================
# COUNTERS - Monotonically increasing values
# =============================================================================

ITEMS_PROCESSED = Counter(
    name="photojury_items_processed_total",
    documentation="Total number of items that reached a terminal state",
    labelnames=["status", "source"],  # success/failed, checkpoint/cache/inference
    registry=REGISTRY,
)

INFERENCE_REQUESTS = Counter(
    name="photojury_inference_requests_total",
    documentation="Total external inference attempts",
    labelnames=["kind", "status"],  # item/group, success/failed
    registry=REGISTRY,
)

CACHE_OPERATIONS = Counter(
    name="photojury_cache_operations_total",
    documentation="Total cache operations",
    labelnames=["operation"],  # hit, miss, set, set_failed
    registry=REGISTRY,
)

CHECKPOINT_OPERATIONS = Counter(
    name="photojury_checkpoint_operations_total",
    documentation="Total checkpoint operations",
    labelnames=["operation", "status"],  # load/save/delete, success/failed
    registry=REGISTRY,
)

COMBINATIONS_EVALUATED = Counter(
    name="photojury_combinations_evaluated_total",
    documentation="Total candidate sets scored by the optimizer",
    labelnames=["stage"],  # cheap, group
    registry=REGISTRY,
)

# =============================================================================
# GAUGES - Values that can go up and down
# =============================================================================

ACTIVE_SLOTS = Gauge(
    name="photojury_active_slots",
    documentation="Concurrency slots currently held",
    registry=REGISTRY,
)

SLOT_LIMIT = Gauge(
    name="photojury_slot_limit",
    documentation="Current auto-scaled concurrency limit",
    registry=REGISTRY,
)

CACHE_ENTRIES = Gauge(
    name="photojury_cache_entries",
    documentation="Entries present in the project cache",
    registry=REGISTRY,
)

# =============================================================================
# HISTOGRAMS - Distribution of values
# =============================================================================

INFERENCE_DURATION = Histogram(
    name="photojury_inference_duration_seconds",
    documentation="External inference duration in seconds",
    labelnames=["kind"],  # item, group
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
    registry=REGISTRY,
)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def get_metrics_text() -> bytes:
    """Generate Prometheus metrics in text format.

    Returns:
        UTF-8 encoded metrics in Prometheus exposition format.
    """
    return generate_latest(REGISTRY)
