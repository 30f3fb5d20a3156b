"""
Prometheus metrics for the chat storage layer.

This module provides:
- Storage operation latency histogram (operation)
- Storage error counter (operation, kind)
- Ingestion outcome counter (result)
- Applied migration counter (backend)

Metrics are stored in-memory using prometheus-client.
"""

from typing import Optional

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

storage_operation_latency_seconds = Histogram(
    "chatstore_operation_latency_seconds",
    "Storage operation latency in seconds",
    labelnames=["operation"]
)

storage_errors_total = Counter(
    "chatstore_errors_total",
    "Storage operations that failed",
    labelnames=["operation", "kind"]
)

# result: stored, skipped_empty, no_payload
ingest_events_total = Counter(
    "chatstore_ingest_events_total",
    "Message events processed by the ingestion translator",
    labelnames=["result"]
)

migrations_applied_total = Counter(
    "chatstore_migrations_applied_total",
    "Schema migrations applied",
    labelnames=["backend"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_storage_operation(operation: str, latency_seconds: float, error_kind: Optional[str] = None) -> None:
    """
    Record a storage operation in metrics.

    Args:
        operation: Repository method name (store_chat, get_messages, ...)
        latency_seconds: Time spent in the backend
        error_kind: Error class name when the operation failed
    """
    storage_operation_latency_seconds.labels(operation=operation).observe(latency_seconds)
    if error_kind is not None:
        storage_errors_total.labels(operation=operation, kind=error_kind).inc()


def record_ingest_outcome(result: str) -> None:
    """
    Record an ingestion outcome.

    Args:
        result: One of
            - "stored": chat upserted and message stored
            - "skipped_empty": chat upserted, no text or media to store
            - "no_payload": event carried no message
    """
    ingest_events_total.labels(result=result).inc()


def record_migration_applied(backend: str) -> None:
    migrations_applied_total.labels(backend=backend).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
