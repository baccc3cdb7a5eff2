"""
Prometheus metrics for the commerce platform.

Tracks:
- HTTP requests and latency
- Orders by status and checkout saga outcomes
- Inventory reservations
- Payments and idempotency hits
- Cache hit ratio per namespace
- Outbox queue depth and published events
- Notifications and search queries
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# HTTP metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Order metrics
orders_total = Counter(
    "orders_total",
    "Order status transitions",
    ["status"],
)

order_value_cents = Histogram(
    "order_value_cents",
    "Order totals in cents",
    buckets=(500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
)

# Saga metrics
saga_executions_total = Counter(
    "saga_executions_total",
    "Saga executions by final state",
    ["saga", "state"],
)

saga_step_duration_seconds = Histogram(
    "saga_step_duration_seconds",
    "Saga step duration in seconds",
    ["saga", "step"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

saga_recoveries_total = Counter(
    "saga_recoveries_total",
    "Stale sagas recovered",
    ["saga", "state"],
)

# Inventory metrics
inventory_reservations_total = Counter(
    "inventory_reservations_total",
    "Inventory reservation attempts",
    ["outcome"],  # reserved, insufficient, conflict_retry, released, expired
)

# Payment metrics
payments_total = Counter(
    "payments_total",
    "Payments by status",
    ["status", "currency"],
)

payment_amount_cents = Histogram(
    "payment_amount_cents",
    "Payment amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Payment gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

idempotency_hits_total = Counter(
    "idempotency_hits_total",
    "Idempotent replays served",
    ["source"],  # redis, database
)

# Cache metrics
cache_requests_total = Counter(
    "cache_requests_total",
    "Cache lookups",
    ["namespace", "result"],  # hit, miss, error
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_events_dead_lettered_total = Counter(
    "outbox_events_dead_lettered_total",
    "Outbox events given up on",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Notification and search metrics
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notifications by channel and status",
    ["channel", "status"],
)

search_queries_total = Counter(
    "search_queries_total",
    "Search queries",
    ["has_results"],
)

# Lock metrics
distributed_lock_acquisitions_total = Counter(
    "distributed_lock_acquisitions_total",
    "Total distributed lock acquisitions",
    ["status"],  # acquired, failed
)

last_recovery_run_timestamp = Gauge(
    "last_recovery_run_timestamp",
    "Timestamp of the last recovery worker pass",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_http_request(method: str, status_code: int, duration_seconds: float) -> None:
        """Record an HTTP request."""
        http_requests_total.labels(method=method, status_code=str(status_code)).inc()
        http_request_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_order_status(status: str, total_cents: int = 0) -> None:
        """Record an order entering a status."""
        orders_total.labels(status=status).inc()
        if total_cents:
            order_value_cents.observe(total_cents)

    @staticmethod
    def record_saga(saga: str, state: str) -> None:
        """Record a finished saga."""
        saga_executions_total.labels(saga=saga, state=state).inc()

    @staticmethod
    def record_saga_step(saga: str, step: str, duration_seconds: float) -> None:
        """Record saga step duration."""
        saga_step_duration_seconds.labels(saga=saga, step=step).observe(duration_seconds)

    @staticmethod
    def record_saga_recovery(saga: str, state: str) -> None:
        """Record a recovered saga."""
        saga_recoveries_total.labels(saga=saga, state=state).inc()

    @staticmethod
    def record_reservation(outcome: str) -> None:
        """Record an inventory reservation outcome."""
        inventory_reservations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payment(status: str, currency: str, amount_cents: int) -> None:
        """Record a payment."""
        payments_total.labels(status=status, currency=currency).inc()
        payment_amount_cents.observe(amount_cents)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record payment gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_idempotency_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_hits_total.labels(source=source).inc()

    @staticmethod
    def record_cache(namespace: str, result: str) -> None:
        """Record a cache lookup."""
        cache_requests_total.labels(namespace=namespace, result=result).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_dead_letter(event_type: str) -> None:
        """Record an event moved to the dead letter state."""
        outbox_events_dead_lettered_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        """Record outbox batch duration."""
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_notification(channel: str, status: str) -> None:
        """Record a notification delivery attempt."""
        notifications_sent_total.labels(channel=channel, status=status).inc()

    @staticmethod
    def record_search(has_results: bool) -> None:
        """Record a search query."""
        search_queries_total.labels(has_results=str(has_results).lower()).inc()

    @staticmethod
    def record_distributed_lock(status: str) -> None:
        """Record distributed lock acquisition."""
        distributed_lock_acquisitions_total.labels(status=status).inc()

    @staticmethod
    def mark_recovery_run() -> None:
        """Stamp the recovery worker's last pass."""
        last_recovery_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
