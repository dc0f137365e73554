"""
Prometheus metrics for the payment engine.

Tracks:
- Intents created and status transitions
- Gateway call counts, errors and latency per provider
- Webhook events by outcome
- Refunds issued
- Reconciliation discrepancies
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

payment_intents_created_total = Counter(
    "payment_intents_created_total",
    "Total payment intents created",
    ["provider", "currency"],
)

payment_transitions_total = Counter(
    "payment_transitions_total",
    "Realised payment status transitions",
    ["to_status"],
)

payment_stale_transitions_total = Counter(
    "payment_stale_transitions_total",
    "Conditional transitions that lost to a concurrent writer",
    ["to_status"],
)

idempotency_hits_total = Counter(
    "idempotency_hits_total",
    "Idempotent intent replays",
    ["source"],  # cache, database
)

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway API requests",
    ["provider", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway API errors",
    ["provider", "kind"],
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Gateway API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events by outcome",
    ["provider", "kind", "result"],  # processed, duplicate, ignored, failed, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

refunds_total = Counter(
    "refunds_total",
    "Refunds applied to the ledger",
    ["provider", "source"],  # api, webhook
)

reconciliation_discrepancies = Gauge(
    "reconciliation_discrepancies",
    "Discrepancies found by the last reconciliation run",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation run duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["topic"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_intent_created(provider: str, currency: str) -> None:
        payment_intents_created_total.labels(provider=provider, currency=currency).inc()

    @staticmethod
    def record_transition(to_status: str) -> None:
        payment_transitions_total.labels(to_status=to_status).inc()

    @staticmethod
    def record_stale_transition(to_status: str) -> None:
        payment_stale_transitions_total.labels(to_status=to_status).inc()

    @staticmethod
    def record_idempotency_hit(source: str) -> None:
        idempotency_hits_total.labels(source=source).inc()

    @staticmethod
    def record_gateway_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        gateway_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(provider: str, kind: str) -> None:
        gateway_errors_total.labels(provider=provider, kind=kind).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, kind: str, result: str, duration_seconds: float = 0
    ) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(provider=provider, kind=kind, result=result).inc()
        if duration_seconds > 0:
            webhook_processing_duration_seconds.labels(provider=provider).observe(
                duration_seconds
            )

    @staticmethod
    def record_refund(provider: str, source: str) -> None:
        refunds_total.labels(provider=provider, source=source).inc()

    @staticmethod
    def set_reconciliation_metrics(discrepancies_count: int, duration_seconds: float) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies.set(discrepancies_count)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(topic: str) -> None:
        outbox_events_published_total.labels(topic=topic).inc()


metrics = MetricsCollector()
