"""
Prometheus metrics for order reconciliation monitoring.

Tracks:
- Reconciliation attempts by initiator and result
- Refund outcomes and cancellations
- Gateway API calls and errors
- Webhook events
- Outbox depth and notification deliveries
"""
from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
reconciliation_attempts_total = Counter(
    "reconciliation_attempts_total",
    "Total payment reconciliation attempts",
    ["initiator", "result"],  # result: paid, failed, already_processed, not_found
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Payment reconciliation duration in seconds",
    ["initiator"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

inventory_decrements_total = Counter(
    "inventory_decrements_total",
    "Order-scoped inventory movements",
    ["direction"],  # decrement, restore
)

# Cancellation / refund metrics
order_cancellations_total = Counter(
    "order_cancellations_total",
    "Total order cancellations",
    ["payment_status"],
)

refund_outcomes_total = Counter(
    "refund_outcomes_total",
    "Refund outcomes by source",
    ["outcome", "source"],  # source: submission, webhook
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total payment gateway API errors",
    ["error_type"],  # transient, permanent, rate_limit, timeout
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, duplicate, ignored, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of notification events waiting in the outbox",
)

notifications_total = Counter(
    "notifications_total",
    "Notification delivery attempts",
    ["event_type", "status"],  # sent, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_reconciliation(initiator: str, result: str, duration_seconds: float) -> None:
        """Record a payment reconciliation attempt."""
        reconciliation_attempts_total.labels(initiator=initiator, result=result).inc()
        reconciliation_duration_seconds.labels(initiator=initiator).observe(duration_seconds)

    @staticmethod
    def record_inventory_movement(direction: str) -> None:
        inventory_decrements_total.labels(direction=direction).inc()

    @staticmethod
    def record_cancellation(payment_status: str) -> None:
        """Record an order cancellation."""
        order_cancellations_total.labels(payment_status=payment_status).inc()

    @staticmethod
    def record_refund_outcome(outcome: str, source: str) -> None:
        """Record a refund outcome."""
        refund_outcomes_total.labels(outcome=outcome, source=source).inc()

    @staticmethod
    def record_gateway_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_api_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def set_outbox_pending(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_notification(event_type: str, status: str) -> None:
        notifications_total.labels(event_type=event_type, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
