"""
Prometheus metrics for settlement monitoring.

Tracks:
- Orders created / cancelled and stock rejections
- Payment initiations by method and result
- Gateway notifications by gateway and result
- Gateway API calls, errors and latency
- Refunds
"""
from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["payment_method"],
)

orders_cancelled_total = Counter(
    "orders_cancelled_total",
    "Total number of orders cancelled",
)

order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Order status transitions applied",
    ["from_status", "to_status"],
)

inventory_rejections_total = Counter(
    "inventory_rejections_total",
    "Reservations rejected for insufficient stock",
)

# Payment metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Payment initiations",
    ["method", "status"],  # status: pending, success, failed, unavailable
)

payment_refunds_total = Counter(
    "payment_refunds_total",
    "Refund attempts",
    ["method", "status"],  # refunded, rejected, unavailable
)

# Notification metrics
gateway_notifications_total = Counter(
    "gateway_notifications_total",
    "Gateway callback notifications processed",
    ["gateway", "result"],  # processed, or the error code of a rejection
)

notification_processing_duration_seconds = Histogram(
    "notification_processing_duration_seconds",
    "Callback processing duration in seconds",
    ["gateway"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Outbound gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(payment_method: str) -> None:
        orders_created_total.labels(payment_method=payment_method).inc()

    @staticmethod
    def record_order_cancelled() -> None:
        orders_cancelled_total.inc()

    @staticmethod
    def record_order_transition(from_status: str, to_status: str) -> None:
        order_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_inventory_rejection() -> None:
        inventory_rejections_total.inc()

    @staticmethod
    def record_payment_initiation(method: str, status: str) -> None:
        payment_initiations_total.labels(method=method, status=status).inc()

    @staticmethod
    def record_refund(method: str, status: str) -> None:
        payment_refunds_total.labels(method=method, status=status).inc()

    @staticmethod
    def record_notification(gateway: str, result: str, duration: float) -> None:
        gateway_notifications_total.labels(gateway=gateway, result=result).inc()
        notification_processing_duration_seconds.labels(gateway=gateway).observe(duration)

    @staticmethod
    def record_gateway_call(gateway: str, operation: str, status: str, duration: float) -> None:
        gateway_api_requests_total.labels(
            gateway=gateway, operation=operation, status=status
        ).inc()
        gateway_api_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration
        )

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))


# Export singleton instance
metrics = MetricsCollector()
