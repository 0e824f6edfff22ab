"""
Prometheus metrics for checkout monitoring.

Tracks:
- Order creation counts and failures
- Gateway call duration and circuit breaker state
- Verification outcomes and credit grants
- Identity verification results
- Webhook events
"""
from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "checkout_orders_created_total",
    "Total number of orders created",
    ["currency", "package_id"],
)

order_creation_errors_total = Counter(
    "checkout_order_creation_errors_total",
    "Total order creation failures",
    ["code"],
)

order_amount_minor_units = Histogram(
    "checkout_order_amount_minor_units",
    "Order amounts in settlement minor units",
    buckets=(10000, 50000, 100000, 250000, 500000, 1000000, 5000000),
)

orders_expired_total = Counter(
    "checkout_orders_expired_total",
    "Total orders moved to the expired state",
)

# Gateway metrics
gateway_requests_total = Counter(
    "checkout_gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],
)

gateway_request_duration_seconds = Histogram(
    "checkout_gateway_request_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "checkout_gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Verification metrics
verifications_total = Counter(
    "checkout_verifications_total",
    "Total payment verification attempts",
    ["outcome", "reason"],
)

credits_granted_total = Counter(
    "checkout_credits_granted_total",
    "Total credits granted after verified payments",
    ["package_id"],
)

# Identity metrics
identity_results_total = Counter(
    "checkout_identity_results_total",
    "Identity verification results",
    ["result"],  # verified, anonymous, token_expired, invalid_token, token_revoked, degraded
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "checkout_webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, package_id: str, amount_minor: int) -> None:
        """Record a created order."""
        orders_created_total.labels(currency=currency, package_id=package_id).inc()
        order_amount_minor_units.observe(amount_minor)

    @staticmethod
    def record_order_error(code: str) -> None:
        """Record an order creation failure."""
        order_creation_errors_total.labels(code=code).inc()

    @staticmethod
    def record_orders_expired(count: int) -> None:
        if count:
            orders_expired_total.inc(count)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_verification(outcome: str, reason: str | None) -> None:
        """Record a verification outcome."""
        verifications_total.labels(outcome=outcome, reason=reason or "none").inc()

    @staticmethod
    def record_credit_grant(package_id: str, credits: int) -> None:
        credits_granted_total.labels(package_id=package_id).inc(credits)

    @staticmethod
    def record_identity_result(result: str) -> None:
        identity_results_total.labels(result=result).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
