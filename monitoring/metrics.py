"""
Prometheus metrics for checkout monitoring.

Tracks:
- Checkout requests by payment method and outcome
- Gateway API calls, errors and latency
- Purchase status transitions
- Revenue shares by outcome
- Gateway notifications
- Pending purchase sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total number of checkout requests",
    ["method", "outcome"],  # outcome: created, rejected, unavailable, invalid
)

checkout_duration_seconds = Histogram(
    "checkout_duration_seconds",
    "Checkout processing duration in seconds",
    ["method"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 20.0),
)

checkout_cart_size = Histogram(
    "checkout_cart_size",
    "Number of photos per checkout",
    buckets=(1, 2, 5, 10, 20, 50, 100),
)

checkout_discount_percentage = Counter(
    "checkout_discount_applied_total",
    "Checkouts by progressive discount tier",
    ["percentage"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],  # operation: create_charge, get_payment
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

# Purchase lifecycle metrics
purchase_transitions_total = Counter(
    "purchase_transitions_total",
    "Purchase status transitions applied",
    ["status"],  # completed, failed
)

purchase_batches_rolled_back_total = Counter(
    "purchase_batches_rolled_back_total",
    "Pending batches deleted after a gateway refusal",
)

reconcile_unmatched_total = Counter(
    "reconcile_unmatched_total",
    "Gateway payments that resolved to no purchase",
)

revenue_shares_total = Counter(
    "revenue_shares_total",
    "Revenue share recording attempts",
    ["outcome"],  # created, already_recorded, skipped
)

revenue_split_inconsistent_total = Counter(
    "revenue_split_inconsistent_total",
    "Splits whose organization percentage was out of range",
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
    ["event_type", "status"],  # processed, ignored, failed, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Sweeper metrics
sweep_purchases_total = Counter(
    "sweep_purchases_total",
    "Pending purchases examined by the sweeper",
    ["result"],  # reconciled, skipped, failed, no_payment_id
)

sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Pending purchase sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of last pending purchase sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(
        method: str, outcome: str, duration_seconds: float, cart_size: int = 0
    ) -> None:
        """Record a checkout request."""
        checkout_requests_total.labels(method=method, outcome=outcome).inc()
        checkout_duration_seconds.labels(method=method).observe(duration_seconds)
        if cart_size:
            checkout_cart_size.observe(cart_size)

    @staticmethod
    def record_discount(percentage: int) -> None:
        checkout_discount_percentage.labels(percentage=str(percentage)).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a gateway API error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_transition(status: str, count: int = 1) -> None:
        if count:
            purchase_transitions_total.labels(status=status).inc(count)

    @staticmethod
    def record_batch_rollback() -> None:
        purchase_batches_rolled_back_total.inc()

    @staticmethod
    def record_unmatched_payment() -> None:
        reconcile_unmatched_total.inc()

    @staticmethod
    def record_revenue_share(outcome: str) -> None:
        """Record a revenue share outcome."""
        revenue_shares_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_split_inconsistency() -> None:
        revenue_split_inconsistent_total.inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_sweep(
        reconciled: int, skipped: int, failed: int, no_payment_id: int, duration_seconds: float
    ) -> None:
        """Record a pending purchase sweep."""
        sweep_purchases_total.labels(result="reconciled").inc(reconciled)
        sweep_purchases_total.labels(result="skipped").inc(skipped)
        sweep_purchases_total.labels(result="failed").inc(failed)
        sweep_purchases_total.labels(result="no_payment_id").inc(no_payment_id)
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
