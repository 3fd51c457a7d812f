"""Prometheus metrics for the webhook pipeline"""
from prometheus_client import Counter, Histogram, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-imports under test reuse the collector already registered
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def _histogram(name, documentation, labelnames=(), buckets=Histogram.DEFAULT_BUCKETS):
    try:
        return Histogram(name, documentation, labelnames, buckets=buckets)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Deliveries by final outcome: success, duplicate, rejected, failed
webhook_deliveries_counter = _counter(
    'billing_webhook_deliveries_total',
    'Total number of Stripe webhook deliveries by outcome',
    ['event_type', 'outcome']
)

# Individual attempts within a delivery
webhook_attempts_counter = _counter(
    'billing_webhook_attempts_total',
    'Total number of webhook processing attempts',
    ['status']
)

# Terminal failures reported to operators
webhook_terminal_failures_counter = _counter(
    'billing_webhook_terminal_failures_total',
    'Total number of webhook deliveries that exhausted retries',
    ['failure_class']
)

webhook_processing_seconds = _histogram(
    'billing_webhook_processing_seconds',
    'Wall time spent processing a webhook delivery, retries included',
    ['event_type'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

notifications_counter = _counter(
    'billing_notifications_total',
    'Total number of notification sends by channel and status',
    ['channel', 'status']
)
