"""Prometheus metrics for the webhook pipeline"""
from prometheus_client import Counter, Gauge, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-imports (tests, reloads) must not register the same collector twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name, documentation, labelnames=()):
    try:
        return Gauge(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Receiver metrics
webhook_received_counter = _counter(
    'stagepass_webhook_events_received_total',
    'Total number of webhook deliveries accepted for processing',
    ['event_type', 'verified']
)

webhook_rejected_counter = _counter(
    'stagepass_webhook_events_rejected_total',
    'Total number of webhook deliveries rejected at the HTTP boundary',
    ['reason']
)

webhook_queue_depth_gauge = _gauge(
    'stagepass_webhook_queue_depth',
    'Number of webhook events waiting in the worker queue'
)

# Pipeline metrics
webhook_processed_counter = _counter(
    'stagepass_webhook_events_processed_total',
    'Total number of webhook events processed, by outcome',
    ['event_type', 'status']
)

orders_synthesized_counter = _counter(
    'stagepass_orders_synthesized_total',
    'Total number of orders created from payment metadata'
)

tickets_materialized_counter = _counter(
    'stagepass_tickets_materialized_total',
    'Total number of ticket materialization attempts',
    ['status']
)

notifications_counter = _counter(
    'stagepass_notifications_total',
    'Total number of order notification sends',
    ['kind', 'status']
)

subscription_projection_counter = _counter(
    'stagepass_subscription_projections_total',
    'Total number of subscription projection writes',
    ['event_type', 'status']
)
