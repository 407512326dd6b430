"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY


def _counter(name: str, description: str, labels=None):
    # Re-importing the module (tests, reloads) must not register twice
    try:
        return Counter(name, description, labels or [])
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name: str, description: str, labels=None):
    try:
        return Gauge(name, description, labels or [])
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'faithflow_webhook_events_total',
    'Webhook deliveries by provider and ledger outcome',
    ['provider', 'status']
)

# Checkout metrics
checkouts_counter = _counter(
    'faithflow_checkouts_total',
    'Checkout attempts by provider, kind and outcome',
    ['provider', 'kind', 'status']
)

# Refund metrics
refunds_counter = _counter(
    'faithflow_refunds_total',
    'Refunds created by provider and outcome',
    ['provider', 'status']
)

# Job metrics
job_runs_counter = _counter(
    'faithflow_job_runs_total',
    'Billing automation job runs',
    ['job', 'status']
)

dunning_notices_counter = _counter(
    'faithflow_dunning_notices_total',
    'Dunning notices queued'
)

suspended_tenants_counter = _counter(
    'faithflow_suspended_tenants_total',
    'Tenants automatically suspended for past-due billing'
)

queued_communications_gauge = _gauge(
    'faithflow_queued_communications',
    'Communications waiting to be dispatched'
)
