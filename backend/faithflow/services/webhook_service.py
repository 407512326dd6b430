"""Webhook pipeline: verify, claim in the ledger, reconcile, commit, publish.

Every provider route goes through the same sequence:

    1. verify the signature (rejected deliveries never touch the ledger)
    2. derive a stable external event id
    3. begin_webhook_processing - commits a PROCESSING row or reports a duplicate
    4. apply the business logic (flush only)
    5. mark_webhook_processed commits everything, or on error the business
       changes are rolled back, the row is marked FAILED and the error re-raised

Realtime events are published only after the commit succeeds.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from sqlalchemy.orm import Session

from faithflow.core.config import settings
from faithflow.core.errors import WebhookSignatureError
from faithflow.core.logging import webhook_logger
from faithflow.core.metrics import webhook_events_counter
from faithflow.services.paystack_service import verify_paystack_signature
from faithflow.services.platform_billing_service import handle_platform_paystack_event, handle_platform_stripe_event
from faithflow.services.provider_events import (
    normalize_paystack_event, normalize_stripe_event, paystack_plan_code, paystack_subscription_code,
)
from faithflow.services.providers import ProviderClients, get_provider_clients
from faithflow.services.realtime_service import RealtimeEvent, emit_realtime_event
from faithflow.services.reconciliation_service import ReconciliationContext, apply_event
from faithflow.services.stripe_service import construct_stripe_event
from faithflow.services.webhook_ledger_service import (
    begin_webhook_processing, build_external_event_id, mark_webhook_failed, mark_webhook_processed,
    payload_sha256,
)

logger = logging.getLogger(__name__)

# The processor returns (result, tenant_id, church_id, realtime events)
Processor = Callable[[], Tuple[Dict[str, Any], Optional[int], Optional[int], List[RealtimeEvent]]]


def paystack_external_event_id(event: Dict[str, Any], payload: bytes) -> str:
    """Paystack envelopes carry no event id, so one is synthesized from the body"""
    data = event.get("data") or {}
    if not isinstance(data, dict):
        data = {}
    return build_external_event_id([
        event.get("event"),
        data.get("id"),
        data.get("reference"),
        paystack_subscription_code(data),
        paystack_plan_code(data),
        payload_sha256(payload)[:16],
    ])


def _decode_paystack_payload(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except ValueError:
        raise WebhookSignatureError("Invalid payload")
    if not isinstance(event, dict):
        raise WebhookSignatureError("Invalid payload")
    return event


def _run_ledgered(
    db: Session,
    provider: str,
    external_event_id: str,
    event_type: Optional[str],
    payload: bytes,
    process: Processor
) -> Dict[str, Any]:
    begin = begin_webhook_processing(db, provider, external_event_id, event_type, payload)
    if begin.duplicate:
        webhook_events_counter.labels(provider=provider, status="duplicate").inc()
        return {"received": True, "duplicate": True}

    try:
        result, tenant_id, church_id, realtime_events = process()
        mark_webhook_processed(db, begin.record_id, result, tenant_id=tenant_id, church_id=church_id)
    except Exception as e:
        webhook_logger.error(f"Error processing {provider} webhook {external_event_id}: {e}", exc_info=True)
        db.rollback()
        mark_webhook_failed(db, begin.record_id, str(e))
        webhook_events_counter.labels(provider=provider, status="failed").inc()
        raise

    webhook_events_counter.labels(provider=provider, status="processed").inc()
    webhook_logger.info(f"Processed {provider} webhook {external_event_id} ({event_type}): {result}")

    for realtime_event in realtime_events:
        emit_realtime_event(realtime_event)
    return {"received": True}


def _reconcile(ctx: ReconciliationContext, events: list):
    outcomes = [apply_event(ctx, ev) for ev in events]
    return {"outcomes": outcomes}, ctx.tenant_id, ctx.church_id, ctx.realtime_events


# ============================================================================
# CHURCH GIVING WEBHOOKS
# ============================================================================

def process_stripe_webhook(
    db: Session,
    payload: bytes,
    sig_header: Optional[str],
    providers: Optional[ProviderClients] = None
) -> Dict[str, Any]:
    """Handle a church-giving Stripe webhook

    Raises:
        WebhookSignatureError: Invalid signature or payload (nothing recorded)
        PreconditionFailedError: Webhook secret not configured
    """
    event = construct_stripe_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    ctx = ReconciliationContext(db=db, provider="STRIPE", providers=providers or get_provider_clients())

    def process():
        return _reconcile(ctx, normalize_stripe_event(event))

    return _run_ledgered(db, "STRIPE", event["id"], event.get("type"), payload, process)


def process_paystack_webhook(
    db: Session,
    payload: bytes,
    signature: Optional[str],
    providers: Optional[ProviderClients] = None
) -> Dict[str, Any]:
    """Handle a church-giving Paystack webhook. charge.success is re-verified before use."""
    verify_paystack_signature(payload, signature, settings.PAYSTACK_SECRET_KEY)
    event = _decode_paystack_payload(payload)
    providers = providers or get_provider_clients()
    ctx = ReconciliationContext(db=db, provider="PAYSTACK", providers=providers)

    def process():
        events = normalize_paystack_event(event, providers.paystack().verify_transaction)
        return _reconcile(ctx, events)

    return _run_ledgered(db, "PAYSTACK", paystack_external_event_id(event, payload), event.get("event"), payload, process)


# ============================================================================
# PLATFORM BILLING WEBHOOKS
# ============================================================================

def process_platform_stripe_webhook(db: Session, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Handle a Stripe webhook for tenant subscriptions to FaithFlow plans"""
    event = construct_stripe_event(payload, sig_header, settings.STRIPE_PLATFORM_WEBHOOK_SECRET)

    def process():
        result = handle_platform_stripe_event(db, event)
        return result, result.get("tenant_id"), None, []

    return _run_ledgered(db, "STRIPE_PLATFORM", event["id"], event.get("type"), payload, process)


def process_platform_paystack_webhook(
    db: Session,
    payload: bytes,
    signature: Optional[str],
    providers: Optional[ProviderClients] = None
) -> Dict[str, Any]:
    verify_paystack_signature(payload, signature, settings.PAYSTACK_SECRET_KEY)
    event = _decode_paystack_payload(payload)
    providers = providers or get_provider_clients()

    def process():
        result = handle_platform_paystack_event(db, event, providers)
        return result, result.get("tenant_id"), None, []

    return _run_ledgered(
        db, "PAYSTACK_PLATFORM", paystack_external_event_id(event, payload), event.get("event"), payload, process
    )
