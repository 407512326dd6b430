"""Payment reconciliation.

Applies normalized provider events to payment intents, donations, ticket
orders and recurring donations. Handlers only flush; the webhook pipeline
commits them together with the ledger row. Every handler is safe to run twice
for the same event: state is checked before side effects fire.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session

from faithflow.core.logging import payments_logger
from faithflow.models.church import Church
from faithflow.models.donation import Donation
from faithflow.models.event import Event
from faithflow.models.event_rsvp import EventRsvp
from faithflow.models.event_ticket_order import EventTicketOrder
from faithflow.models.payment_intent import PaymentIntent
from faithflow.models.recurring_donation import RecurringDonation
from faithflow.services.audit_service import record_audit_log
from faithflow.services.dispute_service import apply_dispute_update
from faithflow.services.provider_events import (
    CheckoutCompleted, DisputeUpdated, Ignored, InvoicePaid, PaymentFailed, PaymentSucceeded,
    ProviderEvent, RecurringChargeSucceeded, RefundUpdated, SubscriptionActivated,
    SubscriptionCanceled, SubscriptionPaymentFailed,
)
from faithflow.services.providers import ProviderClients
from faithflow.services.realtime_service import RealtimeEvent
from faithflow.services.receipt_service import ensure_donation_receipt
from faithflow.services.refund_service import apply_refund_update
from faithflow.utils.dates import next_recurring_charge_at, utcnow

logger = logging.getLogger(__name__)

SETTLED_DONATION_STATUSES = ("COMPLETED", "REFUNDED")


@dataclass
class ReconciliationContext:
    """Per-delivery state shared by the handlers of one webhook"""
    db: Session
    provider: str
    providers: Optional[ProviderClients] = None
    realtime_events: List[RealtimeEvent] = field(default_factory=list)
    church_id: Optional[int] = None
    tenant_id: Optional[int] = None

    def touch_church(self, church_id: Optional[int]) -> None:
        """Remember the church (and tenant) this delivery affected, for the ledger row"""
        if church_id is None or self.church_id is not None:
            return
        self.church_id = church_id
        church = self.db.get(Church, church_id)
        if church is not None:
            self.tenant_id = church.tenant_id


# ============================================================================
# LOOKUPS
# ============================================================================

def find_payment_intent(
    db: Session,
    provider: str,
    intent_reference: Optional[str],
    provider_ref: Optional[str] = None
) -> Optional[PaymentIntent]:
    """Local reference first, then local id, then the provider's reference"""
    if intent_reference:
        intent = db.query(PaymentIntent).filter(PaymentIntent.reference == intent_reference).first()
        if intent:
            return intent
        if intent_reference.isdigit():
            intent = db.get(PaymentIntent, int(intent_reference))
            if intent:
                return intent
    for ref in (provider_ref, intent_reference):
        if not ref:
            continue
        intent = db.query(PaymentIntent).filter(
            PaymentIntent.provider == provider,
            PaymentIntent.provider_ref == ref
        ).first()
        if intent:
            return intent
    return None


def find_recurring_donation(
    db: Session,
    provider: str,
    recurring_reference: Optional[str] = None,
    subscription_ref: Optional[str] = None,
    plan_ref: Optional[str] = None
) -> Optional[RecurringDonation]:
    if recurring_reference:
        recurring = db.query(RecurringDonation).filter(RecurringDonation.reference == recurring_reference).first()
        if recurring is None and recurring_reference.isdigit():
            recurring = db.get(RecurringDonation, int(recurring_reference))
        if recurring:
            return recurring
    if subscription_ref:
        recurring = db.query(RecurringDonation).filter(
            RecurringDonation.provider == provider,
            or_(
                RecurringDonation.provider_ref == subscription_ref,
                RecurringDonation.provider_subscription_code == subscription_ref
            )
        ).first()
        if recurring:
            return recurring
    if plan_ref:
        return db.query(RecurringDonation).filter(
            RecurringDonation.provider == provider,
            or_(
                RecurringDonation.provider_ref == plan_ref,
                RecurringDonation.provider_plan_code == plan_ref
            )
        ).first()
    return None


def _recurring_for_subscription(db: Session, provider: str, subscription_ref: Optional[str], plan_ref: Optional[str]) -> List[RecurringDonation]:
    if subscription_ref:
        clause = or_(
            RecurringDonation.provider_ref == subscription_ref,
            RecurringDonation.provider_subscription_code == subscription_ref
        )
    elif plan_ref:
        clause = or_(
            RecurringDonation.provider_ref == plan_ref,
            RecurringDonation.provider_plan_code == plan_ref
        )
    else:
        return []
    return db.query(RecurringDonation).filter(RecurringDonation.provider == provider, clause).all()


# ============================================================================
# SIDE EFFECTS
# ============================================================================

def _donation_realtime_event(donation: Donation, tenant_id: Optional[int]) -> RealtimeEvent:
    return RealtimeEvent(
        type="donation.created",
        church_id=donation.church_id,
        data={
            "id": donation.id,
            "church_id": donation.church_id,
            "tenant_id": tenant_id,
            "amount": str(donation.amount),
            "currency": donation.currency,
            "status": donation.status,
            "provider": donation.provider,
        },
    )


def _on_donation_completed(ctx: ReconciliationContext, donation: Donation, details: Optional[Dict[str, Any]] = None) -> None:
    """Receipt, realtime event and audit row for a donation's first completion"""
    ctx.db.flush()
    ensure_donation_receipt(ctx.db, donation)
    church = ctx.db.get(Church, donation.church_id)
    tenant_id = church.tenant_id if church else None
    ctx.realtime_events.append(_donation_realtime_event(donation, tenant_id))
    record_audit_log(
        ctx.db,
        action="donation.completed",
        target_type="Donation",
        target_id=donation.id,
        tenant_id=tenant_id,
        church_id=donation.church_id,
        actor_type="WEBHOOK",
        details={
            "amount": str(donation.amount),
            "currency": donation.currency,
            "provider": donation.provider,
            **(details or {}),
        },
    )


# ============================================================================
# ONE-TIME PAYMENTS
# ============================================================================

def mark_payment_succeeded(
    ctx: ReconciliationContext,
    intent_reference: Optional[str],
    provider_ref: Optional[str] = None,
    payment_ref: Optional[str] = None,
    is_anonymous: Optional[bool] = None
) -> Optional[PaymentIntent]:
    """Settle an intent and everything hanging off it.

    Args:
        ctx: Reconciliation context
        intent_reference: Local intent reference (or id) from metadata
        provider_ref: Provider reference used as the lookup fallback
        payment_ref: Provider reference to store (defaults to provider_ref)
        is_anonymous: Anonymity flag from metadata, when present

    Returns:
        The intent, or None when it cannot be resolved
    """
    db = ctx.db
    intent = find_payment_intent(db, ctx.provider, intent_reference, provider_ref)
    if intent is None:
        logger.warning(f"No payment intent for {ctx.provider} reference {intent_reference or provider_ref}")
        return None

    new_ref = payment_ref or provider_ref
    if intent.status != "SUCCEEDED":
        intent.status = "SUCCEEDED"
        if new_ref:
            intent.provider_ref = new_ref
    ctx.touch_church(intent.church_id)

    donation = db.query(Donation).filter(Donation.payment_intent_id == intent.id).first()
    if donation is not None:
        was_settled = donation.status in SETTLED_DONATION_STATUSES
        if not was_settled:
            donation.status = "COMPLETED"
        if new_ref:
            donation.provider_ref = new_ref
        donation.is_anonymous = is_anonymous if is_anonymous is not None else bool(intent.is_anonymous)
        if not was_settled:
            _on_donation_completed(ctx, donation)
            payments_logger.info(f"Donation {donation.id} completed via {ctx.provider}")

    if intent.ticket_order_id:
        order = db.get(EventTicketOrder, intent.ticket_order_id)
        if order is not None and order.status != "PAID":
            order.status = "PAID"
            order.provider_ref = new_ref or order.provider_ref or intent.provider_ref
            _confirm_ticket_rsvp(db, order)
            logger.info(f"Ticket order {order.id} paid")

    db.flush()
    return intent


def _confirm_ticket_rsvp(db: Session, order: EventTicketOrder) -> None:
    if not order.member_id:
        return
    event = db.get(Event, order.event_id)
    if event is None or not event.requires_rsvp:
        return

    guest_count = max((order.quantity or 1) - 1, 0)
    rsvp = db.query(EventRsvp).filter(
        EventRsvp.event_id == event.id,
        EventRsvp.member_id == order.member_id
    ).first()
    if rsvp is None:
        rsvp = EventRsvp(event_id=event.id, member_id=order.member_id)
        db.add(rsvp)
    rsvp.status = "GOING"
    rsvp.guest_count = guest_count


def mark_payment_failed(
    ctx: ReconciliationContext,
    intent_reference: Optional[str],
    provider_ref: Optional[str] = None
) -> Optional[PaymentIntent]:
    """Fail an intent and cascade to its donation and ticket order.

    FAILED intents are left alone, and SUCCEEDED ones are never downgraded.
    """
    db = ctx.db
    intent = find_payment_intent(db, ctx.provider, intent_reference, provider_ref)
    if intent is None or intent.status in ("FAILED", "SUCCEEDED"):
        return None

    intent.status = "FAILED"
    ctx.touch_church(intent.church_id)

    for donation in db.query(Donation).filter(Donation.payment_intent_id == intent.id).all():
        if donation.status not in SETTLED_DONATION_STATUSES:
            donation.status = "FAILED"
    if intent.ticket_order_id:
        order = db.get(EventTicketOrder, intent.ticket_order_id)
        if order is not None and order.status == "PENDING":
            order.status = "CANCELED"

    record_audit_log(
        db,
        action="payment.failed",
        target_type="PaymentIntent",
        target_id=intent.id,
        tenant_id=ctx.tenant_id,
        church_id=intent.church_id,
        actor_type="WEBHOOK",
        details={"provider": intent.provider, "amount": str(intent.amount), "currency": intent.currency},
    )
    logger.info(f"Payment intent {intent.id} failed via {ctx.provider}")
    return intent


# ============================================================================
# RECURRING
# ============================================================================

def record_recurring_charge(
    ctx: ReconciliationContext,
    recurring: RecurringDonation,
    charge_ref: str,
    amount,
    currency: str,
    charged_at: Optional[datetime],
    next_charge_at: Optional[datetime],
    donor_email: Optional[str] = None,
    is_anonymous: Optional[bool] = None
) -> Optional[Donation]:
    """Create the donation for one recurring charge (at most once per charge_ref).

    Always moves last/next charge dates to values derived from the charge, so
    replays land on the same dates. Returns the new donation, or None when the
    charge was already recorded.
    """
    db = ctx.db
    ctx.touch_church(recurring.church_id)
    charged_at = charged_at or utcnow()

    donation = None
    existing = db.query(Donation.id).filter(
        Donation.provider == ctx.provider,
        Donation.provider_ref == charge_ref
    ).first()
    if existing is None:
        donation = Donation(
            church_id=recurring.church_id,
            member_id=recurring.member_id,
            fund_id=recurring.fund_id,
            campaign_id=recurring.campaign_id,
            recurring_donation_id=recurring.id,
            amount=amount if amount is not None else recurring.amount,
            currency=(currency or recurring.currency).upper(),
            status="COMPLETED",
            provider=ctx.provider,
            provider_ref=charge_ref,
            is_anonymous=is_anonymous if is_anonymous is not None else bool(recurring.is_anonymous),
            donor_name=recurring.donor_name,
            donor_email=donor_email or recurring.donor_email,
            donor_phone=recurring.donor_phone,
        )
        db.add(donation)
        _on_donation_completed(ctx, donation, {"recurring_donation_id": recurring.id})
        payments_logger.info(f"Recorded recurring charge {charge_ref} for recurring donation {recurring.id}")
    else:
        logger.info(f"Recurring charge {charge_ref} already recorded")

    recurring.last_charge_at = charged_at
    recurring.next_charge_at = next_charge_at or next_recurring_charge_at(charged_at, recurring.interval)
    db.flush()
    return donation


def _handle_checkout_completed(ctx: ReconciliationContext, event: CheckoutCompleted) -> str:
    if event.mode != "subscription" or event.intent_reference:
        mark_payment_succeeded(
            ctx,
            event.intent_reference,
            provider_ref=event.provider_ref,
            payment_ref=event.payment_ref or event.provider_ref,
            is_anonymous=event.is_anonymous,
        )

    if event.mode == "subscription" and event.subscription_ref:
        recurring = find_recurring_donation(ctx.db, ctx.provider, recurring_reference=event.recurring_reference)
        if recurring is None:
            logger.warning(f"No recurring donation for checkout {event.provider_ref}")
            return "recurring_not_found"
        ctx.touch_church(recurring.church_id)
        already_active = recurring.status == "ACTIVE" and recurring.provider_subscription_code == event.subscription_ref
        recurring.status = "ACTIVE"
        recurring.provider_ref = event.subscription_ref
        recurring.provider_subscription_code = event.subscription_ref
        if not already_active:
            recurring.next_charge_at = next_recurring_charge_at(utcnow(), recurring.interval)
        logger.info(f"Recurring donation {recurring.id} active on {event.subscription_ref}")
    return "processed"


def _handle_invoice_paid(ctx: ReconciliationContext, event: InvoicePaid) -> str:
    recurring = find_recurring_donation(ctx.db, ctx.provider, subscription_ref=event.subscription_ref)
    if recurring is None:
        return "recurring_not_found"
    if recurring.status == "PAUSED":
        recurring.status = "ACTIVE"
    record_recurring_charge(
        ctx,
        recurring,
        charge_ref=event.invoice_ref,
        amount=event.amount,
        currency=event.currency,
        charged_at=event.charged_at,
        next_charge_at=event.period_end,
        donor_email=event.customer_email,
    )
    return "processed"


def _handle_recurring_charge(ctx: ReconciliationContext, event: RecurringChargeSucceeded) -> str:
    recurring = find_recurring_donation(
        ctx.db,
        ctx.provider,
        recurring_reference=event.recurring_reference,
        subscription_ref=event.subscription_ref,
        plan_ref=event.plan_ref,
    )
    if recurring is None:
        return "recurring_not_found"

    if recurring.status != "CANCELED":
        recurring.status = "ACTIVE"
    if event.subscription_ref:
        recurring.provider_ref = event.subscription_ref
        recurring.provider_subscription_code = event.subscription_ref
    if event.plan_ref and not recurring.provider_plan_code:
        recurring.provider_plan_code = event.plan_ref

    record_recurring_charge(
        ctx,
        recurring,
        charge_ref=event.reference,
        amount=event.amount,
        currency=event.currency,
        charged_at=event.charged_at,
        next_charge_at=event.next_payment_at,
        donor_email=event.customer_email,
        is_anonymous=event.is_anonymous,
    )
    return "processed"


def _handle_subscription_activated(ctx: ReconciliationContext, event: SubscriptionActivated) -> str:
    recurring = find_recurring_donation(
        ctx.db,
        ctx.provider,
        recurring_reference=event.recurring_reference,
        subscription_ref=event.subscription_ref,
        plan_ref=event.plan_ref,
    )
    if recurring is None:
        return "recurring_not_found"
    ctx.touch_church(recurring.church_id)
    recurring.status = "ACTIVE"
    if event.subscription_ref:
        recurring.provider_ref = event.subscription_ref
        recurring.provider_subscription_code = event.subscription_ref
    if event.next_payment_at:
        recurring.next_charge_at = event.next_payment_at
    return "processed"


def _set_recurring_status(ctx: ReconciliationContext, subscription_ref: Optional[str], plan_ref: Optional[str], status: str) -> str:
    matches = _recurring_for_subscription(ctx.db, ctx.provider, subscription_ref, plan_ref)
    if not matches:
        return "recurring_not_found"
    for recurring in matches:
        ctx.touch_church(recurring.church_id)
        # A canceled gift only comes back through a new checkout
        if recurring.status == "CANCELED" and status != "CANCELED":
            continue
        recurring.status = status
    logger.info(f"Set {len(matches)} recurring donation(s) on {subscription_ref or plan_ref} to {status}")
    return "processed"


# ============================================================================
# DISPATCH
# ============================================================================

def apply_event(ctx: ReconciliationContext, event: ProviderEvent) -> str:
    """Apply one normalized event. Returns a short outcome label."""
    if isinstance(event, CheckoutCompleted):
        return _handle_checkout_completed(ctx, event)
    if isinstance(event, PaymentSucceeded):
        return "processed" if mark_payment_succeeded(ctx, event.intent_reference, event.provider_ref) else "intent_not_found"
    if isinstance(event, PaymentFailed):
        mark_payment_failed(ctx, event.intent_reference, event.provider_ref)
        return "processed"
    if isinstance(event, InvoicePaid):
        return _handle_invoice_paid(ctx, event)
    if isinstance(event, RecurringChargeSucceeded):
        return _handle_recurring_charge(ctx, event)
    if isinstance(event, SubscriptionActivated):
        return _handle_subscription_activated(ctx, event)
    if isinstance(event, SubscriptionPaymentFailed):
        return _set_recurring_status(ctx, event.subscription_ref, event.plan_ref, "PAUSED")
    if isinstance(event, SubscriptionCanceled):
        return _set_recurring_status(ctx, event.subscription_ref, event.plan_ref, "CANCELED")
    if isinstance(event, RefundUpdated):
        refund = apply_refund_update(ctx.db, ctx.provider, event)
        if refund is None:
            return "donation_not_found"
        ctx.touch_church(refund.church_id)
        return "processed"
    if isinstance(event, DisputeUpdated):
        dispute = apply_dispute_update(ctx.db, ctx.provider, event)
        if dispute is None:
            return "donation_not_found"
        ctx.touch_church(dispute.church_id)
        return "processed"
    if isinstance(event, Ignored):
        return "ignored"
    raise TypeError(f"Unhandled provider event {type(event).__name__}")
