"""Refund tracking and refund creation"""
import logging
import time
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Session

from faithflow.core.errors import (
    BadRequestError, BillingError, ForbiddenError, GatewayError, NotFoundError, PreconditionFailedError,
)
from faithflow.core.logging import payments_logger
from faithflow.core.metrics import refunds_counter
from faithflow.models.church import Church
from faithflow.models.donation import Donation
from faithflow.models.payment_intent import PaymentIntent
from faithflow.models.refund import Refund
from faithflow.services.audit_service import record_audit_log
from faithflow.services.provider_events import RefundUpdated
from faithflow.services.providers import ProviderClients, get_provider_clients
from faithflow.services.stripe_service import get_stripe_value, stripe_id
from faithflow.utils.currency import from_minor_units, to_decimal, to_minor_units

logger = logging.getLogger(__name__)

# Refunds with these raw statuses do not count toward the refunded total
NON_COUNTING_REFUND_STATUSES = {"failed", "canceled", "cancelled"}

STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


# ============================================================================
# UPSERT & AGGREGATION
# ============================================================================

def upsert_refund(
    db: Session,
    provider: str,
    provider_ref: str,
    donation: Donation,
    amount: Decimal,
    currency: str,
    status: str,
    reason: Optional[str] = None
) -> Refund:
    """Insert or update the refund keyed by (provider, provider_ref), then refresh the donation"""
    refund = db.query(Refund).filter(
        Refund.provider == provider,
        Refund.provider_ref == provider_ref
    ).first()
    if refund is None:
        refund = Refund(provider=provider, provider_ref=provider_ref)
        db.add(refund)

    refund.donation_id = donation.id
    refund.church_id = donation.church_id
    refund.amount = amount
    refund.currency = currency.upper()
    refund.status = status
    if reason:
        refund.reason = reason
    db.flush()

    refresh_donation_refund_status(db, donation)
    return refund


def refunded_total(db: Session, donation_id: int) -> Decimal:
    total = Decimal("0")
    for refund in db.query(Refund).filter(Refund.donation_id == donation_id).all():
        if (refund.status or "").lower() in NON_COUNTING_REFUND_STATUSES:
            continue
        total += to_decimal(refund.amount or 0)
    return total


def refresh_donation_refund_status(db: Session, donation: Donation) -> bool:
    """Mark the donation REFUNDED once refunds cover its amount. Never reverts."""
    if donation.status == "REFUNDED":
        return False
    if refunded_total(db, donation.id) >= to_decimal(donation.amount):
        logger.info(f"Donation {donation.id} fully refunded")
        donation.status = "REFUNDED"
        db.flush()
        return True
    return False


# ============================================================================
# DONATION LOOKUP
# ============================================================================

def _donation_for_intent_ref(db: Session, provider: str, provider_ref: str) -> Optional[Donation]:
    intent = db.query(PaymentIntent).filter(
        PaymentIntent.provider == provider,
        PaymentIntent.provider_ref == provider_ref
    ).first()
    if intent:
        donation = db.query(Donation).filter(Donation.payment_intent_id == intent.id).first()
        if donation:
            return donation
    return db.query(Donation).filter(
        Donation.provider == provider,
        Donation.provider_ref == provider_ref
    ).first()


def find_donation_by_stripe_reference(
    db: Session,
    payment_intent_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    checkout_ref: Optional[str] = None
) -> Optional[Donation]:
    """Resolve a donation from Stripe ids: payment intent, then charge, then checkout session"""
    if payment_intent_id:
        donation = _donation_for_intent_ref(db, "STRIPE", payment_intent_id)
        if donation:
            return donation
    if charge_id:
        donation = db.query(Donation).filter(
            Donation.provider == "STRIPE",
            Donation.provider_ref == charge_id
        ).first()
        if donation:
            return donation
    if checkout_ref:
        return _donation_for_intent_ref(db, "STRIPE", checkout_ref)
    return None


def find_donation_by_paystack_reference(db: Session, reference: Optional[str]) -> Optional[Donation]:
    if not reference:
        return None
    return _donation_for_intent_ref(db, "PAYSTACK", reference)


def resolve_stripe_payment_intent_id(db: Session, donation: Donation, gateway) -> Optional[str]:
    """The Stripe pi_ id behind a donation; cs_ session ids are expanded through the API"""
    candidates = []
    if donation.payment_intent_id:
        intent = db.get(PaymentIntent, donation.payment_intent_id)
        if intent and intent.provider_ref:
            candidates.append(intent.provider_ref)
    if donation.provider_ref:
        candidates.append(donation.provider_ref)

    for ref in candidates:
        if ref.startswith("pi_"):
            return ref
        if ref.startswith("cs_"):
            session = gateway.retrieve_checkout_session(ref)
            return stripe_id(get_stripe_value(session, "payment_intent"))
    return None


# ============================================================================
# WEBHOOK UPDATES
# ============================================================================

def apply_refund_update(db: Session, provider: str, update: RefundUpdated) -> Optional[Refund]:
    """Upsert a provider-reported refund. Returns None when no donation matches."""
    if provider == "STRIPE":
        donation = find_donation_by_stripe_reference(db, update.payment_ref, update.charge_ref)
    else:
        donation = find_donation_by_paystack_reference(db, update.payment_ref)

    if donation is None:
        logger.warning(f"No donation found for {provider} refund {update.provider_ref}")
        return None
    if update.amount is None:
        logger.warning(f"{provider} refund {update.provider_ref} has no amount, skipping")
        return None

    refund = upsert_refund(
        db,
        provider=provider,
        provider_ref=update.provider_ref,
        donation=donation,
        amount=update.amount,
        currency=update.currency or donation.currency,
        status=update.status,
        reason=update.reason,
    )
    church = db.get(Church, donation.church_id)
    record_audit_log(
        db,
        action="refund.updated",
        target_type="Refund",
        target_id=refund.id,
        tenant_id=church.tenant_id if church else None,
        church_id=donation.church_id,
        actor_type="WEBHOOK",
        details={"provider": provider, "status": refund.status},
    )
    return refund


# ============================================================================
# REFUND CREATION
# ============================================================================

def create_refund_for_donation(
    db: Session,
    donation_id: int,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
    tenant_id: Optional[int] = None,
    actor_id: Optional[str] = None,
    providers: Optional[ProviderClients] = None
) -> Refund:
    """Refund a completed donation (fully, or partially when amount is given).

    Raises:
        NotFoundError: Unknown donation
        ForbiddenError: Donation belongs to another tenant
        PreconditionFailedError: Donation is not COMPLETED/REFUNDED
        GatewayError: The provider rejected the refund
    """
    providers = providers or get_provider_clients()
    donation = db.get(Donation, donation_id)
    if not donation:
        raise NotFoundError("Donation not found")
    church = db.get(Church, donation.church_id)
    if tenant_id is not None and (church is None or church.tenant_id != tenant_id):
        raise ForbiddenError("Donation not found")
    if donation.status not in ("COMPLETED", "REFUNDED"):
        raise PreconditionFailedError("Donation is not refundable")

    provider = donation.provider
    try:
        if provider == "MANUAL":
            refund = upsert_refund(
                db,
                provider="MANUAL",
                provider_ref=f"manual-{int(time.time() * 1000)}",
                donation=donation,
                amount=to_decimal(amount) if amount is not None else to_decimal(donation.amount),
                currency=donation.currency,
                status="succeeded",
                reason=reason,
            )
        elif provider == "STRIPE":
            gateway = providers.stripe()
            payment_intent_id = resolve_stripe_payment_intent_id(db, donation, gateway)
            if not payment_intent_id:
                raise BadRequestError("Stripe payment intent not found")

            params = {"payment_intent": payment_intent_id}
            if amount is not None:
                params["amount"] = to_minor_units(amount, donation.currency)
            if reason in STRIPE_REFUND_REASONS:
                params["reason"] = reason
            elif reason:
                params["metadata"] = {"note": reason}
            stripe_refund = gateway.create_refund(**params)

            currency = get_stripe_value(stripe_refund, "currency", donation.currency)
            refund = upsert_refund(
                db,
                provider="STRIPE",
                provider_ref=get_stripe_value(stripe_refund, "id"),
                donation=donation,
                amount=from_minor_units(get_stripe_value(stripe_refund, "amount", 0), currency),
                currency=currency,
                status=get_stripe_value(stripe_refund, "status", "unknown"),
                reason=get_stripe_value(stripe_refund, "reason") or reason,
            )
        elif provider == "PAYSTACK":
            client = providers.paystack()
            data = client.create_refund(
                transaction=donation.provider_ref,
                amount=to_minor_units(amount, donation.currency) if amount is not None else None,
                reason=reason,
            )
            if data.get("id") is None:
                raise GatewayError("Paystack refund response missing id")
            currency = data.get("currency") or donation.currency
            refunded = data.get("amount")
            refund = upsert_refund(
                db,
                provider="PAYSTACK",
                provider_ref=str(data["id"]),
                donation=donation,
                amount=(
                    from_minor_units(refunded, currency) if refunded is not None
                    else to_decimal(amount if amount is not None else donation.amount)
                ),
                currency=currency,
                status=data.get("status") or "pending",
                reason=reason,
            )
        else:
            raise BadRequestError("Unsupported provider")
    except BillingError:
        refunds_counter.labels(provider=provider, status="failed").inc()
        raise

    record_audit_log(
        db,
        action="refund.created",
        target_type="Refund",
        target_id=refund.id,
        tenant_id=church.tenant_id if church else None,
        church_id=donation.church_id,
        actor_type="USER",
        actor_id=actor_id,
        details={"provider": refund.provider, "amount": str(refund.amount), "currency": refund.currency},
    )
    refresh_donation_refund_status(db, donation)
    db.commit()
    db.refresh(refund)

    refunds_counter.labels(provider=provider, status="created").inc()
    payments_logger.info(f"Created {provider} refund {refund.provider_ref} for donation {donation.id}")
    return refund
