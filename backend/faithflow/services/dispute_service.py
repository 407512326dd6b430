"""Dispute tracking"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Session

from faithflow.models.church import Church
from faithflow.models.dispute import Dispute
from faithflow.services.audit_service import record_audit_log
from faithflow.services.provider_events import DisputeUpdated
from faithflow.services.refund_service import find_donation_by_paystack_reference, find_donation_by_stripe_reference

logger = logging.getLogger(__name__)

# A dispute whose status contains any of these is no longer actionable
CLOSED_DISPUTE_FRAGMENTS = ("won", "lost", "closed", "resolved", "charge_refunded", "refunded")


def is_dispute_closed(status: Optional[str]) -> bool:
    value = (status or "").lower()
    return any(fragment in value for fragment in CLOSED_DISPUTE_FRAGMENTS)


def upsert_dispute(
    db: Session,
    provider: str,
    provider_ref: str,
    church_id: int,
    status: str,
    donation_id: Optional[int] = None,
    amount: Optional[Decimal] = None,
    currency: Optional[str] = None,
    reason: Optional[str] = None,
    evidence_due_by: Optional[datetime] = None
) -> Dispute:
    """Insert or update the dispute keyed by (provider, provider_ref).

    Optional fields that are None leave the stored value unchanged.
    """
    dispute = db.query(Dispute).filter(
        Dispute.provider == provider,
        Dispute.provider_ref == provider_ref
    ).first()
    if dispute is None:
        dispute = Dispute(provider=provider, provider_ref=provider_ref)
        db.add(dispute)

    dispute.church_id = church_id
    dispute.status = status
    if donation_id is not None:
        dispute.donation_id = donation_id
    if amount is not None:
        dispute.amount = amount
    if currency:
        dispute.currency = currency.upper()
    if reason:
        dispute.reason = reason
    if evidence_due_by is not None:
        dispute.evidence_due_by = evidence_due_by
    db.flush()
    return dispute


def apply_dispute_update(db: Session, provider: str, update: DisputeUpdated) -> Optional[Dispute]:
    """Upsert a provider-reported dispute. Disputes without a resolvable church are skipped."""
    if provider == "STRIPE":
        donation = find_donation_by_stripe_reference(db, update.payment_ref, update.charge_ref)
    else:
        donation = find_donation_by_paystack_reference(db, update.payment_ref)

    if donation is None:
        logger.warning(f"No donation found for {provider} dispute {update.provider_ref}")
        return None

    dispute = upsert_dispute(
        db,
        provider=provider,
        provider_ref=update.provider_ref,
        church_id=donation.church_id,
        status=update.status,
        donation_id=donation.id,
        amount=update.amount,
        currency=update.currency,
        reason=update.reason,
        evidence_due_by=update.evidence_due_by,
    )
    church = db.get(Church, donation.church_id)
    record_audit_log(
        db,
        action="dispute.updated",
        target_type="Dispute",
        target_id=dispute.id,
        tenant_id=church.tenant_id if church else None,
        church_id=donation.church_id,
        actor_type="WEBHOOK",
        details={"provider": provider, "status": dispute.status},
    )
    logger.info(f"{provider} dispute {dispute.provider_ref} is now {dispute.status}")
    return dispute
