"""Donation receipts"""
import logging
import secrets
import string
from sqlalchemy.orm import Session

from faithflow.models.donation import Donation
from faithflow.models.donation_receipt import DonationReceipt
from faithflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

_RECEIPT_ALPHABET = string.ascii_uppercase + string.digits


def generate_receipt_number() -> str:
    stamp = utcnow().strftime("%Y%m%d")
    nonce = "".join(secrets.choice(_RECEIPT_ALPHABET) for _ in range(6))
    return f"FF-{stamp}-{nonce}"


def ensure_donation_receipt(db: Session, donation: Donation) -> DonationReceipt:
    """Return the donation's receipt, issuing it on first call"""
    existing = db.query(DonationReceipt).filter(DonationReceipt.donation_id == donation.id).first()
    if existing:
        return existing

    receipt = DonationReceipt(
        donation_id=donation.id,
        church_id=donation.church_id,
        receipt_number=generate_receipt_number(),
        status="ISSUED",
        snapshot={
            "amount": str(donation.amount),
            "currency": donation.currency,
            "donor_name": donation.donor_name,
            "donor_email": donation.donor_email,
            "donor_phone": donation.donor_phone,
            "provider": donation.provider,
            "provider_ref": donation.provider_ref,
            "pledge_id": donation.pledge_id,
            "recurring_donation_id": donation.recurring_donation_id,
            "is_anonymous": donation.is_anonymous,
        },
    )
    db.add(receipt)
    db.flush()
    logger.info(f"Issued receipt {receipt.receipt_number} for donation {donation.id}")
    return receipt
