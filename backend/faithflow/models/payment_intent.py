"""PaymentIntent model"""
import uuid
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime, ForeignKey, Numeric, UniqueConstraint
from datetime import datetime, timezone
from faithflow.models.base import Base


def generate_payment_reference() -> str:
    return f"ffpi_{uuid.uuid4().hex}"


class PaymentIntent(Base):
    """One attempted charge.

    `reference` is the local correlation id handed to the gateway (Stripe
    client_reference_id / metadata, Paystack transaction reference) so webhooks
    can be matched back before `provider_ref` is known.
    """
    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), unique=True, nullable=False, index=True, default=generate_payment_reference)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(String(20), nullable=False)  # 'STRIPE', 'PAYSTACK'
    provider_ref = Column(String(255), nullable=False, index=True)  # 'pending-...' until the gateway answers
    status = Column(String(20), default="REQUIRES_ACTION", nullable=False)  # 'REQUIRES_ACTION', 'PROCESSING', 'SUCCEEDED', 'FAILED'
    checkout_url = Column(Text, nullable=True)

    # Correlation fields carried across the checkout round-trip
    fund_id = Column(Integer, ForeignKey("funds.id", ondelete="SET NULL"), nullable=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True)
    fundraiser_page_id = Column(Integer, ForeignKey("fundraiser_pages.id", ondelete="SET NULL"), nullable=True)
    ticket_order_id = Column(Integer, ForeignKey("event_ticket_orders.id", ondelete="SET NULL"), nullable=True, index=True)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    donor_name = Column(String(255), nullable=True)
    donor_email = Column(String(255), nullable=True)
    donor_phone = Column(String(50), nullable=True)
    extra = Column(JSON, nullable=True)  # audit/debug passthrough only

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_payment_intents_provider_ref"),
    )
