"""RecurringDonation model"""
import uuid
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Numeric
from datetime import datetime, timezone
from faithflow.models.base import Base


def generate_recurring_reference() -> str:
    return f"ffrd_{uuid.uuid4().hex}"


class RecurringDonation(Base):
    """Recurring gift. PAUSED until the provider confirms the first charge or
    subscription, then ACTIVE; PAUSED again on payment failure, CANCELED on
    provider-side cancellation."""
    __tablename__ = "recurring_donations"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(64), unique=True, nullable=False, index=True, default=generate_recurring_reference)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    fund_id = Column(Integer, ForeignKey("funds.id", ondelete="SET NULL"), nullable=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    interval = Column(String(20), nullable=False)  # 'WEEKLY', 'MONTHLY', 'QUARTERLY', 'YEARLY'
    status = Column(String(20), default="PAUSED", nullable=False)  # 'PAUSED', 'ACTIVE', 'CANCELED'
    provider = Column(String(20), nullable=False)  # 'STRIPE', 'PAYSTACK'
    provider_ref = Column(String(255), nullable=True, index=True)  # checkout session, then subscription id / plan code
    provider_plan_code = Column(String(255), nullable=True, index=True)
    provider_subscription_code = Column(String(255), nullable=True, index=True)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    donor_name = Column(String(255), nullable=True)
    donor_email = Column(String(255), nullable=True)
    donor_phone = Column(String(50), nullable=True)
    start_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    next_charge_at = Column(DateTime(timezone=True), nullable=True)
    last_charge_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
