"""Donation model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Numeric, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class Donation(Base):
    """A gift. PENDING at checkout, COMPLETED once by the first success webhook,
    REFUNDED once refunds cover the full amount."""
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True, index=True)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    fund_id = Column(Integer, ForeignKey("funds.id", ondelete="SET NULL"), nullable=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True)
    fundraiser_page_id = Column(Integer, ForeignKey("fundraiser_pages.id", ondelete="SET NULL"), nullable=True)
    pledge_id = Column(Integer, ForeignKey("pledges.id", ondelete="SET NULL"), nullable=True)
    recurring_donation_id = Column(Integer, ForeignKey("recurring_donations.id", ondelete="SET NULL"), nullable=True, index=True)
    payment_intent_id = Column(Integer, ForeignKey("payment_intents.id", ondelete="SET NULL"), nullable=True, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), default="PENDING", nullable=False)  # 'PENDING', 'COMPLETED', 'FAILED', 'REFUNDED'
    provider = Column(String(20), nullable=False)  # 'STRIPE', 'PAYSTACK', 'MANUAL'
    provider_ref = Column(String(255), nullable=True)
    is_anonymous = Column(Boolean, default=False, nullable=False)
    donor_name = Column(String(255), nullable=True)
    donor_email = Column(String(255), nullable=True)
    donor_phone = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    refunds = relationship("Refund", back_populates="donation")
    receipt = relationship("DonationReceipt", back_populates="donation", uselist=False)

    __table_args__ = (
        Index("ix_donations_provider_ref", "provider", "provider_ref"),
    )
