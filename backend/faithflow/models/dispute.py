"""Dispute model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, UniqueConstraint
from datetime import datetime, timezone
from faithflow.models.base import Base


class Dispute(Base):
    """Chargeback/dispute, upserted by (provider, provider_ref)"""
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, index=True)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=True, index=True)
    donation_id = Column(Integer, ForeignKey("donations.id", ondelete="SET NULL"), nullable=True, index=True)
    provider = Column(String(20), nullable=False)
    provider_ref = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)
    status = Column(String(50), nullable=False)  # provider's raw status: 'needs_response', 'won', 'lost'...
    reason = Column(String(255), nullable=True)
    evidence_due_by = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_disputes_provider_ref"),
    )
