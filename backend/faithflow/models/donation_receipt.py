"""DonationReceipt model"""
from sqlalchemy import Column, Integer, String, JSON, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class DonationReceipt(Base):
    __tablename__ = "donation_receipts"

    id = Column(Integer, primary_key=True, index=True)
    donation_id = Column(Integer, ForeignKey("donations.id", ondelete="CASCADE"), unique=True, nullable=False)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    receipt_number = Column(String(32), unique=True, nullable=False, index=True)  # FF-YYYYMMDD-XXXX
    status = Column(String(20), default="ISSUED", nullable=False)  # 'ISSUED', 'VOIDED'
    snapshot = Column(JSON, nullable=True)  # donation fields at issue time
    issued_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    donation = relationship("Donation", back_populates="receipt")
