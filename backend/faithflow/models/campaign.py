"""Campaign model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric
from datetime import datetime, timezone
from faithflow.models.base import Base


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    fund_id = Column(Integer, ForeignKey("funds.id", ondelete="SET NULL"), nullable=True)
    name = Column(String(255), nullable=False)
    target_amount = Column(Numeric(12, 2), nullable=True)
    status = Column(String(20), default="ACTIVE", nullable=False)  # 'ACTIVE', 'CLOSED'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
