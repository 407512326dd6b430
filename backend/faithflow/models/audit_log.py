"""AuditLog model"""
from sqlalchemy import Column, Integer, String, JSON, DateTime, Index
from datetime import datetime, timezone
from faithflow.models.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    church_id = Column(Integer, nullable=True, index=True)
    actor_type = Column(String(20), default="SYSTEM", nullable=False)  # 'SYSTEM', 'USER', 'WEBHOOK'
    actor_id = Column(String(255), nullable=True)
    action = Column(String(100), nullable=False, index=True)  # 'donation.completed', 'dispute.alert.one_day'...
    target_type = Column(String(50), nullable=False)
    target_id = Column(String(255), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_target_action", "target_type", "target_id", "action"),
    )
