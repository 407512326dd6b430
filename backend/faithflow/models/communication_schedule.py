"""CommunicationSchedule model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, ForeignKey, Index
from datetime import datetime, timezone
from faithflow.models.base import Base


class CommunicationSchedule(Base):
    """Outbound message queue drained by the communication dispatcher"""
    __tablename__ = "communication_schedules"

    id = Column(Integer, primary_key=True, index=True)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    channel = Column(String(20), default="EMAIL", nullable=False)
    provider = Column(String(20), default="RESEND", nullable=False)
    to = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    send_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    status = Column(String(20), default="QUEUED", nullable=False)  # 'QUEUED', 'SENT', 'FAILED', 'CANCELED'
    dedupe_key = Column(String(255), nullable=True)
    extra = Column(JSON, nullable=True)  # reason, related ids
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index("ix_communication_schedules_dedupe", "dedupe_key", "status"),
        Index("ix_communication_schedules_due", "status", "send_at"),
    )
