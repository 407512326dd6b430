"""EventTicketOrder model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Index
from datetime import datetime, timezone
from faithflow.models.base import Base


class EventTicketOrder(Base):
    """Ticket purchase; PENDING orders count as reserved seats"""
    __tablename__ = "event_ticket_orders"

    id = Column(Integer, primary_key=True, index=True)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_type_id = Column(Integer, ForeignKey("event_ticket_types.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    purchaser_name = Column(String(255), nullable=True)
    purchaser_email = Column(String(255), nullable=True)
    purchaser_phone = Column(String(50), nullable=True)
    quantity = Column(Integer, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    provider = Column(String(20), nullable=False)  # 'STRIPE', 'PAYSTACK'
    provider_ref = Column(String(255), nullable=True)
    status = Column(String(20), default="PENDING", nullable=False)  # 'PENDING', 'PAID', 'CANCELED'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index("ix_event_ticket_orders_event_status", "event_id", "status"),
    )
