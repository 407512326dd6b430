"""Event model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class Event(Base):
    """Church event; capacity covers every ticket type of the event"""
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    capacity = Column(Integer, nullable=True)  # None = unlimited
    requires_rsvp = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)

    church = relationship("Church")
    ticket_types = relationship("EventTicketType", back_populates="event")
