"""WebhookEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, UniqueConstraint
from datetime import datetime, timezone
from faithflow.models.base import Base


class WebhookEvent(Base):
    """Webhook idempotency ledger, one row per (provider, external_event_id)"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(40), nullable=False)  # 'STRIPE', 'PAYSTACK', 'STRIPE_PLATFORM', 'PAYSTACK_PLATFORM'
    external_event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)
    payload_hash = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False)  # 'PROCESSING', 'PROCESSED', 'FAILED'
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    tenant_id = Column(Integer, nullable=True, index=True)
    church_id = Column(Integer, nullable=True, index=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "external_event_id", name="uq_webhook_events_provider_event"),
    )
