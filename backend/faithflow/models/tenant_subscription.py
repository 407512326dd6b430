"""TenantSubscription model"""
from sqlalchemy import Column, Integer, String, Boolean, JSON, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class TenantSubscription(Base):
    """Platform subscription of a tenant.

    At most one row per tenant is in the active set
    (TRIALING, ACTIVE, PAST_DUE, PAUSED) at any time.
    """
    __tablename__ = "tenant_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"), nullable=False)
    status = Column(String(20), nullable=False)  # 'TRIALING', 'ACTIVE', 'PAST_DUE', 'PAUSED', 'CANCELED', 'EXPIRED'
    provider = Column(String(20), nullable=False)  # 'STRIPE', 'PAYSTACK', 'MANUAL'
    provider_ref = Column(String(255), nullable=True)
    provider_customer_id = Column(String(255), nullable=True)  # Stripe cus_ / Paystack customer code
    provider_price_id = Column(String(255), nullable=True)  # Stripe price / Paystack plan code
    provider_subscription_id = Column(String(255), nullable=True)  # Stripe sub_ / Paystack subscription code
    provider_email_token = Column(String(255), nullable=True)  # Paystack, required to disable a subscription
    starts_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    seat_count = Column(Integer, nullable=True)
    extra = Column(JSON, nullable=True)  # raw provider payload fragments, audit/debug only
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    tenant = relationship("Tenant", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan")

    __table_args__ = (
        UniqueConstraint("provider", "provider_ref", name="uq_tenant_subscriptions_provider_ref"),
        Index("ix_tenant_subscriptions_tenant_status", "tenant_id", "status"),
    )
