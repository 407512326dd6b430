"""SubscriptionPlan model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class SubscriptionPlan(Base):
    """Platform plan sold to tenants"""
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)  # 'starter', 'growth', 'enterprise'
    name = Column(String(255), nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    monthly_price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), default="USD", nullable=False)
    stripe_price_id = Column(String(255), nullable=True, index=True)
    paystack_plan_code = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    features = relationship(
        "SubscriptionPlanFeature",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="SubscriptionPlanFeature.key"
    )
