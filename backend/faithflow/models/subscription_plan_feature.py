"""SubscriptionPlanFeature model"""
from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from faithflow.models.base import Base


class SubscriptionPlanFeature(Base):
    __tablename__ = "subscription_plan_features"

    id = Column(Integer, primary_key=True, index=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    key = Column(String(100), nullable=False, index=True)  # 'max_members', 'streaming_enabled', ...
    enabled = Column(Boolean, default=True, nullable=False)
    limit = Column(Integer, nullable=True)  # None = unlimited

    plan = relationship("SubscriptionPlan", back_populates="features")

    __table_args__ = (
        UniqueConstraint("plan_id", "key", name="uq_subscription_plan_features_plan_key"),
    )
