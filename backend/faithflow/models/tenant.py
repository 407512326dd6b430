"""Tenant model"""
from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class Tenant(Base):
    """A billing customer of the platform (one or more churches)"""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(String(20), default="ACTIVE", nullable=False, index=True)  # 'ACTIVE', 'SUSPENDED'
    suspended_at = Column(DateTime(timezone=True), nullable=True)
    suspension_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    churches = relationship("Church", back_populates="tenant")
    subscriptions = relationship("TenantSubscription", back_populates="tenant")
