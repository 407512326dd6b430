"""Church model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class Church(Base):
    """A church belonging to a tenant; owner of all giving records"""
    __tablename__ = "churches"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    country_code = Column(String(2), nullable=True)  # ISO 3166-1 alpha-2, drives Paystack currency rules
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    tenant = relationship("Tenant", back_populates="churches")
    staff = relationship("StaffMembership", back_populates="church", cascade="all, delete-orphan")
