"""StaffMembership model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from faithflow.models.base import Base


class StaffMembership(Base):
    """Staff role of a person at a church; recipients for billing and dispute notices"""
    __tablename__ = "staff_memberships"

    id = Column(Integer, primary_key=True, index=True)
    church_id = Column(Integer, ForeignKey("churches.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False)  # 'ADMIN', 'STAFF', 'VOLUNTEER'
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    church = relationship("Church", back_populates="staff")

    __table_args__ = (
        UniqueConstraint("church_id", "email", name="uq_staff_memberships_church_email"),
    )
