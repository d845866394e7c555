import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    # homeowner, provider, admin
    role = Column(String(20), default="homeowner", nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class ServiceRequest(Base):
    """A unit of work posted by a homeowner and carried out by an assigned provider"""

    __tablename__ = "service_requests"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )

    homeowner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    property_address = Column(String(500), nullable=True)

    # Original booking window; its length is reused as the duration of each occurrence
    scheduled_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)

    # pending, scheduled, in_progress, completed, cancelled
    status = Column(String(50), default="pending", nullable=False, index=True)
    budget = Column(Float, nullable=True)
    is_recurring = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    homeowner = relationship("User", foreign_keys=[homeowner_id])
    provider = relationship("User", foreign_keys=[provider_id])
    recurrence_patterns = relationship("RecurrencePattern", back_populates="service_request")
