"""
Recurring Schedule Models
Recurrence patterns, their exception dates, and the concrete schedule items they produce
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .models import generate_public_id


class RecurrencePattern(Base):
    """Recurrence rule attached to a service request"""

    __tablename__ = "recurrence_patterns"

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )
    service_request_id = Column(
        Integer, ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Canonical DTSTART/RRULE text produced by the rule codec
    rrule_pattern = Column(String(512), nullable=False)
    timezone = Column(String(64), nullable=False)

    # First occurrence not yet materialized (UTC). NULL once the rule is exhausted.
    next_run = Column(DateTime, nullable=True, index=True)

    # Optional overrides for generated item text; fall back to the service request
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    service_request = relationship("ServiceRequest", back_populates="recurrence_patterns")
    exceptions = relationship(
        "ScheduleException",
        back_populates="pattern",
        cascade="all, delete-orphan",
        order_by="ScheduleException.exception_date",
    )

    @property
    def state(self) -> str:
        return "active" if self.next_run is not None else "exhausted"


class ScheduleException(Base):
    """A calendar date skipped when expanding a pattern"""

    __tablename__ = "schedule_exceptions"
    __table_args__ = (
        UniqueConstraint(
            "recurrence_pattern_id", "exception_date", name="uq_schedule_exception_pattern_date"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    recurrence_pattern_id = Column(
        Integer, ForeignKey("recurrence_patterns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Day granularity, in the pattern's timezone
    exception_date = Column(Date, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    pattern = relationship("RecurrencePattern", back_populates="exceptions")


class ScheduleItem(Base):
    """One concrete occurrence on a user's schedule, generated or ad hoc"""

    __tablename__ = "schedule_items"
    __table_args__ = (
        # Idempotency key for materialization; ad hoc items (NULL pattern) never collide
        UniqueConstraint(
            "recurrence_pattern_id", "scheduled_start", name="uq_schedule_item_pattern_start"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    public_id = Column(
        String(36), unique=True, nullable=False, index=True, default=generate_public_id
    )

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    service_request_id = Column(
        Integer, ForeignKey("service_requests.id", ondelete="SET NULL"), nullable=True
    )
    recurrence_pattern_id = Column(
        Integer, ForeignKey("recurrence_patterns.id", ondelete="SET NULL"), nullable=True, index=True
    )

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    # service, invoice, reminder
    item_type = Column(String(50), default="service", nullable=False, index=True)

    # Stored as UTC
    scheduled_start = Column(DateTime, nullable=False, index=True)
    scheduled_end = Column(DateTime, nullable=True)
    time_slot = Column(String(100), nullable=True)
    amount = Column(Float, nullable=True)

    completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    recurrence_pattern = relationship("RecurrencePattern")
    service_request = relationship("ServiceRequest")
