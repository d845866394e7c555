"""
Notification Models
Pending notifications handed off to the delivery transport
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from .database import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    # info, warning, error
    notification_type = Column(String(20), default="info", nullable=False)

    # What the notification points at, e.g. SCHEDULE_ITEM / SERVICE_REQUEST / SYSTEM
    related_to = Column(String(50), nullable=True)
    related_id = Column(Integer, nullable=True)
    occurrence_at = Column(DateTime, nullable=True)

    # pending until the transport picks it up; delivered / failed afterwards
    delivery_status = Column(String(20), default="pending", nullable=False, index=True)
    delivery_attempts = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    delivered_at = Column(DateTime, nullable=True)
