"""
Schedule Notifier
Announces newly materialized schedule items and repeated generation failures.

Events are handed to a sink callable. The default sink stores a pending
Notification row that the delivery transport picks up; delivery itself
happens elsewhere. A failing sink never affects scheduling.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from ...database import SessionLocal
from ...models_notification import Notification
from ...models_schedule import ScheduleItem
from ...utils.datetimes import from_db, to_db

logger = logging.getLogger(__name__)


class ScheduleNotificationEvent(BaseModel):
    """Payload handed to the notification transport"""

    model_config = ConfigDict(frozen=True)

    recipient_id: int
    title: str
    message: str
    related_schedule_item_id: Optional[int] = None
    occurrence_instant: Optional[datetime] = None
    notification_type: str = "info"
    related_to: str = "SCHEDULE_ITEM"


def persist_notification(event: ScheduleNotificationEvent, session_factory=SessionLocal) -> int:
    """Store ``event`` as a pending Notification in its own session"""
    db = session_factory()
    try:
        notification = Notification(
            user_id=event.recipient_id,
            title=event.title,
            message=event.message,
            notification_type=event.notification_type,
            related_to=event.related_to,
            related_id=event.related_schedule_item_id,
            occurrence_at=to_db(event.occurrence_instant),
            delivery_status="pending",
        )
        db.add(notification)
        db.commit()
        return notification.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class ScheduleNotifier:
    """Builds notification events and hands them to ``sink``"""

    def __init__(self, sink: Optional[Callable[[ScheduleNotificationEvent], object]] = None):
        self.sink = sink or persist_notification

    def on_materialized(self, item: ScheduleItem) -> bool:
        """Announce a newly created item to its owner. Returns False if delivery failed."""
        try:
            start = from_db(item.scheduled_start)
            event = ScheduleNotificationEvent(
                recipient_id=item.user_id,
                title="Upcoming service scheduled",
                message=f"'{item.title}' is scheduled for {start.strftime('%Y-%m-%d %H:%M')} UTC",
                related_schedule_item_id=item.id,
                occurrence_instant=start,
            )
            self.sink(event)
            logger.info(f"🔔 Notified user {item.user_id} about schedule item {item.id}")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to send schedule notification for item {item.id}: {e}")
            return False

    def on_failure_alert(
        self,
        pattern_id: int,
        owner_id: Optional[int],
        admin_ids: list[int],
        attempts: int,
        error: str,
    ) -> int:
        """Warn the pattern's owner and the admins that generation keeps failing"""
        sent = 0
        if owner_id is not None:
            sent += self._send(
                ScheduleNotificationEvent(
                    recipient_id=owner_id,
                    title="Recurring schedule needs attention",
                    message=(
                        "We could not generate upcoming appointments for one of your "
                        "recurring services. Our team has been notified."
                    ),
                    notification_type="warning",
                    related_to="RECURRENCE_PATTERN",
                )
            )
        for admin_id in admin_ids:
            sent += self._send(
                ScheduleNotificationEvent(
                    recipient_id=admin_id,
                    title="Recurring schedule generation failing",
                    message=(
                        f"Pattern {pattern_id} failed {attempts} consecutive time(s). "
                        f"Last error: {error}"
                    ),
                    notification_type="error",
                    related_to="SYSTEM",
                )
            )
        logger.warning(f"🚨 Failure alert for pattern {pattern_id} sent to {sent} recipient(s)")
        return sent

    def _send(self, event: ScheduleNotificationEvent) -> int:
        try:
            self.sink(event)
            return 1
        except Exception as e:
            logger.error(f"❌ Failed to send alert to user {event.recipient_id}: {e}")
            return 0
