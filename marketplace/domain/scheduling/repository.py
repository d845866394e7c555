"""Scheduling repository - Database operations for patterns, exceptions and schedule items"""

from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import ServiceRequest, User
from ...models_schedule import RecurrencePattern, ScheduleException, ScheduleItem
from ...utils.datetimes import to_db
from .exceptions import DuplicateExceptionError, NotFoundError


class ScheduleRepository:
    """Repository for recurrence patterns, exception dates and schedule items"""

    # Parent work items
    @staticmethod
    def get_service_request(db: Session, service_request_id: int) -> Optional[ServiceRequest]:
        return db.query(ServiceRequest).filter(ServiceRequest.id == service_request_id).first()

    @staticmethod
    def get_admin_ids(db: Session) -> list[int]:
        return [row.id for row in db.query(User.id).filter(User.role == "admin").all()]

    # Pattern Methods
    @staticmethod
    def get_pattern(
        db: Session, pattern_id: int, for_update: bool = False
    ) -> Optional[RecurrencePattern]:
        """Get a pattern; ``for_update`` holds a row lock until the transaction ends"""
        query = db.query(RecurrencePattern).filter(RecurrencePattern.id == pattern_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def create_pattern(db: Session, **pattern_data) -> RecurrencePattern:
        pattern = RecurrencePattern(**pattern_data)
        db.add(pattern)
        db.flush()
        return pattern

    @staticmethod
    def list_patterns(
        db: Session, homeowner_id: Optional[int] = None, provider_id: Optional[int] = None
    ) -> list[RecurrencePattern]:
        """Patterns ordered by next run (exhausted patterns last)"""
        query = db.query(RecurrencePattern).join(
            ServiceRequest, RecurrencePattern.service_request_id == ServiceRequest.id
        )
        if homeowner_id is not None:
            query = query.filter(ServiceRequest.homeowner_id == homeowner_id)
        if provider_id is not None:
            query = query.filter(ServiceRequest.provider_id == provider_id)
        return query.order_by(
            RecurrencePattern.next_run.is_(None),
            RecurrencePattern.next_run,
            RecurrencePattern.id,
        ).all()

    @staticmethod
    def get_due_pattern_ids(db: Session, due_before: datetime, limit: int) -> list[int]:
        rows = (
            db.query(RecurrencePattern.id)
            .filter(
                RecurrencePattern.next_run.isnot(None),
                RecurrencePattern.next_run <= to_db(due_before),
            )
            .order_by(RecurrencePattern.next_run, RecurrencePattern.id)
            .limit(limit)
            .all()
        )
        return [row.id for row in rows]

    @staticmethod
    def count_patterns_for_request(db: Session, service_request_id: int) -> int:
        return (
            db.query(func.count(RecurrencePattern.id))
            .filter(RecurrencePattern.service_request_id == service_request_id)
            .scalar()
        )

    @staticmethod
    def delete_pattern(db: Session, pattern: RecurrencePattern) -> None:
        db.delete(pattern)
        db.flush()

    # Exception Store Methods
    @staticmethod
    def add_exception(db: Session, pattern_id: int, exception_date: date) -> ScheduleException:
        """Add an exception date; the (pattern, date) pair must be new"""
        existing = ScheduleRepository.find_exception(db, pattern_id, exception_date)
        if existing:
            raise DuplicateExceptionError(pattern_id, exception_date)

        exception = ScheduleException(
            recurrence_pattern_id=pattern_id, exception_date=exception_date
        )
        try:
            with db.begin_nested():
                db.add(exception)
        except IntegrityError as e:
            raise DuplicateExceptionError(pattern_id, exception_date) from e
        return exception

    @staticmethod
    def find_exception(
        db: Session, pattern_id: int, exception_date: date
    ) -> Optional[ScheduleException]:
        return (
            db.query(ScheduleException)
            .filter(
                ScheduleException.recurrence_pattern_id == pattern_id,
                ScheduleException.exception_date == exception_date,
            )
            .first()
        )

    @staticmethod
    def get_exception(db: Session, exception_id: int) -> Optional[ScheduleException]:
        return db.query(ScheduleException).filter(ScheduleException.id == exception_id).first()

    @staticmethod
    def remove_exception(db: Session, exception_id: int) -> ScheduleException:
        exception = ScheduleRepository.get_exception(db, exception_id)
        if not exception:
            raise NotFoundError(f"Exception {exception_id} not found")
        db.delete(exception)
        db.flush()
        return exception

    @staticmethod
    def list_exceptions(db: Session, pattern_id: int) -> list[ScheduleException]:
        return (
            db.query(ScheduleException)
            .filter(ScheduleException.recurrence_pattern_id == pattern_id)
            .order_by(ScheduleException.exception_date)
            .all()
        )

    @staticmethod
    def list_exception_dates(db: Session, pattern_id: int) -> list[date]:
        """Ascending exception dates for a pattern"""
        return [e.exception_date for e in ScheduleRepository.list_exceptions(db, pattern_id)]

    @staticmethod
    def replace_exceptions(db: Session, pattern_id: int, dates: Iterable[date]) -> list[date]:
        """Make the stored exception set equal ``dates``, keeping rows that survive"""
        wanted = set(dates)
        for exception in ScheduleRepository.list_exceptions(db, pattern_id):
            if exception.exception_date in wanted:
                wanted.discard(exception.exception_date)
            else:
                db.delete(exception)
        db.flush()
        for exception_date in sorted(wanted):
            db.add(
                ScheduleException(recurrence_pattern_id=pattern_id, exception_date=exception_date)
            )
        db.flush()
        return ScheduleRepository.list_exception_dates(db, pattern_id)

    # Schedule Item Methods
    @staticmethod
    def get_existing_starts(
        db: Session, pattern_id: int, starts: Iterable[datetime]
    ) -> set[datetime]:
        """Which of ``starts`` (naive UTC) already have an item for the pattern"""
        starts = list(starts)
        if not starts:
            return set()
        rows = (
            db.query(ScheduleItem.scheduled_start)
            .filter(
                ScheduleItem.recurrence_pattern_id == pattern_id,
                ScheduleItem.scheduled_start.in_(starts),
            )
            .all()
        )
        return {row.scheduled_start for row in rows}

    @staticmethod
    def get_items_for_pattern(
        db: Session,
        pattern_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ScheduleItem]:
        query = db.query(ScheduleItem).filter(ScheduleItem.recurrence_pattern_id == pattern_id)
        if start is not None:
            query = query.filter(ScheduleItem.scheduled_start >= to_db(start))
        if end is not None:
            query = query.filter(ScheduleItem.scheduled_start <= to_db(end))
        return query.order_by(ScheduleItem.scheduled_start).all()

    @staticmethod
    def get_latest_item_start(db: Session, pattern_id: int) -> Optional[datetime]:
        return (
            db.query(func.max(ScheduleItem.scheduled_start))
            .filter(ScheduleItem.recurrence_pattern_id == pattern_id)
            .scalar()
        )

    @staticmethod
    def delete_open_items(
        db: Session,
        pattern_id: int,
        after: datetime,
        before: Optional[datetime] = None,
        keep: Optional[Iterable[datetime]] = None,
    ) -> int:
        """
        Delete the pattern's non-completed items with ``after < start`` (and ``start < before``).

        Items whose start (naive UTC) is in ``keep`` are left alone.
        """
        query = db.query(ScheduleItem).filter(
            ScheduleItem.recurrence_pattern_id == pattern_id,
            ScheduleItem.completed.is_(False),
            ScheduleItem.scheduled_start > to_db(after),
        )
        if before is not None:
            query = query.filter(ScheduleItem.scheduled_start < to_db(before))
        items = query.all()
        if keep is not None:
            kept = set(keep)
            items = [item for item in items if item.scheduled_start not in kept]
        for item in items:
            db.delete(item)
        db.flush()
        return len(items)

    @staticmethod
    def detach_items(db: Session, pattern_id: int) -> int:
        """Clear the origin pattern on remaining items so history survives deletion"""
        items = (
            db.query(ScheduleItem).filter(ScheduleItem.recurrence_pattern_id == pattern_id).all()
        )
        for item in items:
            item.recurrence_pattern_id = None
        db.flush()
        return len(items)

    @staticmethod
    def find_overlapping_items(
        db: Session,
        user_id: int,
        start: datetime,
        end: datetime,
        exclude_pattern_id: Optional[int] = None,
    ) -> list[ScheduleItem]:
        """Open items of ``user_id`` overlapping [start, end]"""
        start, end = to_db(start), to_db(end)
        query = db.query(ScheduleItem).filter(
            ScheduleItem.user_id == user_id,
            ScheduleItem.completed.is_(False),
            ScheduleItem.scheduled_start <= end,
            func.coalesce(ScheduleItem.scheduled_end, ScheduleItem.scheduled_start) >= start,
        )
        if exclude_pattern_id is not None:
            query = query.filter(
                (ScheduleItem.recurrence_pattern_id.is_(None))
                | (ScheduleItem.recurrence_pattern_id != exclude_pattern_id)
            )
        return query.all()

    @staticmethod
    def get_item(db: Session, item_id: int) -> Optional[ScheduleItem]:
        return db.query(ScheduleItem).filter(ScheduleItem.id == item_id).first()

    @staticmethod
    def list_items(
        db: Session,
        user_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ScheduleItem]:
        """Items on a user's schedule: owned by them or assigned to them"""
        query = db.query(ScheduleItem)
        if user_id is not None:
            query = query.filter(
                (ScheduleItem.user_id == user_id) | (ScheduleItem.provider_id == user_id)
            )
        if start is not None:
            query = query.filter(ScheduleItem.scheduled_start >= to_db(start))
        if end is not None:
            query = query.filter(ScheduleItem.scheduled_start <= to_db(end))
        return query.order_by(ScheduleItem.scheduled_start, ScheduleItem.id).all()

    @staticmethod
    def create_item(db: Session, **item_data) -> ScheduleItem:
        item = ScheduleItem(**item_data)
        db.add(item)
        db.flush()
        return item

    @staticmethod
    def update_item(db: Session, item: ScheduleItem, **updates) -> ScheduleItem:
        """Apply only the provided (non-None) fields"""
        for key, value in updates.items():
            if value is not None and hasattr(item, key):
                setattr(item, key, value)
        db.flush()
        return item

    @staticmethod
    def delete_item(db: Session, item: ScheduleItem) -> None:
        db.delete(item)
        db.flush()
