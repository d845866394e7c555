"""Scheduling service - Business logic for recurring schedules and schedule items"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    DEFAULT_TIMEZONE,
    SCHEDULE_BATCH_SIZE,
    SCHEDULE_DUE_BATCH_LIMIT,
    SCHEDULE_DUE_LOOKAHEAD_HOURS,
    SCHEDULE_MAX_RETRY_ATTEMPTS,
    SCHEDULE_PREVIEW_COUNT,
    SCHEDULE_WINDOW_DAYS,
)
from ...database import SessionLocal, transaction
from ...models import ServiceRequest, User
from ...models_schedule import RecurrencePattern, ScheduleException, ScheduleItem
from ...utils.datetimes import as_utc, from_db, local_day_bounds, to_db, utcnow
from .exceptions import (
    AuthorizationError,
    InvalidRuleError,
    InvalidScheduleItemError,
    NotFoundError,
)
from .expander import expand, iter_occurrences, next_after, occurrences_on
from .materializer import MaterializationResult, Materializer, occurrence_duration
from .repository import ScheduleRepository
from .rrule_codec import RuleFields, RuleOptions, decode, normalize
from .schemas import (
    OccurrenceResponse,
    RecurringScheduleCreate,
    RecurringScheduleUpdate,
    ScheduleItemCreate,
    ScheduleItemUpdate,
)

logger = logging.getLogger(__name__)


def can_manage_request(user: User, service_request: ServiceRequest) -> bool:
    """Owner, assigned provider and admins may manage a request's recurrence"""
    return (
        user.is_admin
        or service_request.homeowner_id == user.id
        or service_request.provider_id == user.id
    )


class RecurringScheduleService:
    """Service layer for the recurrence pattern lifecycle"""

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.repo = ScheduleRepository()
        self.materializer = Materializer(db, notifier)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _authorize(self, user: User, service_request: ServiceRequest) -> None:
        if not can_manage_request(user, service_request):
            logger.warning(
                f"⚠️ User {user.id} denied access to service request {service_request.id}"
            )
            raise AuthorizationError("Not authorized to manage this service request's schedule")

    def _get_authorized_pattern(
        self, user: User, pattern_id: int, for_update: bool = False
    ) -> RecurrencePattern:
        pattern = self.repo.get_pattern(self.db, pattern_id, for_update=for_update)
        if not pattern:
            raise NotFoundError(f"Recurrence pattern {pattern_id} not found")
        self._authorize(user, pattern.service_request)
        return pattern

    def _recompute_next_run(
        self, pattern: RecurrencePattern, rule: RuleOptions, exception_dates, now: datetime
    ) -> Optional[datetime]:
        """First occurrence after both "now" and the last materialized item"""
        latest = from_db(self.repo.get_latest_item_start(self.db, pattern.id))
        anchor = max(now, latest) if latest is not None else now
        return next_after(rule, exception_dates, anchor)

    def _drop_items_on(
        self, pattern: RecurrencePattern, rule: RuleOptions, day: date, now: datetime
    ) -> int:
        """Delete open items of the pattern on local ``day`` that are still ahead of ``now``"""
        day_start, day_end = local_day_bounds(day, rule.tzinfo)
        # an item at local midnight belongs to the day
        after = max(now, day_start - timedelta(microseconds=1))
        return self.repo.delete_open_items(self.db, pattern.id, after=after, before=day_end)

    def _resync_exceptions(
        self,
        pattern: RecurrencePattern,
        rule: RuleOptions,
        exception_dates: list[date],
        restored_dates,
        now: datetime,
    ) -> tuple[int, MaterializationResult]:
        """
        Bring generated items in line with a changed exception set.

        COUNT only counts occurrences that happen, so un-skipping a date can
        push a later item past the end of the rule; such open future items
        are dropped first. Occurrences on ``restored_dates`` that lie ahead of
        ``now`` and inside the generated horizon are then generated again.
        """
        horizon = from_db(pattern.next_run)
        dropped = 0
        if rule.count is not None:
            produced = [to_db(instant) for instant in iter_occurrences(rule, exception_dates)]
            dropped = self.repo.delete_open_items(self.db, pattern.id, after=now, keep=produced)
            if dropped:
                logger.info(f"🗑️ Dropped {dropped} item(s) of pattern {pattern.id} beyond COUNT")

        restorable = [
            instant
            for day in sorted(restored_dates)
            for instant in occurrences_on(rule, day, exception_dates)
            if instant > now and (horizon is None or instant < horizon)
        ]
        result = self.materializer.materialize_instants(pattern, rule, restorable)
        pattern.next_run = to_db(self._recompute_next_run(pattern, rule, exception_dates, now))
        result.next_run = from_db(pattern.next_run)
        return dropped, result

    def get_pattern(self, user: User, pattern_id: int) -> RecurrencePattern:
        return self._get_authorized_pattern(user, pattern_id)

    def list_patterns(self, user: User) -> list[RecurrencePattern]:
        """Admins see every pattern, providers their assigned requests, homeowners their own"""
        if user.is_admin:
            return self.repo.list_patterns(self.db)
        if user.role == "provider":
            return self.repo.list_patterns(self.db, provider_id=user.id)
        return self.repo.list_patterns(self.db, homeowner_id=user.id)

    def list_exceptions(self, user: User, pattern_id: int) -> list[ScheduleException]:
        self._get_authorized_pattern(user, pattern_id)
        return self.repo.list_exceptions(self.db, pattern_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_pattern(
        self,
        user: User,
        data: RecurringScheduleCreate,
        now: Optional[datetime] = None,
        batch_size: int = SCHEDULE_BATCH_SIZE,
    ) -> RecurrencePattern:
        """Establish recurrence on a service request and generate the first batch"""
        now = as_utc(now) if now is not None else utcnow()
        logger.info(f"📥 Creating recurrence for service request {data.serviceRequestId}")

        service_request = self.repo.get_service_request(self.db, data.serviceRequestId)
        if not service_request:
            raise NotFoundError(f"Service request {data.serviceRequestId} not found")
        self._authorize(user, service_request)

        rule_text = normalize(
            None, data.rruleOptions.to_fields(data.timezone), default_timezone=DEFAULT_TIMEZONE
        )
        rule = decode(rule_text)
        exception_dates = sorted(set(data.exdates))
        if not expand(rule, exception_dates, start=now, count=1):
            raise InvalidRuleError("Recurrence rule produces no upcoming occurrences")

        with transaction(self.db):
            pattern = self.repo.create_pattern(
                self.db,
                service_request_id=service_request.id,
                rrule_pattern=rule_text,
                timezone=rule.tzid,
                title=data.title,
                description=data.description,
            )
            self.repo.replace_exceptions(self.db, pattern.id, exception_dates)
            service_request.is_recurring = True
            result = self.materializer.run_batch(pattern, batch_size, now=now)

        logger.info(
            f"✅ Created recurrence pattern {pattern.id} ({rule_text.splitlines()[-1]}), "
            f"{result.created_count} item(s) generated"
        )
        self.materializer.notify(result)
        return pattern

    def update_pattern(
        self,
        user: User,
        pattern_id: int,
        data: RecurringScheduleUpdate,
        now: Optional[datetime] = None,
        batch_size: int = SCHEDULE_BATCH_SIZE,
    ) -> RecurrencePattern:
        """
        Merge rule fields and optionally replace the exception set.

        With ``applyToFuture`` and a material change, every not-yet-occurred
        open item is dropped and the pattern is regenerated from now. Without
        it, existing items stay as they are except where the exception set
        changes. Newly skipped dates lose their open items. Un-skipped dates
        inside the horizon are generated again. A COUNT-bounded rule also
        loses open items it no longer produces.
        """
        now = as_utc(now) if now is not None else utcnow()
        result: Optional[MaterializationResult] = None

        with transaction(self.db):
            pattern = self._get_authorized_pattern(user, pattern_id, for_update=True)
            old_rule = pattern.rrule_pattern
            old_dates = self.repo.list_exception_dates(self.db, pattern.id)

            rule_text = old_rule
            if data.rruleOptions is not None or data.timezone is not None:
                fields = (
                    data.rruleOptions.to_fields(data.timezone)
                    if data.rruleOptions is not None
                    else RuleFields(timezone=data.timezone)
                )
                rule_text = normalize(old_rule, fields, default_timezone=DEFAULT_TIMEZONE)
            new_dates = sorted(set(data.exdates)) if data.exdates is not None else old_dates
            changed = rule_text != old_rule or new_dates != old_dates

            rule = decode(rule_text)
            pattern.rrule_pattern = rule_text
            pattern.timezone = rule.tzid
            if data.exdates is not None:
                self.repo.replace_exceptions(self.db, pattern.id, new_dates)
            if data.title is not None:
                pattern.title = data.title
            if data.description is not None:
                pattern.description = data.description

            if changed and data.applyToFuture:
                removed = self.repo.delete_open_items(self.db, pattern.id, after=now)
                logger.info(f"🗑️ Removed {removed} future item(s) of pattern {pattern.id}")
                result = self.materializer.run_batch(pattern, batch_size, now=now)
            elif changed:
                for skipped_day in sorted(set(new_dates) - set(old_dates)):
                    self._drop_items_on(pattern, rule, skipped_day, now)
                _, result = self._resync_exceptions(
                    pattern, rule, new_dates, set(old_dates) - set(new_dates), now
                )
            self.db.flush()

        logger.info(
            f"✅ Updated recurrence pattern {pattern_id} "
            f"(changed={changed}, applyToFuture={data.applyToFuture})"
        )
        if result is not None:
            self.materializer.notify(result)
        return pattern

    def delete_pattern(
        self,
        user: User,
        pattern_id: int,
        delete_future_items: bool = False,
        now: Optional[datetime] = None,
    ) -> dict:
        """Remove a pattern; past items stay on the schedule without their origin"""
        now = as_utc(now) if now is not None else utcnow()

        with transaction(self.db):
            pattern = self._get_authorized_pattern(user, pattern_id, for_update=True)
            service_request = pattern.service_request
            exception_count = len(pattern.exceptions)

            deleted = 0
            if delete_future_items:
                deleted = self.repo.delete_open_items(self.db, pattern.id, after=now)
            detached = self.repo.detach_items(self.db, pattern.id)
            # exceptions go with the pattern through the relationship cascade
            self.repo.delete_pattern(self.db, pattern)
            if self.repo.count_patterns_for_request(self.db, service_request.id) == 0:
                service_request.is_recurring = False

        logger.info(
            f"✅ Deleted recurrence pattern {pattern_id}: {deleted} future item(s) removed, "
            f"{detached} kept, {exception_count} exception(s) dropped"
        )
        return {
            "message": "Recurring schedule deleted",
            "deletedItems": deleted,
            "detachedItems": detached,
            "deletedExceptions": exception_count,
        }

    # ------------------------------------------------------------------
    # Exceptions
    # ------------------------------------------------------------------

    def add_exception(
        self, user: User, pattern_id: int, exception_date: date, now: Optional[datetime] = None
    ) -> ScheduleException:
        """Skip ``exception_date`` and drop any open future item already on it"""
        now = as_utc(now) if now is not None else utcnow()

        with transaction(self.db):
            pattern = self._get_authorized_pattern(user, pattern_id, for_update=True)
            exception = self.repo.add_exception(self.db, pattern.id, exception_date)

            rule = decode(pattern.rrule_pattern)
            removed = self._drop_items_on(pattern, rule, exception_date, now)

            exception_dates = self.repo.list_exception_dates(self.db, pattern.id)
            pattern.next_run = to_db(
                self._recompute_next_run(pattern, rule, exception_dates, now)
            )
            self.db.flush()

        logger.info(
            f"✅ Added exception {exception_date} to pattern {pattern_id}, "
            f"{removed} item(s) removed"
        )
        return exception

    def remove_exception(
        self,
        user: User,
        pattern_id: int,
        exception_id: Optional[int] = None,
        exception_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Stop skipping a date, by exception id or by date.

        Occurrences on that date that are still ahead of us and inside the
        already generated horizon are generated again straight away.
        """
        now = as_utc(now) if now is not None else utcnow()
        if exception_id is None and exception_date is None:
            raise NotFoundError("An exception id or date is required")

        with transaction(self.db):
            pattern = self._get_authorized_pattern(user, pattern_id, for_update=True)
            if exception_id is not None:
                exception = self.repo.get_exception(self.db, exception_id)
            else:
                exception = self.repo.find_exception(self.db, pattern.id, exception_date)
            if not exception or exception.recurrence_pattern_id != pattern.id:
                raise NotFoundError(
                    f"Exception {exception_id or exception_date} not found for pattern {pattern_id}"
                )

            removed_date = exception.exception_date
            self.repo.remove_exception(self.db, exception.id)

            rule = decode(pattern.rrule_pattern)
            exception_dates = self.repo.list_exception_dates(self.db, pattern.id)
            dropped, result = self._resync_exceptions(
                pattern, rule, exception_dates, [removed_date], now
            )
            self.db.flush()

        logger.info(
            f"✅ Removed exception {removed_date} from pattern {pattern_id}, "
            f"{result.created_count} item(s) restored, {dropped} dropped"
        )
        self.materializer.notify(result)
        return {
            "message": "Exception removed",
            "exceptionDate": removed_date,
            "restoredItems": result.created_count,
            "droppedItems": dropped,
        }

    # ------------------------------------------------------------------
    # Generation and preview
    # ------------------------------------------------------------------

    def materialize(
        self,
        user: User,
        pattern_id: int,
        batch_size: int = SCHEDULE_BATCH_SIZE,
        now: Optional[datetime] = None,
    ) -> MaterializationResult:
        """Manually generate the next batch of a pattern"""
        self._get_authorized_pattern(user, pattern_id)
        return self.materializer.materialize(pattern_id, batch_size, now=now)

    def get_upcoming_occurrences(
        self,
        user: User,
        pattern_id: int,
        start: Optional[datetime] = None,
        count: int = SCHEDULE_PREVIEW_COUNT,
        days: int = SCHEDULE_WINDOW_DAYS,
        now: Optional[datetime] = None,
    ) -> list[OccurrenceResponse]:
        """Preview expanded occurrences, annotated with any item already generated"""
        pattern = self._get_authorized_pattern(user, pattern_id)
        rule = decode(pattern.rrule_pattern)
        exception_dates = self.repo.list_exception_dates(self.db, pattern.id)

        window_start = as_utc(start) if start is not None else (as_utc(now) if now else utcnow())
        window_end = window_start + timedelta(days=days)
        instants = expand(rule, exception_dates, start=window_start, end=window_end, count=count)

        items = {
            item.scheduled_start: item
            for item in self.repo.get_items_for_pattern(
                self.db, pattern.id, window_start, window_end
            )
        }
        duration = occurrence_duration(pattern.service_request)

        occurrences = []
        for instant in instants:
            item = items.get(to_db(instant))
            occurrences.append(
                OccurrenceResponse(
                    start=instant,
                    end=instant + duration if duration else None,
                    localDate=instant.astimezone(rule.tzinfo).date(),
                    scheduleItemId=item.id if item else None,
                    completed=item.completed if item else None,
                )
            )
        return occurrences


class ScheduleItemService:
    """Service layer for concrete schedule items"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = ScheduleRepository()

    def _check_access(self, user: User, item: ScheduleItem) -> None:
        if user.is_admin or item.user_id == user.id or item.provider_id == user.id:
            return
        logger.warning(f"⚠️ User {user.id} denied access to schedule item {item.id}")
        raise AuthorizationError("Not authorized to access this schedule item")

    def get_items(self, user: User) -> list[ScheduleItem]:
        return self.repo.list_items(self.db, user_id=user.id)

    def get_items_in_range(self, user: User, start: datetime, end: datetime) -> list[ScheduleItem]:
        if as_utc(end) < as_utc(start):
            raise InvalidScheduleItemError("Range end must not be before its start")
        return self.repo.list_items(self.db, user_id=user.id, start=start, end=end)

    def get_item(self, user: User, item_id: int) -> ScheduleItem:
        item = self.repo.get_item(self.db, item_id)
        if not item:
            raise NotFoundError(f"Schedule item {item_id} not found")
        self._check_access(user, item)
        return item

    def create_item(self, user: User, data: ScheduleItemCreate) -> ScheduleItem:
        """Create an ad hoc item (no recurrence pattern) on the user's schedule"""
        if data.scheduledEnd is not None and as_utc(data.scheduledEnd) < as_utc(
            data.scheduledStart
        ):
            raise InvalidScheduleItemError("scheduledEnd must not be before scheduledStart")

        if data.serviceRequestId is not None:
            service_request = self.repo.get_service_request(self.db, data.serviceRequestId)
            if not service_request:
                raise NotFoundError(f"Service request {data.serviceRequestId} not found")
            if not can_manage_request(user, service_request):
                raise AuthorizationError("Not authorized to schedule this service request")

        with transaction(self.db):
            item = self.repo.create_item(
                self.db,
                user_id=user.id,
                provider_id=data.providerId,
                service_request_id=data.serviceRequestId,
                title=data.title,
                description=data.description,
                item_type=data.itemType,
                scheduled_start=to_db(data.scheduledStart),
                scheduled_end=to_db(data.scheduledEnd),
                time_slot=data.timeSlot,
                amount=data.amount,
                completed=False,
            )
        logger.info(f"✅ Created schedule item {item.id} for user {user.id}")
        return item

    def update_item(self, user: User, item_id: int, data: ScheduleItemUpdate) -> ScheduleItem:
        item = self.get_item(user, item_id)

        updates = {}
        if data.title is not None:
            updates["title"] = data.title
        if data.description is not None:
            updates["description"] = data.description
        if data.itemType is not None:
            updates["item_type"] = data.itemType
        if data.scheduledStart is not None:
            updates["scheduled_start"] = to_db(data.scheduledStart)
        if data.scheduledEnd is not None:
            updates["scheduled_end"] = to_db(data.scheduledEnd)
        if data.timeSlot is not None:
            updates["time_slot"] = data.timeSlot
        if data.amount is not None:
            updates["amount"] = data.amount

        start = updates.get("scheduled_start", item.scheduled_start)
        end = updates.get("scheduled_end", item.scheduled_end)
        if end is not None and end < start:
            raise InvalidScheduleItemError("scheduledEnd must not be before scheduledStart")

        with transaction(self.db):
            self.repo.update_item(self.db, item, **updates)
            if data.completed is not None:
                self._set_completed(item, data.completed)
        return item

    def toggle_complete(self, user: User, item_id: int) -> ScheduleItem:
        item = self.get_item(user, item_id)
        with transaction(self.db):
            self._set_completed(item, not item.completed)
        logger.info(f"✅ Schedule item {item_id} marked completed={item.completed}")
        return item

    def delete_item(self, user: User, item_id: int) -> dict:
        item = self.get_item(user, item_id)
        with transaction(self.db):
            self.repo.delete_item(self.db, item)
        return {"message": "Schedule item deleted"}

    def _set_completed(self, item: ScheduleItem, completed: bool) -> None:
        item.completed = completed
        item.completed_at = to_db(utcnow()) if completed else None
        self.db.flush()


class DueScheduleProcessor:
    """
    Generates the next batch for every pattern that is coming due.

    Each pattern runs in its own session and transaction, so one failing
    pattern never blocks the others. Consecutive failures are counted per
    pattern and an alert goes out once the limit is reached.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        notifier=None,
        batch_size: int = SCHEDULE_BATCH_SIZE,
        lookahead_hours: int = SCHEDULE_DUE_LOOKAHEAD_HOURS,
        limit: int = SCHEDULE_DUE_BATCH_LIMIT,
        max_attempts: int = SCHEDULE_MAX_RETRY_ATTEMPTS,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.batch_size = batch_size
        self.lookahead = timedelta(hours=lookahead_hours)
        self.limit = limit
        self.max_attempts = max_attempts
        self.failure_counts: dict[int, int] = {}

    def process_due(self, now: Optional[datetime] = None) -> dict:
        now = as_utc(now) if now is not None else utcnow()

        db = self.session_factory()
        try:
            pattern_ids = ScheduleRepository.get_due_pattern_ids(db, now + self.lookahead, self.limit)
        finally:
            db.close()

        logger.info(f"🔄 Processing {len(pattern_ids)} due recurrence pattern(s)")
        summary = {"processed": 0, "failed": 0, "created": 0, "details": []}

        for pattern_id in pattern_ids:
            db = self.session_factory()
            try:
                result = Materializer(db, self.notifier).materialize(
                    pattern_id, self.batch_size, now=now
                )
                self.failure_counts.pop(pattern_id, None)
                summary["processed"] += 1
                summary["created"] += result.created_count
                summary["details"].append(
                    {
                        "patternId": pattern_id,
                        "status": "success",
                        "created": result.created_count,
                        "nextRun": result.next_run.isoformat() if result.next_run else None,
                    }
                )
            except Exception as e:
                logger.error(f"❌ Failed to process recurrence pattern {pattern_id}: {e}")
                summary["failed"] += 1
                summary["details"].append(
                    {"patternId": pattern_id, "status": "failed", "error": str(e)}
                )
                self._record_failure(db, pattern_id, str(e))
            finally:
                db.close()

        logger.info(
            f"✅ Due schedule run finished: {summary['processed']} processed, "
            f"{summary['failed']} failed, {summary['created']} item(s) created"
        )
        return summary

    def _record_failure(self, db: Session, pattern_id: int, error: str) -> None:
        attempts = self.failure_counts.get(pattern_id, 0) + 1
        self.failure_counts[pattern_id] = attempts
        if attempts < self.max_attempts:
            logger.warning(
                f"⚠️ Pattern {pattern_id} failed {attempts}/{self.max_attempts} time(s)"
            )
            return

        self.failure_counts[pattern_id] = 0
        if self.notifier is None:
            logger.error(f"🚨 Pattern {pattern_id} keeps failing and no notifier is configured")
            return

        pattern = ScheduleRepository.get_pattern(db, pattern_id)
        owner_id = pattern.service_request.homeowner_id if pattern else None
        admin_ids = ScheduleRepository.get_admin_ids(db)
        self.notifier.on_failure_alert(pattern_id, owner_id, admin_ids, attempts, error)
