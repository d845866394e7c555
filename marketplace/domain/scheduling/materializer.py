"""
Materializer
Turns the next few occurrences of a recurrence pattern into ScheduleItem rows.

One call is one transaction: the pattern row is locked, candidates are
expanded from "now", each candidate is inserted inside its own SAVEPOINT and
the pattern's next run is advanced. Re-running with the same inputs creates
nothing new.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import SCHEDULE_BATCH_SIZE
from ...database import transaction
from ...models_schedule import RecurrencePattern, ScheduleItem
from ...utils.datetimes import as_utc, from_db, to_db, utcnow
from .exceptions import ConcurrentMaterializationConflict, MaterializationCancelled, NotFoundError
from .expander import expand, next_after
from .repository import ScheduleRepository
from .rrule_codec import RuleOptions, decode

logger = logging.getLogger(__name__)


@dataclass
class MaterializationResult:
    pattern_id: int
    created: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    next_run: Optional[datetime] = None

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


def occurrence_duration(service_request) -> Optional[timedelta]:
    """Length of the original booking window, reused for every occurrence"""
    if service_request is None:
        return None
    if not service_request.scheduled_date or not service_request.end_date:
        return None
    duration = service_request.end_date - service_request.scheduled_date
    return duration if duration > timedelta(0) else None


class Materializer:
    """Generates schedule items for one pattern at a time"""

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.repo = ScheduleRepository()
        self.notifier = notifier

    def materialize(
        self,
        pattern_id: int,
        batch_size: int = SCHEDULE_BATCH_SIZE,
        now: Optional[datetime] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> MaterializationResult:
        """Run one batch in its own transaction, then notify about new items"""
        with transaction(self.db):
            pattern = self.repo.get_pattern(self.db, pattern_id, for_update=True)
            if not pattern:
                raise NotFoundError(f"Recurrence pattern {pattern_id} not found")
            result = self.run_batch(pattern, batch_size, now=now, should_cancel=should_cancel)

        logger.info(
            f"✅ Materialized pattern {pattern_id}: {result.created_count} created, "
            f"{result.skipped_count} skipped, next run {result.next_run}"
        )
        self.notify(result)
        return result

    def run_batch(
        self,
        pattern: RecurrencePattern,
        batch_size: int = SCHEDULE_BATCH_SIZE,
        now: Optional[datetime] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> MaterializationResult:
        """
        Materialize up to ``batch_size`` occurrences at or after ``now``.

        Runs inside the caller's transaction and never commits. The caller
        is expected to hold the pattern row lock.
        """
        now = as_utc(now) if now is not None else utcnow()
        rule = decode(pattern.rrule_pattern)
        exception_dates = self.repo.list_exception_dates(self.db, pattern.id)
        candidates = expand(rule, exception_dates, start=now, count=batch_size)
        logger.info(f"🔄 Pattern {pattern.id}: {len(candidates)} candidate occurrence(s) from {now}")

        result = self.materialize_instants(pattern, rule, candidates, should_cancel=should_cancel)
        result.next_run = next_after(rule, exception_dates, candidates[-1]) if candidates else None
        pattern.next_run = to_db(result.next_run)
        self.db.flush()
        return result

    def materialize_instants(
        self,
        pattern: RecurrencePattern,
        rule: RuleOptions,
        instants: list,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> MaterializationResult:
        """Insert an item per instant unless the pattern already has one there"""
        result = MaterializationResult(pattern_id=pattern.id, next_run=from_db(pattern.next_run))
        existing = self.repo.get_existing_starts(self.db, pattern.id, [to_db(i) for i in instants])
        service_request = pattern.service_request

        for instant in instants:
            if should_cancel is not None and should_cancel():
                logger.warning(f"⚠️ Materialization of pattern {pattern.id} cancelled")
                raise MaterializationCancelled(
                    f"Materialization of pattern {pattern.id} was cancelled"
                )

            if to_db(instant) in existing:
                result.skipped.append(instant)
                continue

            try:
                item = self._insert_item(pattern, service_request, rule.tzinfo, instant)
            except ConcurrentMaterializationConflict as e:
                logger.info(f"⏭️ {e.message}, skipping")
                result.skipped.append(instant)
                continue

            result.created.append(item)
            self._log_conflicts(item)

        return result

    def notify(self, result: MaterializationResult) -> None:
        if self.notifier is None:
            return
        for item in result.created:
            self.notifier.on_materialized(item)

    def _insert_item(self, pattern, service_request, tzinfo, instant: datetime) -> ScheduleItem:
        duration = occurrence_duration(service_request)
        end = instant + duration if duration else None
        local_start = instant.astimezone(tzinfo)
        time_slot = local_start.strftime("%I:%M %p")
        if end is not None:
            time_slot = f"{time_slot} - {end.astimezone(tzinfo).strftime('%I:%M %p')}"

        item = ScheduleItem(
            user_id=service_request.homeowner_id,
            provider_id=service_request.provider_id,
            service_request_id=service_request.id,
            recurrence_pattern_id=pattern.id,
            title=pattern.title or service_request.title,
            description=pattern.description or service_request.description,
            item_type="service",
            scheduled_start=to_db(instant),
            scheduled_end=to_db(end),
            time_slot=time_slot,
            amount=service_request.budget,
            completed=False,
        )
        try:
            with self.db.begin_nested():
                self.db.add(item)
        except IntegrityError as e:
            raise ConcurrentMaterializationConflict(pattern.id, instant) from e
        return item

    def _log_conflicts(self, item: ScheduleItem) -> None:
        start = from_db(item.scheduled_start)
        end = from_db(item.scheduled_end) or start
        overlapping = self.repo.find_overlapping_items(
            self.db, item.user_id, start, end, exclude_pattern_id=item.recurrence_pattern_id
        )
        for other in overlapping:
            logger.warning(
                f"⚠️ Scheduling conflict for user {item.user_id}: '{item.title}' at {start} "
                f"overlaps item {other.id} '{other.title}'"
            )
