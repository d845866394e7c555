"""Tests for idempotent materialization of schedule items."""

from datetime import date, datetime, timedelta

import pytest
from conftest import NOW, ny_nine

from marketplace.domain.scheduling.exceptions import MaterializationCancelled, NotFoundError
from marketplace.domain.scheduling.materializer import Materializer
from marketplace.domain.scheduling.repository import ScheduleRepository
from marketplace.models_schedule import RecurrencePattern, ScheduleException, ScheduleItem
from marketplace.utils.datetimes import from_db, to_db

WEEKLY_COUNT_4 = (
    "DTSTART;TZID=America/New_York:20250106T090000\n"
    "RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=MO;COUNT=4"
)


@pytest.fixture
def make_pattern(db, service_request):
    def _make(rule=WEEKLY_COUNT_4, exdates=(), **extra):
        pattern = RecurrencePattern(
            service_request_id=service_request.id,
            rrule_pattern=rule,
            timezone="America/New_York",
            **extra,
        )
        db.add(pattern)
        db.flush()
        for exception_date in exdates:
            db.add(ScheduleException(recurrence_pattern_id=pattern.id, exception_date=exception_date))
        db.commit()
        return pattern

    return _make


def item_starts(db, pattern_id):
    items = (
        db.query(ScheduleItem)
        .filter(ScheduleItem.recurrence_pattern_id == pattern_id)
        .order_by(ScheduleItem.scheduled_start)
        .all()
    )
    return [from_db(i.scheduled_start) for i in items]


class TestMaterialize:
    def test_weekly_count_four(self, db, make_pattern):
        pattern = make_pattern()

        result = Materializer(db).materialize(pattern.id, batch_size=4, now=NOW)

        assert result.created_count == 4
        assert item_starts(db, pattern.id) == [ny_nine(6), ny_nine(13), ny_nine(20), ny_nine(27)]
        assert result.next_run is None
        assert db.get(RecurrencePattern, pattern.id).next_run is None

    def test_weekly_count_four_with_exception(self, db, make_pattern):
        pattern = make_pattern(exdates=[date(2025, 1, 13)])

        Materializer(db).materialize(pattern.id, batch_size=4, now=NOW)

        assert item_starts(db, pattern.id) == [ny_nine(6), ny_nine(20), ny_nine(27), ny_nine(3, 2)]

    def test_second_run_creates_nothing(self, db, make_pattern):
        pattern = make_pattern()
        materializer = Materializer(db)

        first = materializer.materialize(pattern.id, batch_size=4, now=NOW)
        second = materializer.materialize(pattern.id, batch_size=4, now=NOW)

        assert first.created_count == 4
        assert second.created_count == 0
        assert second.skipped_count == 4
        assert second.next_run == first.next_run
        assert db.query(ScheduleItem).count() == 4

    def test_count_three_terminates(self, db, make_pattern):
        pattern = make_pattern(rule=WEEKLY_COUNT_4.replace("COUNT=4", "COUNT=3"))
        materializer = Materializer(db)

        materializer.materialize(pattern.id, batch_size=2, now=NOW)
        assert db.get(RecurrencePattern, pattern.id).next_run == to_db(ny_nine(20))

        result = materializer.materialize(pattern.id, batch_size=2, now=ny_nine(14))

        assert result.created_count == 1
        assert result.next_run is None
        assert len(item_starts(db, pattern.id)) == 3
        assert db.get(RecurrencePattern, pattern.id).state == "exhausted"

    def test_batch_advances_next_run(self, db, make_pattern):
        pattern = make_pattern(rule=WEEKLY_COUNT_4.replace(";COUNT=4", ""))

        result = Materializer(db).materialize(pattern.id, batch_size=2, now=NOW)

        assert item_starts(db, pattern.id) == [ny_nine(6), ny_nine(13)]
        assert result.next_run == ny_nine(20)
        assert result.next_run > NOW

    def test_only_future_occurrences_are_generated(self, db, make_pattern):
        pattern = make_pattern(rule=WEEKLY_COUNT_4.replace(";COUNT=4", ""))

        Materializer(db).materialize(pattern.id, batch_size=2, now=ny_nine(14))

        assert item_starts(db, pattern.id) == [ny_nine(20), ny_nine(27)]

    def test_item_fields_come_from_service_request(self, db, make_pattern, service_request):
        pattern = make_pattern(title="Deep clean")

        Materializer(db).materialize(pattern.id, batch_size=1, now=NOW)

        item = db.query(ScheduleItem).one()
        assert item.title == "Deep clean"
        assert item.description == service_request.description
        assert item.user_id == service_request.homeowner_id
        assert item.provider_id == service_request.provider_id
        assert item.service_request_id == service_request.id
        assert item.item_type == "service"
        assert item.amount == 120.0
        assert from_db(item.scheduled_end) - from_db(item.scheduled_start) == timedelta(hours=2)
        assert item.time_slot == "09:00 AM - 11:00 AM"
        assert item.completed is False

    def test_unknown_pattern(self, db):
        with pytest.raises(NotFoundError):
            Materializer(db).materialize(999, now=NOW)


class TestFailureAndConcurrency:
    def test_cancellation_rolls_back_whole_batch(self, db, make_pattern):
        pattern = make_pattern()
        answers = iter([False, False, True])

        with pytest.raises(MaterializationCancelled):
            Materializer(db).materialize(
                pattern.id, batch_size=4, now=NOW, should_cancel=lambda: next(answers)
            )

        assert db.query(ScheduleItem).count() == 0
        assert db.get(RecurrencePattern, pattern.id).next_run is None

    def test_uniqueness_conflict_counts_as_skip(self, db, make_pattern, monkeypatch):
        pattern = make_pattern()
        Materializer(db).materialize(pattern.id, batch_size=2, now=NOW)

        # Simulate a concurrent writer: the pre-check sees nothing, the insert collides
        monkeypatch.setattr(
            ScheduleRepository, "get_existing_starts", staticmethod(lambda *_args: set())
        )
        result = Materializer(db).materialize(pattern.id, batch_size=3, now=NOW)

        assert result.skipped == [ny_nine(6), ny_nine(13)]
        assert result.created_count == 1
        assert item_starts(db, pattern.id) == [ny_nine(6), ny_nine(13), ny_nine(20)]

    def test_overlap_with_other_item_only_logs(self, db, make_pattern, service_request, caplog):
        db.add(
            ScheduleItem(
                user_id=service_request.homeowner_id,
                title="Dentist",
                scheduled_start=to_db(ny_nine(6) + timedelta(minutes=30)),
                scheduled_end=to_db(ny_nine(6) + timedelta(hours=1)),
            )
        )
        db.commit()
        pattern = make_pattern()

        result = Materializer(db).materialize(pattern.id, batch_size=1, now=NOW)

        assert result.created_count == 1
        assert "Scheduling conflict" in caplog.text


class TestNotifications:
    def test_one_event_per_created_item(self, db, make_pattern, notifier, sink):
        pattern = make_pattern()
        materializer = Materializer(db, notifier)

        materializer.materialize(pattern.id, batch_size=4, now=NOW)
        materializer.materialize(pattern.id, batch_size=4, now=NOW)

        assert len(sink.events) == 4
        event = sink.events[0]
        assert event.occurrence_instant == ny_nine(6)
        assert event.recipient_id == db.query(ScheduleItem).first().user_id
        assert event.related_schedule_item_id is not None

    def test_sink_failure_does_not_undo_items(self, db, make_pattern):
        from conftest import RecordingSink

        from marketplace.domain.scheduling.notifier import ScheduleNotifier

        pattern = make_pattern()
        materializer = Materializer(db, ScheduleNotifier(RecordingSink(fail=True)))

        result = materializer.materialize(pattern.id, batch_size=2, now=NOW)

        assert result.created_count == 2
        assert db.query(ScheduleItem).count() == 2

    def test_no_events_after_rollback(self, db, make_pattern, notifier, sink):
        pattern = make_pattern()

        with pytest.raises(MaterializationCancelled):
            Materializer(db, notifier).materialize(
                pattern.id, now=NOW, should_cancel=lambda: True
            )

        assert sink.events == []


def test_naive_now_is_treated_as_utc(db, make_pattern):
    pattern = make_pattern()

    result = Materializer(db).materialize(pattern.id, batch_size=1, now=datetime(2025, 1, 7))

    assert result.created[0].scheduled_start == to_db(ny_nine(13))
