"""Shared fixtures: in-memory database, seeded users and service requests, recording sink."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

from datetime import datetime

import pytest
from dateutil import tz
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace import models_notification, models_schedule  # noqa: F401
from marketplace.database import Base, enable_sqlite_savepoints
from marketplace.domain.scheduling.notifier import ScheduleNotifier
from marketplace.domain.scheduling.schemas import RecurringScheduleCreate
from marketplace.models import ServiceRequest, User

NEW_YORK = tz.gettz("America/New_York")
UTC = tz.UTC

# Wednesday before the first Monday occurrence used throughout the suite
NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class RecordingSink:
    """Notification sink that keeps every event it receives"""

    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    def __call__(self, event):
        if self.fail:
            raise RuntimeError("transport unavailable")
        self.events.append(event)


@pytest.fixture
def engine():
    # One shared connection: sessions must not hold transactions at the same time
    test_engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    enable_sqlite_savepoints(test_engine)
    Base.metadata.create_all(test_engine)
    yield test_engine
    Base.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    """homeowner, provider, admin and an unrelated homeowner"""
    people = {
        "homeowner": User(email="home@example.com", full_name="Hana Owner", role="homeowner"),
        "provider": User(email="pro@example.com", full_name="Pat Provider", role="provider"),
        "admin": User(email="admin@example.com", full_name="Ada Admin", role="admin"),
        "stranger": User(email="other@example.com", full_name="Sam Other", role="homeowner"),
    }
    db.add_all(people.values())
    db.commit()
    return people


@pytest.fixture
def service_request(db, users):
    request = ServiceRequest(
        homeowner_id=users["homeowner"].id,
        provider_id=users["provider"].id,
        title="Weekly house cleaning",
        description="Kitchen, bathrooms and floors",
        property_address="12 Elm Street",
        scheduled_date=datetime(2025, 1, 6, 14, 0),
        end_date=datetime(2025, 1, 6, 16, 0),
        status="scheduled",
        budget=120.0,
    )
    db.add(request)
    db.commit()
    return request


@pytest.fixture
def seeded_ids(db, users, service_request):
    """Ids of the seeded rows, with the setup session released for other sessions"""
    ids = {name: user.id for name, user in users.items()}
    ids["request"] = service_request.id
    db.close()
    return ids


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return ScheduleNotifier(sink)


@pytest.fixture
def make_create():
    """Build a RecurringScheduleCreate for a weekly Monday 09:00 New York rule"""

    def _make(service_request_id, **rule):
        options = {"freq": "WEEKLY", "dtstart": "2025-01-06T09:00:00", "byweekday": ["MO"]}
        options.update(rule)
        exdates = options.pop("exdates", [])
        return RecurringScheduleCreate(
            serviceRequestId=service_request_id,
            timezone="America/New_York",
            rruleOptions=options,
            exdates=exdates,
        )

    return _make


def ny_nine(day: int, month: int = 1) -> datetime:
    """09:00 New York on the given 2025 date, as UTC"""
    return datetime(2025, month, day, 9, 0, tzinfo=NEW_YORK).astimezone(UTC)
