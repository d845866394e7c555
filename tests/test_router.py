"""HTTP tests for the /schedule endpoints."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from marketplace.auth import create_access_token
from marketplace.database import get_db
from marketplace.domain.scheduling.router import get_schedule_notifier
from marketplace.main import app


@pytest.fixture
def client(session_factory, notifier):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_schedule_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id, **kwargs):
    return {"Authorization": f"Bearer {create_access_token(user_id, **kwargs)}"}


@pytest.fixture
def first_start():
    """09:00 local, one week from today"""
    return (datetime.now(timezone.utc) + timedelta(days=7)).replace(
        hour=9, minute=0, second=0, microsecond=0, tzinfo=None
    )


@pytest.fixture
def recurring_payload(seeded_ids, first_start):
    return {
        "serviceRequestId": seeded_ids["request"],
        "timezone": "America/New_York",
        "rruleOptions": {"freq": "WEEKLY", "dtstart": first_start.isoformat()},
    }


@pytest.fixture
def pattern(client, seeded_ids, recurring_payload):
    response = client.post(
        "/schedule/recurring", json=recurring_payload, headers=auth(seeded_ids["homeowner"])
    )
    assert response.status_code == 201
    return response.json()


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get("/schedule/recurring")

        assert response.status_code == 401

    def test_malformed_token(self, client):
        response = client.get("/schedule", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert "Invalid token format" in response.json()["detail"]

    def test_expired_token(self, client, seeded_ids):
        headers = auth(seeded_ids["homeowner"], expires_delta=timedelta(minutes=-5))

        response = client.get("/schedule", headers=headers)

        assert response.status_code == 401
        assert response.headers["X-Token-Expired"] == "true"

    def test_unknown_user(self, client, seeded_ids):
        response = client.get("/schedule", headers=auth(9999))

        assert response.status_code == 401


class TestRecurringEndpoints:
    def test_create(self, client, pattern, seeded_ids, first_start, sink):
        assert pattern["serviceRequestId"] == seeded_ids["request"]
        assert pattern["timezone"] == "America/New_York"
        assert pattern["state"] == "active"
        assert pattern["rrulePattern"].startswith(
            f"DTSTART;TZID=America/New_York:{first_start:%Y%m%dT%H%M%S}"
        )
        assert pattern["nextRun"] is not None
        assert len(sink.events) == 4

        items = client.get("/schedule", headers=auth(seeded_ids["homeowner"])).json()
        assert len(items) == 4
        assert all(i["recurrencePatternId"] == pattern["id"] for i in items)
        assert items[0]["title"] == "Weekly house cleaning"

    def test_create_forbidden_for_stranger(self, client, seeded_ids, recurring_payload):
        response = client.post(
            "/schedule/recurring", json=recurring_payload, headers=auth(seeded_ids["stranger"])
        )

        assert response.status_code == 403

    def test_create_with_invalid_rule(self, client, seeded_ids, recurring_payload):
        recurring_payload["rruleOptions"]["freq"] = "FORTNIGHTLY"

        response = client.post(
            "/schedule/recurring", json=recurring_payload, headers=auth(seeded_ids["homeowner"])
        )

        assert response.status_code == 400

    def test_create_with_malformed_body(self, client, seeded_ids):
        response = client.post(
            "/schedule/recurring", json={"rruleOptions": {}}, headers=auth(seeded_ids["homeowner"])
        )

        assert response.status_code == 422

    def test_list_and_get(self, client, pattern, seeded_ids):
        listed = client.get("/schedule/recurring", headers=auth(seeded_ids["admin"])).json()
        assert [p["id"] for p in listed] == [pattern["id"]]

        response = client.get(
            f"/schedule/recurring/{pattern['id']}", headers=auth(seeded_ids["provider"])
        )
        assert response.status_code == 200
        assert response.json()["rrulePattern"] == pattern["rrulePattern"]

    def test_get_missing(self, client, seeded_ids):
        response = client.get("/schedule/recurring/999", headers=auth(seeded_ids["admin"]))

        assert response.status_code == 404

    def test_update(self, client, pattern, seeded_ids):
        response = client.put(
            f"/schedule/recurring/{pattern['id']}",
            json={"rruleOptions": {"interval": 2}, "title": "Every other week"},
            headers=auth(seeded_ids["homeowner"]),
        )

        assert response.status_code == 200
        assert "INTERVAL=2" in response.json()["rrulePattern"]
        assert response.json()["title"] == "Every other week"

    def test_generate_is_idempotent(self, client, pattern, seeded_ids):
        response = client.post(
            f"/schedule/recurring/{pattern['id']}/generate",
            headers=auth(seeded_ids["homeowner"]),
        )

        assert response.status_code == 200
        assert response.json()["created"] == 0
        assert response.json()["skipped"] == 4

    def test_occurrences_preview(self, client, pattern, seeded_ids, first_start):
        response = client.get(
            f"/schedule/recurring/{pattern['id']}/occurrences",
            params={"count": 6},
            headers=auth(seeded_ids["homeowner"]),
        )

        occurrences = response.json()
        assert len(occurrences) == 6
        assert occurrences[0]["localDate"] == first_start.date().isoformat()
        assert occurrences[0]["scheduleItemId"] is not None
        assert occurrences[5]["scheduleItemId"] is None

    def test_delete(self, client, pattern, seeded_ids):
        response = client.delete(
            f"/schedule/recurring/{pattern['id']}",
            params={"deleteFutureItems": "true"},
            headers=auth(seeded_ids["homeowner"]),
        )

        assert response.status_code == 200
        assert response.json()["deletedItems"] == 4
        assert client.get("/schedule", headers=auth(seeded_ids["homeowner"])).json() == []

        missing = client.get(
            f"/schedule/recurring/{pattern['id']}", headers=auth(seeded_ids["homeowner"])
        )
        assert missing.status_code == 404


class TestExceptionEndpoints:
    def test_add_list_and_remove_by_date(self, client, pattern, seeded_ids, first_start):
        headers = auth(seeded_ids["homeowner"])
        url = f"/schedule/recurring/{pattern['id']}/exceptions"
        skipped_day = first_start.date().isoformat()

        created = client.post(url, json={"exceptionDate": skipped_day}, headers=headers)
        assert created.status_code == 201
        assert created.json()["exceptionDate"] == skipped_day
        assert len(client.get("/schedule", headers=headers).json()) == 3

        duplicate = client.post(url, json={"exceptionDate": skipped_day}, headers=headers)
        assert duplicate.status_code == 409

        assert [e["exceptionDate"] for e in client.get(url, headers=headers).json()] == [
            skipped_day
        ]

        removed = client.delete(url, params={"exceptionDate": skipped_day}, headers=headers)
        assert removed.status_code == 200
        assert removed.json()["restoredItems"] == 1
        assert len(client.get("/schedule", headers=headers).json()) == 4

    def test_remove_by_id(self, client, pattern, seeded_ids):
        headers = auth(seeded_ids["homeowner"])
        url = f"/schedule/recurring/{pattern['id']}/exceptions"
        exception = client.post(url, json={"exceptionDate": "2030-01-01"}, headers=headers).json()

        response = client.delete(f"{url}/{exception['id']}", headers=headers)

        assert response.status_code == 200
        assert response.json()["exceptionDate"] == "2030-01-01"
        assert client.delete(f"{url}/{exception['id']}", headers=headers).status_code == 404

    def test_stranger_cannot_add(self, client, pattern, seeded_ids):
        response = client.post(
            f"/schedule/recurring/{pattern['id']}/exceptions",
            json={"exceptionDate": "2030-01-01"},
            headers=auth(seeded_ids["stranger"]),
        )

        assert response.status_code == 403


class TestItemEndpoints:
    item = {
        "title": "Carpet shampoo",
        "scheduledStart": "2030-03-01T15:00:00Z",
        "scheduledEnd": "2030-03-01T17:00:00Z",
        "itemType": "reminder",
    }

    def test_item_crud(self, client, seeded_ids):
        headers = auth(seeded_ids["homeowner"])

        created = client.post("/schedule", json=self.item, headers=headers)
        assert created.status_code == 201
        item_id = created.json()["id"]
        assert created.json()["scheduledStart"].startswith("2030-03-01T15:00:00")

        updated = client.put(f"/schedule/{item_id}", json={"amount": 45.5}, headers=headers)
        assert updated.json()["amount"] == 45.5
        assert updated.json()["title"] == "Carpet shampoo"

        completed = client.post(f"/schedule/{item_id}/complete", headers=headers)
        assert completed.json()["completed"] is True

        assert client.get(f"/schedule/{item_id}", headers=auth(seeded_ids["stranger"])).status_code == 403

        assert client.delete(f"/schedule/{item_id}", headers=headers).status_code == 200
        assert client.get(f"/schedule/{item_id}", headers=headers).status_code == 404

    def test_item_type_is_validated(self, client, seeded_ids):
        response = client.post(
            "/schedule", json={**self.item, "itemType": "meeting"}, headers=auth(seeded_ids["homeowner"])
        )

        assert response.status_code == 422

    def test_end_before_start(self, client, seeded_ids):
        response = client.post(
            "/schedule",
            json={**self.item, "scheduledEnd": "2030-03-01T14:00:00Z"},
            headers=auth(seeded_ids["homeowner"]),
        )

        assert response.status_code == 400

    def test_range(self, client, seeded_ids):
        headers = auth(seeded_ids["homeowner"])
        client.post("/schedule", json=self.item, headers=headers)

        inside = client.get(
            "/schedule/range",
            params={"start": "2030-03-01T00:00:00Z", "end": "2030-03-02T00:00:00Z"},
            headers=headers,
        )
        reversed_range = client.get(
            "/schedule/range",
            params={"start": "2030-03-02T00:00:00Z", "end": "2030-03-01T00:00:00Z"},
            headers=headers,
        )

        assert [i["title"] for i in inside.json()] == ["Carpet shampoo"]
        assert reversed_range.status_code == 400


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}
