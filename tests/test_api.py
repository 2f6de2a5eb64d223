import datetime as dt
import uuid

import pytest
from fastapi.testclient import TestClient

from habit_progress.api import create_app
from habit_progress.config import Settings

THURSDAY = "2024-01-04"


@pytest.fixture
def client(database_url):
    app = create_app(Settings(database_url=database_url))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def headers():
    return {"X-User-Id": str(uuid.uuid4())}


def create_habit(client, headers, **fields):
    payload = {"name": "Read", "frequency": "daily", "goal": 3, "priority": 1}
    payload.update(fields)
    response = client.post("/habits", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_without_user_are_rejected(client):
    response = client.get("/habits")
    assert response.status_code == 401
    assert response.json()["detail"] == "You must be logged in to see your habits."

    assert client.get("/progress", headers={"X-User-Id": "not-a-uuid"}).status_code == 401


def test_create_and_list_habits(client, headers):
    habit = create_habit(client, headers, name="  Journal ", frequency="weekly", goal=2, priority=3)

    listed = client.get("/habits", headers=headers).json()

    assert [h["id"] for h in listed] == [habit["id"]]
    assert listed[0]["name"] == "Journal"
    assert listed[0]["frequency"] == "weekly"
    assert client.get("/habits", headers={"X-User-Id": str(uuid.uuid4())}).json() == []


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "   "},
        {"name": "Read", "goal": 0},
        {"name": "Read", "priority": 4},
        {"name": "Read", "frequency": "monthly"},
    ],
)
def test_invalid_habits_are_rejected(client, headers, payload):
    assert client.post("/habits", json=payload, headers=headers).status_code == 422


def test_adjust_then_flush_reflects_persisted_count(client, headers):
    habit = create_habit(client, headers)
    url = f"/habits/{habit['id']}/adjust"

    assert client.post(url, json={"delta": 1, "date": THURSDAY}, headers=headers).json()["daily"] == 1
    assert client.post(url, json={"delta": 1, "date": THURSDAY}, headers=headers).json()["daily"] == 2
    result = client.post(url, json={"delta": -1, "date": THURSDAY}, headers=headers).json()
    assert result == {"habit_id": habit["id"], "date": THURSDAY, "daily": 1, "applied": True}

    view = client.post("/progress/flush", headers=headers).json()
    assert view["habits"][0]["daily"] == 1

    week = client.get("/progress/week", params={"date": THURSDAY}, headers=headers).json()
    assert week[habit["id"]] == {"daily": 1, "weekly": 1}
    assert client.get("/progress/all-time", headers=headers).json() == {habit["id"]: 1}


def test_decrement_at_zero_is_not_applied(client, headers):
    habit = create_habit(client, headers)

    result = client.post(f"/habits/{habit['id']}/adjust", json={"delta": -1}, headers=headers).json()

    assert result["daily"] == 0
    assert result["applied"] is False


def test_adjust_validates_delta_and_habit(client, headers):
    habit = create_habit(client, headers)

    assert client.post(f"/habits/{habit['id']}/adjust", json={"delta": 2}, headers=headers).status_code == 422
    response = client.post(f"/habits/{uuid.uuid4()}/adjust", json={"delta": 1}, headers=headers)
    assert response.status_code == 404


def test_weekly_habit_progress_view(client, headers):
    habit = create_habit(client, headers, frequency="weekly", goal=4)
    url = f"/habits/{habit['id']}/adjust"
    for day, times in (("2024-01-01", 1), ("2024-01-03", 2), ("2024-01-05", 1)):
        for _ in range(times):
            client.post(url, json={"delta": 1, "date": day}, headers=headers)
    client.post("/progress/flush", headers=headers)

    view = client.get("/progress", params={"date": THURSDAY}, headers=headers).json()

    assert view["date"] == THURSDAY
    assert (view["week_start"], view["week_end"]) == ("2024-01-01", "2024-01-07")
    assert view["state"] == "ready"
    [progress] = view["habits"]
    assert (progress["daily"], progress["weekly"], progress["total"]) == (0, 4, 4)
    assert progress["display"] == 4
    assert progress["goal_met"] is True


def test_archive_habit(client, headers):
    habit = create_habit(client, headers)

    assert client.delete(f"/habits/{habit['id']}", headers=headers).status_code == 204
    assert client.get("/habits", headers=headers).json() == []
    assert client.delete(f"/habits/{habit['id']}", headers=headers).status_code == 404


def test_progress_defaults_to_today(client, headers):
    create_habit(client, headers)

    view = client.get("/progress", headers=headers).json()

    assert view["date"] == dt.date.today().isoformat()
    assert view["habits"][0]["daily"] == 0


def test_store_outage_maps_to_bad_gateway(fake_repo, headers):
    fake_repo.failing_fetches = True
    app = create_app(Settings(database_url="sqlite://"), repository=fake_repo)

    with TestClient(app) as client:
        response = client.get("/progress", headers=headers)
        assert response.status_code == 502
        assert "offline" in response.json()["detail"]

        fake_repo.failing_fetches = False
        assert client.get("/progress", headers=headers).json()["state"] == "ready"
