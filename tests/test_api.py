from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
import httpx
from sqlalchemy.exc import OperationalError

from conftest import TEST_DB, player
from outings import app
from outings.database import engine, init_db

ADMIN_HEADERS = {"X-Admin-Code": "letmein"}
OUTING_BODY = {
    "name": "Blue Ridge Scramble",
    "format_type": "Scramble",
    "start_date": "2026-06-14",
    "end_date": "2026-06-14",
    "status": "open",
    "team_size_min": 2,
    "team_size_max": 4,
    "team_size_exact": 4,
    "max_players": 10,
    "member_only": False,
    "allow_guests": True,
}


@pytest.fixture(autouse=True)
def _cleanup_db(monkeypatch):
    monkeypatch.setattr("outings.routes.ADMIN_CODE", "letmein")
    if TEST_DB.exists():
        TEST_DB.unlink()
    init_db()
    yield
    engine.dispose()
    if TEST_DB.exists():
        TEST_DB.unlink()


@pytest_asyncio.fixture
async def async_client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def _create_outing(client, **overrides) -> dict:
    response = await client.post("/api/outings/admin/events", json={**OUTING_BODY, **overrides}, headers=ADMIN_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


def _team(*names: str) -> list[dict]:
    return [player(name) for name in names]


@pytest.mark.asyncio
async def test_admin_routes_require_code(async_client):
    response = await async_client.post("/api/outings/admin/events", json=OUTING_BODY)
    assert response.status_code == 403
    assert response.json() == {"error": "Admin code required"}

    response = await async_client.get("/api/outings/admin/events", headers={"X-Admin-Code": "wrong"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_create_validates_config(async_client):
    response = await async_client.post(
        "/api/outings/admin/events",
        json={**OUTING_BODY, "team_size_exact": 6},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "team_size_exact cannot exceed team_size_max"

    created = await _create_outing(async_client)
    duplicate = await async_client.post("/api/outings/admin/events", json=OUTING_BODY, headers=ADMIN_HEADERS)
    assert duplicate.status_code == 409

    updated = await async_client.put(
        f"/api/outings/admin/events/{created['id']}",
        json={"status": "closed"},
        headers=ADMIN_HEADERS,
    )
    assert updated.status_code == 200
    assert updated.json()["status"] == "closed"


@pytest.mark.asyncio
async def test_register_and_list(async_client):
    outing = await _create_outing(async_client)
    assert outing["rule_summary"].startswith("Exact team size: 4 | Guests allowed")

    response = await async_client.post(
        f"/api/outings/{outing['id']}/register",
        json={"mode": "full_team", "players": _team("Avery", "Blake", "Casey", "Drew")},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["ok"] is True
    assert body["registration"]["status"] == "registered"
    assert body["event"]["teams"][0]["status"] == "active"

    listing = await async_client.get("/api/outings")
    assert listing.status_code == 200
    [summary] = listing.json()
    assert summary["metrics"]["players"] == 4
    assert summary["spots_remaining_players"] == 6
    assert "teams" not in summary


@pytest.mark.asyncio
async def test_register_rejections_name_the_rule(async_client):
    outing = await _create_outing(async_client)
    url = f"/api/outings/{outing['id']}/register"

    response = await async_client.post(url, json={"mode": "single", "players": _team("Avery", "Blake")})
    assert response.status_code == 400
    assert response.json() == {"error": "Single/partner/team-seeker modes require exactly one player"}

    response = await async_client.post(url, json={"mode": "member_guest", "players": _team("Avery")})
    assert response.status_code == 400
    assert response.json()["error"] == "Signup mode 'member_guest' is not allowed for this event"

    missing = await async_client.post("/api/outings/9999/register", json={"mode": "single", "players": _team("Avery")})
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_capacity_signal_then_waitlist(async_client):
    outing = await _create_outing(async_client)
    url = f"/api/outings/{outing['id']}/register"
    for names in (("Avery", "Blake", "Casey", "Drew"), ("Eden", "Finley", "Gray", "Harper")):
        assert (await async_client.post(url, json={"mode": "full_team", "players": _team(*names)})).status_code == 201

    late = ("Indy", "Jules", "Kai", "Lane")
    response = await async_client.post(url, json={"mode": "full_team", "players": _team(*late)})
    assert response.status_code == 409
    assert response.json() == {"error": "Event is full", "can_join_waitlist": True}

    for name in late:
        joined = await async_client.post(f"/api/outings/{outing['id']}/waitlist", json=player(name))
        assert joined.status_code == 201
    again = await async_client.post(f"/api/outings/{outing['id']}/waitlist", json=player("Indy"))
    assert again.status_code == 409

    status = await async_client.get(f"/api/outings/{outing['id']}/status", params={"email": "INDY@example.com"})
    assert status.json()["is_waitlisted"] is True
    assert status.json()["is_registered"] is False


@pytest.mark.asyncio
async def test_edit_and_cancel_by_owner(async_client):
    outing = await _create_outing(async_client)
    created = await async_client.post(
        f"/api/outings/{outing['id']}/register",
        json={"mode": "captain", "players": _team("Avery"), "team_name": "Early Birds"},
    )
    registration_id = created.json()["registration"]["id"]
    registration_url = f"/api/outings/{outing['id']}/registrations/{registration_id}"

    forbidden = await async_client.put(registration_url, json={"requester_email": "blake@example.com"})
    assert forbidden.status_code == 403

    edited = await async_client.put(
        registration_url,
        json={"requester_email": "avery@example.com", "add_players": _team("Blake", "Casey")},
    )
    assert edited.status_code == 200
    [team] = edited.json()["event"]["teams"]
    assert team["name"] == "Early Birds"
    assert team["member_count"] == 3
    assert team["status"] == "incomplete"

    cancelled = await async_client.delete(registration_url, params={"requester_email": "avery@example.com"})
    assert cancelled.status_code == 200
    assert cancelled.json()["event"]["teams"] == []
    repeat = await async_client.delete(registration_url, params={"requester_email": "avery@example.com"})
    assert repeat.status_code == 200
    assert repeat.json()["event"]["metrics"] == cancelled.json()["event"]["metrics"]

    status = await async_client.get(f"/api/outings/{outing['id']}/status", params={"email": "avery@example.com"})
    assert status.json()["is_registered"] is False


@pytest.mark.asyncio
async def test_detail_shows_registrations_to_admin_only(async_client):
    outing = await _create_outing(async_client)
    await async_client.post(
        f"/api/outings/{outing['id']}/register",
        json={"mode": "seeking_partner", "players": _team("Avery")},
    )

    public = await async_client.get(f"/api/outings/{outing['id']}")
    assert public.status_code == 200
    assert "registrations" not in public.json()

    admin = await async_client.get(f"/api/outings/{outing['id']}", headers=ADMIN_HEADERS)
    assert len(admin.json()["registrations"]) == 1
    assert admin.json()["waitlist"] == []

    missing_email = await async_client.get(f"/api/outings/{outing['id']}/status")
    assert missing_email.status_code == 400


@pytest.mark.asyncio
async def test_offset_deadline_is_honoured(async_client):
    eastern = timezone(timedelta(hours=-5))
    closes = (datetime.now(timezone.utc) + timedelta(hours=1)).astimezone(eastern)
    outing = await _create_outing(async_client, signup_close_at=closes.isoformat())

    response = await async_client.post(
        f"/api/outings/{outing['id']}/register",
        json={"mode": "single", "players": _team("Avery")},
    )
    assert response.status_code == 201

    passed = (datetime.now(timezone.utc) - timedelta(minutes=5)).astimezone(eastern)
    updated = await async_client.put(
        f"/api/outings/admin/events/{outing['id']}",
        json={"signup_close_at": passed.isoformat()},
        headers=ADMIN_HEADERS,
    )
    assert updated.status_code == 200
    late = await async_client.post(
        f"/api/outings/{outing['id']}/register",
        json={"mode": "single", "players": _team("Blake")},
    )
    assert late.status_code == 400
    assert late.json() == {"error": "Signup deadline has passed"}


def _database_down(*args, **kwargs):
    raise OperationalError("SELECT 1", {}, Exception("unable to open database file"))


@pytest.mark.asyncio
async def test_store_outage_returns_503(async_client, monkeypatch):
    outing = await _create_outing(async_client)

    monkeypatch.setattr("outings.engine.get_metrics", _database_down)
    response = await async_client.post(
        f"/api/outings/{outing['id']}/register",
        json={"mode": "single", "players": _team("Avery")},
    )
    assert response.status_code == 503
    assert response.json() == {"error": "Outing database is unavailable"}

    monkeypatch.setattr("outings.engine.list_outings", _database_down)
    listing = await async_client.get("/api/outings")
    assert listing.status_code == 503
    assert listing.json() == {"error": "Outing database is unavailable"}
