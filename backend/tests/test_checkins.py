"""
Tests for check-in admission, including cooldown races.
"""

import asyncio
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select, func

from checkin_engine.core.exceptions import AlreadyCheckedIn, VenueNotFound
from checkin_engine.core.security import AnonymousCaller, PermanentCaller
from checkin_engine.models import Checkin, UserProfile, Venue
from checkin_engine.services.checkin_service import (
    DEVICE_COOLDOWN_MESSAGE,
    USER_COOLDOWN_MESSAGE,
    admit,
)


@pytest.mark.asyncio
async def test_check_in(client: AsyncClient, user_headers, venue):
    """Accepted check-in returns the record and the venue name."""
    response = await client.post(
        "/api/v1/check-in",
        json={"venue_id": venue.id},
        headers=user_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["venue_name"] == "The Tap Room"
    assert data["checkin"]["venue_id"] == venue.id
    assert data["checkin"]["user_id"] == "user-1"
    assert data["checkin"]["is_active"] is True


@pytest.mark.asyncio
async def test_check_in_expiry_window(db_session, venue, clock):
    checkin, venue_name = await admit(db_session, venue.id, PermanentCaller("user-1"), now=clock())
    assert venue_name == venue.name
    assert checkin.expires_at - checkin.checked_in_at == timedelta(hours=2)
    assert checkin.is_active_at(clock.now + timedelta(minutes=119))
    assert not checkin.is_active_at(clock.now + timedelta(hours=2))


@pytest.mark.asyncio
async def test_check_in_unauthenticated(client: AsyncClient, venue):
    """Missing bearer token returns 401."""
    response = await client.post("/api/v1/check-in", json={"venue_id": venue.id})
    assert response.status_code == 401
    assert response.json()["kind"] == "NotAuthenticated"


@pytest.mark.asyncio
async def test_check_in_invalid_token(client: AsyncClient, venue):
    response = await client.post(
        "/api/v1/check-in",
        json={"venue_id": venue.id},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_check_in_missing_venue_id(client: AsyncClient, user_headers):
    """Missing venue_id returns 400."""
    response = await client.post("/api/v1/check-in", json={}, headers=user_headers)
    assert response.status_code == 400
    assert response.json()["kind"] == "BadRequest"


@pytest.mark.asyncio
async def test_check_in_unknown_venue(client: AsyncClient, user_headers):
    """Unknown venue returns 404."""
    response = await client.post(
        "/api/v1/check-in",
        json={"venue_id": "no-such-venue"},
        headers=user_headers,
    )
    assert response.status_code == 404
    assert response.json()["kind"] == "VenueNotFound"


@pytest.mark.asyncio
async def test_check_in_overlong_venue_id(client: AsyncClient, user_headers, venue):
    """An id longer than any venue id is just an unknown venue."""
    response = await client.post("/api/v1/check-in", json={"venue_id": "v" * 200}, headers=user_headers)
    assert response.status_code == 404
    assert response.json()["kind"] == "VenueNotFound"


@pytest.mark.asyncio
async def test_check_in_inactive_venue(db_session, closed_venue):
    with pytest.raises(VenueNotFound):
        await admit(db_session, closed_venue.id, PermanentCaller("user-1"))


@pytest.mark.asyncio
async def test_repeat_check_in_rejected(client: AsyncClient, user_headers, venue):
    """Second check-in inside the cooldown returns 429 and adds nothing to the crowd."""
    response1 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    assert response1.status_code == 200

    response2 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    assert response2.status_code == 429
    body = response2.json()
    assert body["kind"] == "AlreadyCheckedIn"
    assert body["error"] == "Already checked in"
    assert body["message"] == USER_COOLDOWN_MESSAGE

    crowd = await client.get(f"/api/v1/venues/{venue.id}/crowd")
    assert crowd.json()["count"] == 1


@pytest.mark.asyncio
async def test_check_in_after_cooldown(client: AsyncClient, user_headers, venue, clock):
    """Once the cooldown has passed the same caller may check in again."""
    response1 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    assert response1.status_code == 200

    clock.advance(minutes=119)
    response2 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    assert response2.status_code == 429

    clock.advance(minutes=2)
    response3 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    assert response3.status_code == 200


@pytest.mark.asyncio
async def test_cooldown_is_per_venue(client: AsyncClient, db_session, user_headers, venue):
    other = Venue(slug="corner-pub", name="Corner Pub")
    db_session.add(other)
    await db_session.commit()
    other_id = other.id

    response1 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    response2 = await client.post("/api/v1/check-in", json={"venue_id": other_id}, headers=user_headers)
    assert response1.status_code == 200
    assert response2.status_code == 200


@pytest.mark.asyncio
async def test_device_cooldown(client: AsyncClient, headers_for, venue):
    """A second account on the same device is rejected; the same account elsewhere is not."""
    response1 = await client.post(
        "/api/v1/check-in",
        json={"venue_id": venue.id, "device_hash": "device-abc"},
        headers=headers_for("user-a"),
    )
    assert response1.status_code == 200

    response2 = await client.post(
        "/api/v1/check-in",
        json={"venue_id": venue.id, "device_hash": "device-abc"},
        headers=headers_for("user-b"),
    )
    assert response2.status_code == 429
    assert response2.json()["message"] == DEVICE_COOLDOWN_MESSAGE

    # The rejected attempt did not consume user-b's own cooldown
    response3 = await client.post(
        "/api/v1/check-in",
        json={"venue_id": venue.id, "device_hash": "device-xyz"},
        headers=headers_for("user-b"),
    )
    assert response3.status_code == 200


@pytest.mark.asyncio
async def test_anonymous_check_in(client: AsyncClient, anonymous_headers, venue):
    """Anonymous callers can check in and are limited by the same cooldown."""
    response1 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=anonymous_headers)
    assert response1.status_code == 200
    assert response1.json()["checkin"]["user_id"] == "anon-1"

    response2 = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=anonymous_headers)
    assert response2.status_code == 429


@pytest.mark.asyncio
async def test_check_in_awards_point(db_session, venue, clock):
    await admit(db_session, venue.id, AnonymousCaller("anon-1"), now=clock())
    clock.advance(hours=3)
    await admit(db_session, venue.id, AnonymousCaller("anon-1"), now=clock())

    profile = await db_session.get(UserProfile, "anon-1", populate_existing=True)
    assert profile.total_points == 2


@pytest.mark.asyncio
async def test_list_my_checkins(client: AsyncClient, headers_for, user_headers, venue, clock):
    """Caller sees their own history, newest first."""
    await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    clock.advance(hours=3)
    await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=headers_for("someone-else"))

    response = await client.get("/api/v1/checkins/me", headers=user_headers)
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 2
    assert data[0]["checked_in_at"] > data[1]["checked_in_at"]
    # Judged at the request's clock: the first visit has expired, the second has not
    assert data[0]["is_active"] is True
    assert data[1]["is_active"] is False


@pytest.mark.asyncio
async def test_list_venue_checkins(client: AsyncClient, headers_for, venue):
    for i in range(3):
        await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=headers_for(f"guest-{i}"))

    response = await client.get(f"/api/v1/venues/{venue.id}/checkins", params={"limit": 2})
    assert response.status_code == 200
    assert len(response.json()) == 2


@pytest.mark.asyncio
async def test_concurrent_double_tap(session_factory, venue, clock):
    """Two simultaneous check-ins by one caller: exactly one is accepted."""
    caller = PermanentCaller("user-1")
    now = clock()

    async def attempt():
        async with session_factory() as session:
            return await admit(session, venue.id, caller, now=now)

    results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

    accepted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, AlreadyCheckedIn)]
    assert len(accepted) == 1
    assert len(rejected) == 1

    async with session_factory() as session:
        total = await session.scalar(select(func.count()).select_from(Checkin))
    assert total == 1


@pytest.mark.asyncio
async def test_concurrent_shared_device(session_factory, venue, clock):
    """Two accounts on one device at the same moment: exactly one is accepted."""
    now = clock()

    async def attempt(user_id):
        async with session_factory() as session:
            return await admit(session, venue.id, PermanentCaller(user_id), device_fingerprint="shared", now=now)

    results = await asyncio.gather(attempt("user-a"), attempt("user-b"), return_exceptions=True)
    assert sum(1 for r in results if isinstance(r, AlreadyCheckedIn)) == 1
