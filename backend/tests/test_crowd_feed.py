"""
Tests for live crowd deltas: subscription bookkeeping, publish, and expiry sweeps.
"""

import asyncio
import json
from contextlib import suppress
from datetime import timedelta

import pytest
import pytest_asyncio

from checkin_engine import main
from checkin_engine.core.clock import get_clock
from checkin_engine.core.security import PermanentCaller
from checkin_engine.db.session import get_session_factory
from checkin_engine.infrastructure.crowd_feed import CrowdFeed, crowd_feed
from checkin_engine.schemas.crowd import CrowdLevel
from checkin_engine.services.checkin_service import admit


@pytest.mark.asyncio
async def test_subscriber_receives_deltas():
    feed = CrowdFeed()
    subscription = feed.subscribe("venue-1", snapshot_count=5)

    assert feed.dispatch("venue-1", +1) == 1
    update = await asyncio.wait_for(subscription.next_update(), timeout=1)
    assert update.count == 6
    assert update.delta == 1
    assert update.level == CrowdLevel.GETTING_BUSY

    feed.dispatch("venue-1", -1)
    update = await asyncio.wait_for(subscription.next_update(), timeout=1)
    assert update.count == 5
    assert update.level == CrowdLevel.CHILL


@pytest.mark.asyncio
async def test_count_never_goes_negative():
    feed = CrowdFeed()
    subscription = feed.subscribe("venue-1", snapshot_count=1)

    feed.dispatch("venue-1", -1)
    feed.dispatch("venue-1", -1)
    first = await subscription.next_update()
    second = await subscription.next_update()
    assert first.count == 0
    assert second.count == 0
    assert second.level == CrowdLevel.EMPTY


@pytest.mark.asyncio
async def test_deltas_are_scoped_to_venue():
    feed = CrowdFeed()
    watching = feed.subscribe("venue-1", snapshot_count=0)

    assert feed.dispatch("venue-2", +1) == 0
    assert watching.queue.empty()


@pytest.mark.asyncio
async def test_unsubscribe_on_exit():
    feed = CrowdFeed()
    async with feed.subscribe("venue-1", snapshot_count=0):
        assert feed.subscriber_count("venue-1") == 1
    assert feed.subscriber_count("venue-1") == 0
    assert feed.subscribed_venues() == []


@pytest.mark.asyncio
async def test_publish_without_redis_dispatches_locally():
    """REDIS_ENABLED is off in tests, so publish falls back to in-process delivery."""
    feed = CrowdFeed()
    subscription = feed.subscribe("venue-1", snapshot_count=2)

    await feed.publish("venue-1", +1)
    update = await asyncio.wait_for(subscription.next_update(), timeout=1)
    assert update.count == 3


@pytest.mark.asyncio
async def test_checkin_endpoint_publishes(client, user_headers, venue):
    async with crowd_feed.subscribe(venue.id, snapshot_count=0) as subscription:
        response = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
        assert response.status_code == 200
        update = await asyncio.wait_for(subscription.next_update(), timeout=1)
    assert update.delta == 1
    assert update.count == 1


@pytest.mark.asyncio
async def test_rejected_checkin_publishes_nothing(client, user_headers, venue):
    await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    async with crowd_feed.subscribe(venue.id, snapshot_count=1) as subscription:
        response = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
        assert response.status_code == 429
        assert subscription.queue.empty()


@pytest.mark.asyncio
async def test_sweep_emits_minus_one_per_expiry(db_session, session_factory, venue, clock):
    start = clock()
    await admit(db_session, venue.id, PermanentCaller("user-1"), now=start)
    await admit(db_session, venue.id, PermanentCaller("user-2"), now=start)
    await db_session.commit()

    feed = CrowdFeed()
    subscription = feed.subscribe(venue.id, snapshot_count=2)

    expiry = start + timedelta(hours=2)
    assert await feed.sweep_once(session_factory, start, expiry - timedelta(seconds=1)) == 0
    assert await feed.sweep_once(session_factory, expiry - timedelta(seconds=1), expiry) == 2

    first = await subscription.next_update()
    second = await subscription.next_update()
    assert (first.count, second.count) == (1, 0)

    # Next window is past the expiry, so nothing is counted twice
    assert await feed.sweep_once(session_factory, expiry, expiry + timedelta(minutes=5)) == 0


@pytest.mark.asyncio
async def test_sweep_skips_unwatched_venues(db_session, session_factory, venue, clock):
    start = clock()
    await admit(db_session, venue.id, PermanentCaller("user-1"), now=start)
    await db_session.commit()

    feed = CrowdFeed()
    assert await feed.sweep_once(session_factory, start, start + timedelta(hours=3)) == 0


@pytest.mark.asyncio
async def test_relayed_messages_reach_subscribers():
    """Pub/sub payloads from other instances are dispatched; malformed ones are dropped."""
    feed = CrowdFeed()
    subscription = feed.subscribe("venue-1", snapshot_count=0)

    feed._relay('{"venue_id": "venue-1", "delta": 1}')
    feed._relay("not json")
    feed._relay('{"venue_id": "venue-1"}')

    update = await subscription.next_update()
    assert update.count == 1
    assert subscription.queue.empty()


@pytest.mark.asyncio
async def test_late_subscriber_skips_expiries_already_in_snapshot(db_session, session_factory, venue, clock):
    """An expiry between the last sweep and a display's snapshot is not sent to that display."""
    start = clock()
    await admit(db_session, venue.id, PermanentCaller("user-1"), now=start)
    await admit(db_session, venue.id, PermanentCaller("user-2"), now=start + timedelta(minutes=30))
    await db_session.commit()

    feed = CrowdFeed()
    watermark = start + timedelta(hours=1)
    early = feed.subscribe(venue.id, snapshot_count=2, snapshot_at=watermark)

    # First check-in has expired by the time the late display takes its snapshot
    snapshot_at = start + timedelta(hours=2, minutes=5)
    late = feed.subscribe(venue.id, snapshot_count=1, snapshot_at=snapshot_at)

    sweep_until = start + timedelta(hours=2, minutes=10)
    assert await feed.sweep_once(session_factory, watermark, sweep_until) == 1
    assert (await early.next_update()).count == 1
    assert late.queue.empty()
    assert late.count == 1

    assert await feed.sweep_once(session_factory, sweep_until, start + timedelta(hours=3)) == 2
    assert (await early.next_update()).count == 0
    assert (await late.next_update()).count == 0


class FakePubSub:
    def __init__(self, redis):
        self.redis = redis

    async def psubscribe(self, pattern):
        self.redis.patterns.append(pattern)
        self.redis.subscribed.set()

    async def listen(self):
        while True:
            yield await self.redis.messages.get()

    async def aclose(self):
        pass


class FakeRedis:
    """Just enough of a Redis client for one instance to hear its own publishes."""

    def __init__(self):
        self.messages: asyncio.Queue = asyncio.Queue()
        self.subscribed = asyncio.Event()
        self.patterns = []

    def pubsub(self):
        return FakePubSub(self)

    async def publish(self, channel, data):
        await self.messages.put({"type": "pmessage", "channel": channel, "data": data})
        return 1


@pytest.mark.asyncio
async def test_listen_waits_for_redis_then_relays():
    fake = FakeRedis()
    answers = [None, None]

    async def get_client():
        return answers.pop(0) if answers else fake

    feed = CrowdFeed(get_client=get_client)
    subscription = feed.subscribe("venue-1", snapshot_count=0)
    listener = asyncio.create_task(feed.listen(reconnect_delay=0.01))
    try:
        await asyncio.wait_for(fake.subscribed.wait(), timeout=1)
        assert not listener.done()
        assert fake.patterns == ["crowd:feed:*"]

        await feed.publish("venue-1", +1)
        update = await asyncio.wait_for(subscription.next_update(), timeout=1)
    finally:
        listener.cancel()
        with suppress(asyncio.CancelledError):
            await listener

    assert update.count == 1
    assert subscription.queue.empty()


@pytest.mark.asyncio
async def test_relay_starts_when_redis_is_down_at_startup(monkeypatch):
    """Redis coming back after boot must not strand local subscribers."""
    fake = FakeRedis()
    redis_up = asyncio.Event()

    async def get_client():
        return fake if redis_up.is_set() else None

    monkeypatch.setattr(main.settings, "REDIS_ENABLED", True)
    monkeypatch.setattr(main, "get_redis", get_client)
    monkeypatch.setattr(crowd_feed, "_get_client", get_client)

    async with main.lifespan(main.app):
        async with crowd_feed.subscribe("venue-x", snapshot_count=0) as subscription:
            redis_up.set()
            await asyncio.wait_for(fake.subscribed.wait(), timeout=5)

            await crowd_feed.publish("venue-x", +1)
            update = await asyncio.wait_for(subscription.next_update(), timeout=1)

    assert update.count == 1


class StreamConnection:
    """Drives the app's websocket route in-process over raw ASGI messages."""

    def __init__(self, path: str):
        self.to_app: asyncio.Queue = asyncio.Queue()
        self.from_app: asyncio.Queue = asyncio.Queue()
        scope = {
            "type": "websocket",
            "asgi": {"version": "3.0"},
            "scheme": "ws",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"test")],
            "client": ("testclient", 50000),
            "server": ("test", 80),
            "subprotocols": [],
        }
        self.task = asyncio.create_task(main.app(scope, self.to_app.get, self.from_app.put))

    async def connect(self):
        await self.to_app.put({"type": "websocket.connect"})
        message = await asyncio.wait_for(self.from_app.get(), timeout=1)
        assert message["type"] == "websocket.accept"

    async def receive_json(self):
        message = await asyncio.wait_for(self.from_app.get(), timeout=1)
        assert message["type"] == "websocket.send"
        return json.loads(message["text"])

    async def receive_close(self):
        message = await asyncio.wait_for(self.from_app.get(), timeout=1)
        assert message["type"] == "websocket.close"
        return message

    async def disconnect(self):
        await self.to_app.put({"type": "websocket.disconnect", "code": 1000})
        await asyncio.wait_for(self.task, timeout=1)


@pytest_asyncio.fixture
async def open_stream(session_factory, clock):
    main.app.dependency_overrides[get_session_factory] = lambda: session_factory
    main.app.dependency_overrides[get_clock] = lambda: clock
    connections = []

    async def _open(venue_id):
        connection = StreamConnection(f"/api/v1/venues/{venue_id}/crowd/stream")
        connections.append(connection)
        await connection.connect()
        return connection

    yield _open

    for connection in connections:
        if not connection.task.done():
            connection.task.cancel()
            with suppress(asyncio.CancelledError):
                await connection.task
    main.app.dependency_overrides.clear()


async def wait_for_subscribers(venue_id, expected):
    for _ in range(100):
        if crowd_feed.subscriber_count(venue_id) == expected:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {expected} subscribers, have {crowd_feed.subscriber_count(venue_id)}")


@pytest.mark.asyncio
async def test_crowd_stream_snapshot_then_delta(client, user_headers, venue, open_stream):
    stream = await open_stream(venue.id)

    snapshot = await stream.receive_json()
    assert snapshot["venue_id"] == venue.id
    assert snapshot["count"] == 0
    assert snapshot["level"] == CrowdLevel.EMPTY.value

    await wait_for_subscribers(venue.id, 1)
    response = await client.post("/api/v1/check-in", json={"venue_id": venue.id}, headers=user_headers)
    assert response.status_code == 200

    update = await stream.receive_json()
    assert update["delta"] == 1
    assert update["count"] == 1
    assert update["level"] == CrowdLevel.CHILL.value

    await stream.disconnect()


@pytest.mark.asyncio
async def test_crowd_stream_unsubscribes_on_disconnect(venue, open_stream):
    """A display that goes away at a quiet venue is dropped without waiting for a delta."""
    stream = await open_stream(venue.id)
    await stream.receive_json()
    await wait_for_subscribers(venue.id, 1)

    await stream.disconnect()

    assert crowd_feed.subscriber_count(venue.id) == 0
    assert venue.id not in crowd_feed.subscribed_venues()


@pytest.mark.asyncio
async def test_crowd_stream_unknown_venue(open_stream):
    stream = await open_stream("no-such-venue")

    error = await stream.receive_json()
    assert error["kind"] == "VenueNotFound"
    close = await stream.receive_close()
    assert close["code"] == 1008
    await asyncio.wait_for(stream.task, timeout=1)
    assert crowd_feed.subscriber_count("no-such-venue") == 0
