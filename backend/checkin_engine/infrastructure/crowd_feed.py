"""
Live crowd level deltas for subscribed displays.

This is an optimization path on top of the pull-based recount: a display
takes a snapshot once, then applies +1/-1 deltas instead of polling.

  - Admission publishes +1. With Redis the delta goes out on the
    `crowd:feed:{venue_id}` channel so every instance's subscribers see it;
    without Redis it is dispatched in-process.
  - Expiry produces -1. Every instance reads the same checkins table, so
    each one runs its own sweeper and dispatches -1 to local subscribers only.

A subscription remembers when its snapshot was taken; expiries at or before
that moment are already missing from the snapshot and are not sent again.
Subscriber counts are floored at zero. Any drift is corrected the next
time the display takes a fresh snapshot.
"""

import asyncio
import json
from collections import defaultdict
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkin_engine.core.clock import Clock, utc_now
from checkin_engine.core.logging import get_logger
from checkin_engine.core.metrics import crowd_subscribers, redis_connection_errors
from checkin_engine.schemas.crowd import CrowdUpdate
from checkin_engine.services.cache_service import get_redis
from checkin_engine.services.crowd_service import crowd_level_for, expired_between

logger = get_logger(__name__)

CHANNEL_PREFIX = "crowd:feed:"


class CrowdSubscription:
    """One display's view of a venue: a running count fed by deltas."""

    def __init__(self, feed: "CrowdFeed", venue_id: str, count: int, snapshot_at: Optional[datetime] = None):
        self.feed = feed
        self.venue_id = venue_id
        self.count = max(0, count)
        self.snapshot_at = snapshot_at
        self.queue: asyncio.Queue[int] = asyncio.Queue()

    def counts_expiry(self, expires_at: datetime) -> bool:
        return self.snapshot_at is None or expires_at > self.snapshot_at

    def apply(self, delta: int) -> CrowdUpdate:
        self.count = max(0, self.count + delta)
        return CrowdUpdate(
            venue_id=self.venue_id,
            delta=delta,
            count=self.count,
            level=crowd_level_for(self.count),
        )

    async def next_update(self) -> CrowdUpdate:
        delta = await self.queue.get()
        return self.apply(delta)

    def __aiter__(self) -> AsyncIterator[CrowdUpdate]:
        return self._updates()

    async def _updates(self) -> AsyncIterator[CrowdUpdate]:
        while True:
            yield await self.next_update()

    async def __aenter__(self) -> "CrowdSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.feed.unsubscribe(self)


class CrowdFeed:
    def __init__(self, get_client: Callable[[], Awaitable[Optional[Redis]]] = get_redis):
        self._get_client = get_client
        self._subscriptions: dict[str, set[CrowdSubscription]] = defaultdict(set)

    def subscribe(
        self,
        venue_id: str,
        snapshot_count: int,
        snapshot_at: Optional[datetime] = None,
    ) -> CrowdSubscription:
        subscription = CrowdSubscription(self, venue_id, snapshot_count, snapshot_at)
        self._subscriptions[venue_id].add(subscription)
        crowd_subscribers.inc()
        logger.debug("crowd_subscribed", venue_id=venue_id, count=snapshot_count)
        return subscription

    def unsubscribe(self, subscription: CrowdSubscription) -> None:
        subscribers = self._subscriptions.get(subscription.venue_id)
        if not subscribers or subscription not in subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.venue_id]
        crowd_subscribers.dec()

    def subscribed_venues(self) -> list[str]:
        return list(self._subscriptions)

    def subscriber_count(self, venue_id: str) -> int:
        return len(self._subscriptions.get(venue_id, ()))

    def dispatch(self, venue_id: str, delta: int) -> int:
        """Hand a delta to this instance's subscribers. Returns how many received it."""
        subscribers = self._subscriptions.get(venue_id, ())
        for subscription in subscribers:
            subscription.queue.put_nowait(delta)
        return len(subscribers)

    def dispatch_expiry(self, venue_id: str, expires_at: datetime) -> int:
        """Send -1 to subscribers whose snapshot still counted this check-in."""
        delivered = 0
        for subscription in self._subscriptions.get(venue_id, ()):
            if subscription.counts_expiry(expires_at):
                subscription.queue.put_nowait(-1)
                delivered += 1
        return delivered

    async def publish(self, venue_id: str, delta: int) -> None:
        """Broadcast a delta to every instance, or locally when Redis is off."""
        client = await self._get_client()
        if client is None:
            self.dispatch(venue_id, delta)
            return

        try:
            await client.publish(f"{CHANNEL_PREFIX}{venue_id}", json.dumps({"venue_id": venue_id, "delta": delta}))
        except Exception as e:
            # Fail open: local subscribers still get the delta
            redis_connection_errors.inc()
            logger.error("crowd_publish_failed", venue_id=venue_id, error=str(e))
            self.dispatch(venue_id, delta)

    async def listen(self, reconnect_delay: float = 1.0) -> None:
        """Relay deltas published by any instance to local subscribers. Runs until cancelled."""
        while True:
            client = await self._get_client()
            if client is None:
                # Redis is down or not up yet; publish falls back to local dispatch meanwhile
                await asyncio.sleep(reconnect_delay)
                continue

            pubsub = client.pubsub()
            try:
                await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
                logger.info("crowd_feed_listening")
                async for message in pubsub.listen():
                    if message.get("type") == "pmessage":
                        self._relay(message["data"])
            except RedisError as e:
                # Deltas published while disconnected are missed until the next snapshot
                redis_connection_errors.inc()
                logger.error("crowd_feed_disconnected", error=str(e))
            finally:
                await pubsub.aclose()
            await asyncio.sleep(reconnect_delay)

    def _relay(self, data) -> None:
        try:
            payload = json.loads(data)
            self.dispatch(payload["venue_id"], int(payload["delta"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("crowd_message_invalid", error=str(e))

    async def sweep_once(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        since: datetime,
        until: datetime,
    ) -> int:
        """
        Emit -1 for each check-in that expired in (since, until] at a watched
        venue. Returns how many -1s were delivered.
        """
        venues = self.subscribed_venues()
        if not venues:
            return 0

        async with session_factory() as db:
            expired = await expired_between(db, venues, since, until)

        delivered = sum(self.dispatch_expiry(venue_id, expires_at) for venue_id, expires_at in expired)
        if expired:
            logger.debug("crowd_expiries_dispatched", expired=len(expired), delivered=delivered)
        return delivered

    async def run_expiry_sweeper(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval: float,
        clock: Optional[Clock] = None,
    ) -> None:
        """Sweep for expiry crossings every `interval` seconds. Runs until cancelled."""
        clock = clock or utc_now
        watermark = clock()
        while True:
            await asyncio.sleep(interval)
            now = clock()
            try:
                await self.sweep_once(session_factory, watermark, now)
            except (SQLAlchemyError, TimeoutError) as e:
                # Keep the watermark so the window is swept again next time
                logger.error("crowd_sweep_failed", error=str(e))
                continue
            watermark = now


crowd_feed = CrowdFeed()
