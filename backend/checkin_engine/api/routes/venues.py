"""
Venue-scoped reads: live crowd level, recent check-ins, rewards on offer.
"""

import asyncio
from contextlib import suppress
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkin_engine.db.session import get_db, get_session_factory
from checkin_engine.schemas.checkin import CheckinResponse
from checkin_engine.schemas.crowd import CrowdLevelResponse
from checkin_engine.schemas.reward import RewardResponse, RewardWithProgress, UserRewardResponse
from checkin_engine.services.cache_service import get_cached_crowd, set_cached_crowd
from checkin_engine.services.checkin_service import get_recent_venue_checkins
from checkin_engine.services.crowd_service import get_crowd_level
from checkin_engine.services.reward_service import get_venue_rewards_with_progress
from checkin_engine.services.venue_service import get_active_venue
from checkin_engine.infrastructure.crowd_feed import CrowdSubscription, crowd_feed
from checkin_engine.core.clock import Clock, get_clock
from checkin_engine.core.exceptions import CheckinEngineError
from checkin_engine.core.security import CallerIdentity, PermanentCaller, get_optional_caller
from checkin_engine.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/venues", tags=["Venues"])


@router.get("/{venue_id}/crowd", response_model=CrowdLevelResponse)
async def get_crowd_level_endpoint(
    venue_id: str,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Current crowd level at a venue.
    Cached in Redis for a few seconds; a new check-in invalidates it at once.
    """
    cached = await get_cached_crowd(venue_id)
    if cached:
        cached["cached"] = True
        return CrowdLevelResponse(**cached)

    await get_active_venue(db, venue_id)
    crowd = await get_crowd_level(db, venue_id, now=clock())
    await set_cached_crowd(venue_id, crowd.model_dump(mode="json"))
    return crowd


async def _forward_updates(websocket: WebSocket, subscription: CrowdSubscription) -> None:
    async for update in subscription:
        await websocket.send_json(update.model_dump(mode="json"))


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Displays only listen; anything they send is ignored
    while True:
        await websocket.receive_text()


@router.websocket("/{venue_id}/crowd/stream")
async def crowd_stream(
    websocket: WebSocket,
    venue_id: str,
    clock: Clock = Depends(get_clock),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Send the current crowd level, then one message per +1/-1 change."""
    await websocket.accept()

    now = clock()
    try:
        async with session_factory() as db:
            await get_active_venue(db, venue_id)
            snapshot = await get_crowd_level(db, venue_id, now=now)
    except CheckinEngineError as e:
        await websocket.send_json(e.to_dict())
        await websocket.close(code=1008)
        return

    await websocket.send_json(snapshot.model_dump(mode="json"))

    async with crowd_feed.subscribe(venue_id, snapshot.count, snapshot_at=now) as subscription:
        tasks = {
            asyncio.create_task(_forward_updates(websocket, subscription)),
            asyncio.create_task(_wait_for_disconnect(websocket)),
        }
        # Whichever ends first (client gone or send failed) ends the stream
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            with suppress(WebSocketDisconnect):
                task.result()

    logger.info("crowd_stream_closed", venue_id=venue_id)


@router.get("/{venue_id}/checkins", response_model=list[CheckinResponse])
async def list_venue_checkins(
    venue_id: str,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Most recent check-ins at a venue."""
    await get_active_venue(db, venue_id)
    checkins = await get_recent_venue_checkins(db, venue_id, limit)
    now = clock()
    return [CheckinResponse.at(checkin, now) for checkin in checkins]


@router.get("/{venue_id}/rewards", response_model=list[RewardWithProgress])
async def list_venue_rewards(
    venue_id: str,
    caller: Optional[CallerIdentity] = Depends(get_optional_caller),
    db: AsyncSession = Depends(get_db),
):
    """Active rewards at a venue, with the caller's progress when signed in."""
    await get_active_venue(db, venue_id)
    user_id = caller.user_id if isinstance(caller, PermanentCaller) else None
    pairs = await get_venue_rewards_with_progress(db, venue_id, user_id)
    return [
        RewardWithProgress(
            **RewardResponse.model_validate(reward).model_dump(),
            user_reward=UserRewardResponse.model_validate(ledger) if ledger else None,
        )
        for reward, ledger in pairs
    ]
