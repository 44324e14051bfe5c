"""
Check-in endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_engine.db.session import get_db
from checkin_engine.schemas.checkin import CheckinCreate, CheckinResponse, CheckinResult
from checkin_engine.services.checkin_service import admit, get_caller_checkins
from checkin_engine.services.cache_service import invalidate_crowd_cache
from checkin_engine.infrastructure.crowd_feed import crowd_feed
from checkin_engine.core.clock import Clock, get_clock
from checkin_engine.core.exceptions import BadRequest
from checkin_engine.core.security import CallerIdentity, get_current_caller
from checkin_engine.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["Check-ins"])


@router.post("/check-in", response_model=CheckinResult)
async def check_in(
    checkin_data: CheckinCreate,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Check in at a venue.

    At most one check-in per caller, and per device when a device hash is
    sent, per venue every two hours. Repeats inside the window get 429.
    """
    if not checkin_data.venue_id:
        raise BadRequest("venue_id is required")

    now = clock()
    checkin, venue_name = await admit(
        db,
        checkin_data.venue_id,
        caller,
        device_fingerprint=checkin_data.device_hash,
        now=now,
    )

    # Crowd level changed: drop the cached read and push the delta
    await invalidate_crowd_cache(checkin.venue_id)
    await crowd_feed.publish(checkin.venue_id, +1)

    return CheckinResult(checkin=CheckinResponse.at(checkin, now), venue_name=venue_name)


@router.get("/checkins/me", response_model=list[CheckinResponse])
async def list_my_checkins(
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Get the caller's check-in history, newest first."""
    checkins = await get_caller_checkins(db, caller.subject_id)
    now = clock()
    return [CheckinResponse.at(checkin, now) for checkin in checkins]
