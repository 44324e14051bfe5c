"""
Crowd level derived from currently valid check-ins.

A check-in counts while `now < expires_at`. The count is always recomputed
from the checkins table; nothing is incremented in process.
"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_engine.models.checkin import Checkin
from checkin_engine.core.clock import utc_now
from checkin_engine.core.exceptions import StorageFailure
from checkin_engine.core.logging import get_logger
from checkin_engine.schemas.crowd import CrowdLevel, CrowdLevelResponse

logger = get_logger(__name__)

# Upper bound (inclusive) of each band; anything above the last is PACKED
CROWD_BANDS = (
    (0, CrowdLevel.EMPTY),
    (5, CrowdLevel.CHILL),
    (15, CrowdLevel.GETTING_BUSY),
    (30, CrowdLevel.BUSY),
)


def crowd_level_for(count: int) -> CrowdLevel:
    for upper, level in CROWD_BANDS:
        if count <= upper:
            return level
    return CrowdLevel.PACKED


async def count_active_checkins(db: AsyncSession, venue_id: str, now: datetime) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Checkin)
        .where(Checkin.venue_id == venue_id, Checkin.expires_at > now)
    )
    return result.scalar() or 0


async def get_crowd_level(db: AsyncSession, venue_id: str, now: Optional[datetime] = None) -> CrowdLevelResponse:
    """Recount the venue's valid check-ins and band them."""
    now = now or utc_now()
    try:
        count = await count_active_checkins(db, venue_id, now)
    except (SQLAlchemyError, TimeoutError) as e:
        logger.error("crowd_count_failed", venue_id=venue_id, error=str(e))
        raise StorageFailure()

    return CrowdLevelResponse(venue_id=venue_id, count=count, level=crowd_level_for(count))


async def expired_between(
    db: AsyncSession,
    venue_ids: Iterable[str],
    since: datetime,
    until: datetime,
) -> list[tuple[str, datetime]]:
    """
    (venue_id, expires_at) for every check-in whose expiry fell in (since, until].
    One entry per check-in, so a venue can appear several times.
    """
    venue_ids = list(venue_ids)
    if not venue_ids:
        return []

    result = await db.execute(
        select(Checkin.venue_id, Checkin.expires_at)
        .where(
            Checkin.venue_id.in_(venue_ids),
            Checkin.expires_at > since,
            Checkin.expires_at <= until,
        )
        .order_by(Checkin.expires_at)
    )
    return [(venue_id, expires_at) for venue_id, expires_at in result.all()]
