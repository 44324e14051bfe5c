"""
Venue lookups. Venues are managed elsewhere; this engine only reads them.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from checkin_engine.models.venue import Venue
from checkin_engine.core.exceptions import VenueNotFound


async def get_active_venue(db: AsyncSession, venue_id: str) -> Venue:
    """Get a venue that is accepting check-ins. Raises VenueNotFound otherwise."""
    result = await db.execute(
        select(Venue).where(Venue.id == venue_id, Venue.is_active.is_(True))
    )
    venue = result.scalar_one_or_none()

    if not venue:
        raise VenueNotFound()
    return venue
