from __future__ import annotations
import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from ..core.policy import OPEN_VENUE_STATUSES
from ..models import Venue, VenueSecret

async def get_venue(db: AsyncSession, venue_id: uuid.UUID) -> Venue | None:
    return (await db.execute(select(Venue).where(Venue.id == venue_id))).scalar_one_or_none()

async def get_venue_secret(db: AsyncSession, venue_id: uuid.UUID) -> str | None:
    # newest active key wins; issuing and rotating keys happens out of band
    row = (await db.execute(
        select(VenueSecret)
        .where(VenueSecret.venue_id == venue_id, VenueSecret.is_active == True)
        .order_by(VenueSecret.created_at.desc())
    )).scalars().first()
    return row.secret_key if row else None

def is_open_for_checkin(venue: Venue) -> bool:
    status = venue.status.value if hasattr(venue.status, "value") else str(venue.status)
    return status in OPEN_VENUE_STATUSES
