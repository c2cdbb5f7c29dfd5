from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..models import CheckinRecord, utcnow

logger = logging.getLogger(__name__)

class CheckinAlreadyPassed(Exception):
    """The (venue, user) record is already passed and was left untouched."""

@dataclass
class ScoreBundle:
    code_score: int = 0
    location_score: int = 0
    receipt_score: int = 0
    total_score: int = 0
    passed: bool = False
    code_matched: bool = False
    distance_meters: int | None = None
    distance_band: str | None = None
    accuracy_meters: float | None = None
    user_latitude: float | None = None
    user_longitude: float | None = None
    risk_score: int = 0
    suspicious_speed: bool = False
    inconsistent_accuracy: bool = False

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    try:
        return _INSERTS[dialect]
    except KeyError:
        raise RuntimeError(f"no conditional upsert for dialect {dialect!r}")

async def upsert_checkin(
    db: AsyncSession,
    *,
    venue_id: uuid.UUID,
    user_id: uuid.UUID,
    scores: ScoreBundle,
    verified_at: datetime | None = None,
) -> CheckinRecord:
    """
    Create or update the single record for (venue_id, user_id) in one statement.

    INSERT ... ON CONFLICT DO UPDATE ... WHERE passed = false: the unique
    constraint serialises concurrent attempts and a passed row is never
    rewritten. An empty RETURNING means the row was already passed.
    """
    values = asdict(scores)
    values["verified_at"] = verified_at or utcnow()

    insert = _insert_for(db)
    stmt = insert(CheckinRecord).values(id=uuid.uuid4(), venue_id=venue_id, user_id=user_id, attempts=1, **values)
    set_ = {k: stmt.excluded[k] for k in values}
    set_["attempts"] = CheckinRecord.attempts + 1
    stmt = (
        stmt.on_conflict_do_update(
            index_elements=[CheckinRecord.venue_id, CheckinRecord.user_id],
            set_=set_,
            where=CheckinRecord.passed == False,
        )
        .returning(CheckinRecord)
        .execution_options(populate_existing=True)
    )
    try:
        obj = (await db.execute(stmt)).scalar_one_or_none()
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    if obj is None:
        logger.warning("refused to overwrite passed check-in venue=%s user=%s", venue_id, user_id)
        raise CheckinAlreadyPassed()
    return obj

async def get_checkin(db: AsyncSession, venue_id: uuid.UUID, user_id: uuid.UUID) -> CheckinRecord | None:
    return (await db.execute(
        select(CheckinRecord).where(CheckinRecord.venue_id == venue_id, CheckinRecord.user_id == user_id)
        .execution_options(populate_existing=True)
    )).scalar_one_or_none()

async def last_fix_for_user(db: AsyncSession, user_id: uuid.UUID) -> CheckinRecord | None:
    """Most recent record of this user (any venue) that carries coordinates."""
    return (await db.execute(
        select(CheckinRecord)
        .where(CheckinRecord.user_id == user_id, CheckinRecord.user_latitude.is_not(None))
        .order_by(CheckinRecord.verified_at.desc())
        .limit(1)
    )).scalar_one_or_none()

async def list_for_venue(db: AsyncSession, venue_id: uuid.UUID) -> list[CheckinRecord]:
    rows = await db.execute(
        select(CheckinRecord).where(CheckinRecord.venue_id == venue_id).order_by(CheckinRecord.verified_at.asc())
    )
    return list(rows.scalars().all())

async def list_for_user(db: AsyncSession, user_id: uuid.UUID) -> list[CheckinRecord]:
    rows = await db.execute(
        select(CheckinRecord).where(CheckinRecord.user_id == user_id).order_by(CheckinRecord.verified_at.desc())
    )
    return list(rows.scalars().all())
