"""
Presence verification: turns a rotating code, a location fix and (eventually)
a receipt into one pass/fail verdict per (venue, user).

A request moves strictly forward through
Received -> CodeChecked -> LocationChecked -> Scored -> Persisted -> Passed | Pending.
The only state shared between requests is the replay guard and the check-in
record; both are written with atomic operations.
"""
from __future__ import annotations
import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.geo import Coordinates, FieldError, LocationScore, round_coordinate, score_location, validate_coordinates
from ..core.policy import (
    CODE_DIGITS,
    DEFAULT_MAX_DISTANCE_METERS,
    MAX_CODE_SCORE,
    PASS_THRESHOLD,
    SUCCESS_BADGE_SCORE,
)
from ..core.replay import ReplayGuard, ReplayGuardUnavailable
from ..core.spoofing import RiskAssessment, assess_risk
from ..core.totp import CodeCheck, verify_code
from ..models import CheckinRecord, Venue
from .checkins import CheckinAlreadyPassed, ScoreBundle, get_checkin, last_fix_for_user, upsert_checkin
from .venues import get_venue, get_venue_secret, is_open_for_checkin

logger = logging.getLogger(__name__)

Publisher = Callable[[dict], Awaitable[Any]]

PUBLISH_TIMEOUT_SECONDS = 1.0
_CODE_RE = re.compile(r"^\d{%d}$" % CODE_DIGITS)

# --- error taxonomy

class VerificationError(Exception):
    pass

class InvalidCheckinInput(VerificationError):
    def __init__(self, errors: List[FieldError]):
        super().__init__("invalid check-in input")
        self.errors = errors

class VenueNotFound(VerificationError):
    pass

class VenueNotOpen(VerificationError):
    pass

class AlreadyVerified(VerificationError):
    def __init__(self, record: CheckinRecord | None):
        super().__init__("already verified")
        self.record = record

class CodeAlreadyUsed(VerificationError):
    pass

class StoreUnavailable(VerificationError):
    """Retryable: a backing store could not be read or written."""

# --- outcome

class VerificationState(str, Enum):
    RECEIVED = "received"
    CODE_CHECKED = "code_checked"
    LOCATION_CHECKED = "location_checked"
    SCORED = "scored"
    PERSISTED = "persisted"
    PASSED = "passed"
    PENDING = "pending"

@dataclass
class VerificationOutcome:
    venue: Venue
    record: CheckinRecord
    code_score: int
    location_score: int
    receipt_score: int
    total: int
    passed: bool
    state: VerificationState
    threshold: int = PASS_THRESHOLD
    code: Optional[CodeCheck] = None
    location: Optional[LocationScore] = None
    risk: RiskAssessment = field(default_factory=RiskAssessment)

def summarize(total: int, passed: bool) -> tuple[str, str]:
    """(badge, message) shown to the user."""
    if passed and total >= SUCCESS_BADGE_SCORE:
        return "success", f"Verified with {total} points."
    if passed:
        return "partial", f"Verified with {total} points. Add another proof for a bonus."
    return "fail", f"{total} points - {PASS_THRESHOLD} needed. Try again on site."

def _validate_input(
    latitude: Any, longitude: Any, accuracy: Any, code: Optional[str]
) -> List[FieldError]:
    errors: List[FieldError] = []
    if latitude is not None or longitude is not None:
        if latitude is None:
            errors.append(FieldError("latitude", "Latitude is required when longitude is given"))
        if longitude is None:
            errors.append(FieldError("longitude", "Longitude is required when latitude is given"))
        if latitude is not None and longitude is not None:
            errors.extend(validate_coordinates(latitude, longitude, accuracy).errors)
    elif accuracy is not None:
        errors.append(FieldError("accuracy", "GPS accuracy requires coordinates"))
    if code is not None and not (isinstance(code, str) and _CODE_RE.match(code)):
        errors.append(FieldError("code", f"Code must be exactly {CODE_DIGITS} digits"))
    return errors

def _as_unix(dt: datetime) -> float:
    # SQLite hands datetimes back naive; they were written as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()

async def _emit_passed(publish: Publisher | None, record: CheckinRecord) -> None:
    if publish is None:
        return
    evt = {
        "venue_id": str(record.venue_id),
        "user_id": str(record.user_id),
        "total_score": record.total_score,
        "verified_at": datetime.fromtimestamp(_as_unix(record.verified_at), tz=timezone.utc)
        .isoformat().replace("+00:00", "Z"),
        "idempotency_key": f"{record.venue_id}:{record.user_id}",
    }
    try:
        await asyncio.wait_for(publish(evt), timeout=PUBLISH_TIMEOUT_SECONDS)
    except Exception:
        # the verdict is already persisted; downstream rewards can catch up
        logger.warning("verification.passed publish failed venue=%s user=%s", record.venue_id, record.user_id, exc_info=True)

async def verify_presence(
    db: AsyncSession,
    replay_guard: ReplayGuard,
    *,
    venue_id: uuid.UUID,
    user_id: uuid.UUID,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    accuracy: Optional[float] = None,
    code: Optional[str] = None,
    publish: Publisher | None = None,
    default_max_distance: float = DEFAULT_MAX_DISTANCE_METERS,
    now: Optional[float] = None,
) -> VerificationOutcome:
    ts = time.time() if now is None else now

    errors = _validate_input(latitude, longitude, accuracy, code)
    if errors:
        raise InvalidCheckinInput(errors)

    try:
        venue = await get_venue(db, venue_id)
        if venue is None:
            raise VenueNotFound()
        if not is_open_for_checkin(venue):
            raise VenueNotOpen()

        existing = await get_checkin(db, venue_id, user_id)
        if existing is not None and existing.passed:
            # idempotent: nothing is rescored or rewritten
            raise AlreadyVerified(existing)

        # --- code
        code_check: CodeCheck | None = None
        code_score = 0
        if code is not None:
            secret = await get_venue_secret(db, venue_id)
            if secret is None:
                logger.warning("no active code secret for venue=%s", venue_id)
                code_check = CodeCheck(False, 0)
            else:
                code_check = verify_code(code, secret, ts)
            if code_check.valid:
                if not await replay_guard.claim(code, str(venue_id), str(user_id)):
                    current = await get_checkin(db, venue_id, user_id)
                    if current is not None and current.passed:
                        # a double-submit whose twin passed first
                        raise AlreadyVerified(current)
                    logger.warning("replayed code venue=%s user=%s", venue_id, user_id)
                    raise CodeAlreadyUsed()
                code_score = MAX_CODE_SCORE

        # --- location
        location: LocationScore | None = None
        risk = RiskAssessment()
        location_score = 0
        if latitude is not None and longitude is not None:
            if venue.latitude is not None and venue.longitude is not None:
                radius = venue.max_distance_meters
                if not radius or radius <= 0:
                    radius = default_max_distance
                location = score_location(
                    Coordinates(latitude, longitude, accuracy),
                    Coordinates(venue.latitude, venue.longitude),
                    radius,
                )
                location_score = location.score
            prev = await last_fix_for_user(db, user_id)
            if prev is not None:
                risk = assess_risk(
                    prev.user_latitude, prev.user_longitude, latitude, longitude,
                    _as_unix(prev.verified_at), ts, accuracy,
                )
            else:
                risk = assess_risk(cur_lat=latitude, cur_lng=longitude, accuracy=accuracy)

        # --- score (receipts are not read yet, so they never contribute)
        receipt_score = 0
        total = code_score + location_score + receipt_score
        passed = total >= PASS_THRESHOLD

        bundle = ScoreBundle(
            code_score=code_score,
            location_score=location_score,
            receipt_score=receipt_score,
            total_score=total,
            passed=passed,
            code_matched=bool(code_check and code_check.valid),
            distance_meters=location.distance if location else None,
            distance_band=location.band if location else None,
            accuracy_meters=accuracy,
            user_latitude=round_coordinate(latitude) if latitude is not None else None,
            user_longitude=round_coordinate(longitude) if longitude is not None else None,
            risk_score=risk.risk_score,
            suspicious_speed=risk.suspicious_speed,
            inconsistent_accuracy=risk.inconsistent_accuracy,
        )
        try:
            record = await upsert_checkin(
                db, venue_id=venue_id, user_id=user_id, scores=bundle,
                verified_at=datetime.fromtimestamp(ts, tz=timezone.utc),
            )
        except CheckinAlreadyPassed:
            # a concurrent attempt passed first
            raise AlreadyVerified(await get_checkin(db, venue_id, user_id))
    except SQLAlchemyError as e:
        logger.error("record store unavailable during check-in venue=%s: %s", venue_id, e)
        raise StoreUnavailable("record store unavailable") from e
    except ReplayGuardUnavailable as e:
        logger.error("replay guard unavailable during check-in venue=%s: %s", venue_id, e)
        raise StoreUnavailable("replay guard unavailable") from e

    state = VerificationState.PASSED if passed else VerificationState.PENDING
    logger.info(
        "check-in venue=%s user=%s code=%d location=%d total=%d passed=%s risk=%d",
        venue_id, user_id, code_score, location_score, total, passed, risk.risk_score,
    )
    if passed:
        await _emit_passed(publish, record)

    return VerificationOutcome(
        venue=venue,
        record=record,
        code_score=code_score,
        location_score=location_score,
        receipt_score=receipt_score,
        total=total,
        passed=passed,
        state=state,
        code=code_check,
        location=location,
        risk=risk,
    )
