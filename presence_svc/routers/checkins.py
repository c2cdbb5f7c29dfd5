from __future__ import annotations
import uuid
from io import BytesIO
from fastapi import APIRouter, Depends, HTTPException, status, Response, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, get_replay_guard, get_publisher, require_kiosk_or_organiser
from ..core.config import get_settings
from ..core.redis import allow_request
from ..core.replay import ReplayGuard
from ..core.totp import current_code
from ..schemas import (
    CheckinCreate, CheckinRead, CheckinRef, CodeDetail, CodeRead, LocationDetail,
    RiskDetail, ScoreBreakdown, Summary, VenueRef, VerificationRead,
)
from ..models import CheckinRecord
from ..services.checkins import list_for_user, list_for_venue
from ..services.venues import get_venue, get_venue_secret
from ..services.verification import (
    AlreadyVerified, CodeAlreadyUsed, InvalidCheckinInput, StoreUnavailable,
    VenueNotFound, VenueNotOpen, VerificationOutcome, summarize, verify_presence,
)

settings = get_settings()
router = APIRouter(prefix="/checkin", tags=["checkin"])

RETRY_AFTER_SECONDS = "5"

def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Temporarily unavailable, retry",
        headers={"Retry-After": RETRY_AFTER_SECONDS},
    )

def _read(r: CheckinRecord) -> CheckinRead:
    return CheckinRead(
        id=r.id, venue_id=r.venue_id, user_id=r.user_id,
        code_score=r.code_score, location_score=r.location_score, receipt_score=r.receipt_score,
        total_score=r.total_score, passed=r.passed, code_matched=r.code_matched,
        distance_meters=r.distance_meters, distance_band=r.distance_band,
        risk_score=r.risk_score, attempts=r.attempts, verified_at=r.verified_at,
    )

def _verdict(out: VerificationOutcome) -> VerificationRead:
    badge, message = summarize(out.total, out.passed)
    return VerificationRead(
        passed=out.passed,
        scores=ScoreBreakdown(
            code=out.code_score, location=out.location_score, receipt=out.receipt_score,
            total=out.total, threshold=out.threshold,
        ),
        venue=VenueRef(id=out.venue.id, name=out.venue.display_name),
        checkin=CheckinRef(id=out.record.id, verified_at=out.record.verified_at),
        location=LocationDetail(
            distance_meters=out.location.distance, band=out.location.band,
            accuracy_meters=out.record.accuracy_meters,
        ) if out.location else None,
        code=CodeDetail(matched=out.code.valid, window_offset=out.code.window_offset) if out.code else None,
        risk=RiskDetail(
            suspicious_speed=out.risk.suspicious_speed,
            inconsistent_accuracy=out.risk.inconsistent_accuracy,
            risk_score=out.risk.risk_score,
        ),
        summary=Summary(badge=badge, message=message),
    )

# --- 1) Attendee submits code and/or location; one verdict per venue
@router.post("", response_model=VerificationRead)
async def check_in(
    payload: CheckinCreate,
    request: Request,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    replay_guard: ReplayGuard = Depends(get_replay_guard),
    publish=Depends(get_publisher),
):
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, "checkin.verify"):
        raise HTTPException(status_code=429, detail="Too many requests")

    try:
        user_id = uuid.UUID(str(claims["sub"]))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")

    try:
        out = await verify_presence(
            db,
            replay_guard,
            venue_id=payload.venue_id,
            user_id=user_id,
            latitude=payload.latitude,
            longitude=payload.longitude,
            accuracy=payload.accuracy,
            code=payload.code,
            publish=publish,
            default_max_distance=settings.default_max_distance_meters,
        )
    except InvalidCheckinInput as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=[{"field": err.field, "message": err.message} for err in e.errors],
        )
    except VenueNotFound:
        raise HTTPException(status_code=404, detail="Venue not found")
    except VenueNotOpen:
        raise HTTPException(status_code=400, detail="This venue is not open for check-in")
    except AlreadyVerified as e:
        checkin = None
        if e.record is not None:
            checkin = {"id": str(e.record.id), "total_score": e.record.total_score, "passed": e.record.passed}
        raise HTTPException(
            status_code=409,
            detail={"message": "Already verified at this venue", "checkin": checkin},
        )
    except CodeAlreadyUsed:
        raise HTTPException(status_code=409, detail={"message": "Code already used"})
    except StoreUnavailable:
        raise _unavailable()

    return _verdict(out)

# --- 2) Kiosk / organiser display of the current rotating code
async def _venue_code(venue_id: uuid.UUID, db: AsyncSession) -> CodeRead:
    try:
        venue = await get_venue(db, venue_id)
        secret = await get_venue_secret(db, venue_id) if venue else None
    except SQLAlchemyError:
        raise _unavailable()
    if venue is None:
        raise HTTPException(status_code=404, detail="Venue not found")
    if secret is None:
        raise HTTPException(status_code=404, detail="No active code secret for this venue")
    code, refresh_in, valid_until = current_code(secret)
    return CodeRead(
        venue_id=venue.id, venue_name=venue.display_name,
        code=code, refresh_in=refresh_in, valid_until=valid_until,
    )

@router.get("/venues/{venue_id}/code", response_model=CodeRead)
async def get_current_code(
    venue_id: uuid.UUID,
    _caller: str = Depends(require_kiosk_or_organiser),
    db: AsyncSession = Depends(get_db),
):
    return await _venue_code(venue_id, db)

# PNG for kiosk screens
@router.get("/venues/{venue_id}/code.png")
async def get_current_code_png(
    venue_id: uuid.UUID,
    _caller: str = Depends(require_kiosk_or_organiser),
    db: AsyncSession = Depends(get_db),
):
    import qrcode
    data = await _venue_code(venue_id, db)
    img = qrcode.make(data.code)
    b = BytesIO(); img.save(b, format="PNG")
    return Response(
        content=b.getvalue(),
        media_type="image/png",
        headers={"Cache-Control": "no-store", "X-Refresh-In": str(data.refresh_in)},
    )

# --- 3) Organiser roster
@router.get("/venues/{venue_id}/roster", response_model=list[CheckinRead])
async def roster(venue_id: uuid.UUID, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    if claims.get("role") != "organiser":
        raise HTTPException(status_code=403, detail="Organiser role required")
    try:
        rows = await list_for_venue(db, venue_id)
    except SQLAlchemyError:
        raise _unavailable()
    return [_read(r) for r in rows]

# --- 4) Attendee history
@router.get("/users/me", response_model=list[CheckinRead])
async def my_checkins(claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    try:
        uid = uuid.UUID(str(claims["sub"]))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject")
    try:
        rows = await list_for_user(db, uid)
    except SQLAlchemyError:
        raise _unavailable()
    return [_read(r) for r in rows]
