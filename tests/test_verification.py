import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from presence_svc.core.policy import PASS_THRESHOLD
from presence_svc.core.replay import MemoryReplayGuard, ReplayGuardUnavailable
from presence_svc.core.totp import generate_code
from presence_svc.db import async_session_maker
from presence_svc.models import VenueStatus
from presence_svc.services.checkins import ScoreBundle, get_checkin, upsert_checkin
from presence_svc.services.verification import (
    AlreadyVerified,
    CodeAlreadyUsed,
    InvalidCheckinInput,
    StoreUnavailable,
    VenueNotFound,
    VenueNotOpen,
    VerificationState,
    summarize,
    verify_presence,
)

from conftest import VENUE_LAT, VENUE_LNG, VENUE_SECRET

NOW = 1_700_000_010.0

async def test_code_and_exact_location_pass(session, make_venue):
    venue = await make_venue()
    guard = MemoryReplayGuard()
    out = await verify_presence(
        session, guard,
        venue_id=venue.id, user_id=uuid.uuid4(),
        latitude=VENUE_LAT, longitude=VENUE_LNG, accuracy=8,
        code=generate_code(VENUE_SECRET, NOW), now=NOW,
    )
    assert (out.code_score, out.location_score, out.receipt_score) == (40, 40, 0)
    assert out.total == 80
    assert out.passed
    assert out.threshold == PASS_THRESHOLD
    assert out.state is VerificationState.PASSED
    assert out.code.window_offset == 0
    assert out.record.passed

async def test_code_alone_is_pending(session, make_venue):
    venue = await make_venue()
    out = await verify_presence(
        session, MemoryReplayGuard(),
        venue_id=venue.id, user_id=uuid.uuid4(),
        code=generate_code(VENUE_SECRET, NOW), now=NOW,
    )
    assert out.total == 40
    assert not out.passed
    assert out.state is VerificationState.PENDING
    assert out.location is None

async def test_wrong_code_scores_zero_without_consuming(session, make_venue):
    venue = await make_venue()
    guard = MemoryReplayGuard()
    good = generate_code(VENUE_SECRET, NOW)
    wrong = str((int(good) + 1) % 1_000_000).zfill(6)
    out = await verify_presence(
        session, guard, venue_id=venue.id, user_id=uuid.uuid4(), code=wrong, now=NOW,
    )
    assert out.code_score == 0
    assert not out.code.valid
    assert len(guard) == 0

async def test_stale_code_scores_zero(session, make_venue):
    venue = await make_venue()
    out = await verify_presence(
        session, MemoryReplayGuard(),
        venue_id=venue.id, user_id=uuid.uuid4(),
        code=generate_code(VENUE_SECRET, NOW - 61), now=NOW,
    )
    assert out.code_score == 0

async def test_reused_code_is_already_used(session, make_venue):
    venue = await make_venue()
    guard = MemoryReplayGuard()
    user_id = uuid.uuid4()
    code = generate_code(VENUE_SECRET, NOW)
    await verify_presence(session, guard, venue_id=venue.id, user_id=user_id, code=code, now=NOW)
    with pytest.raises(CodeAlreadyUsed):
        await verify_presence(session, guard, venue_id=venue.id, user_id=user_id, code=code, now=NOW + 5)

async def test_same_code_fresh_for_another_user(session, make_venue):
    venue = await make_venue()
    guard = MemoryReplayGuard()
    code = generate_code(VENUE_SECRET, NOW)
    a = await verify_presence(session, guard, venue_id=venue.id, user_id=uuid.uuid4(), code=code, now=NOW)
    b = await verify_presence(session, guard, venue_id=venue.id, user_id=uuid.uuid4(), code=code, now=NOW)
    assert a.code_score == b.code_score == 40

async def test_far_location_without_code_scores_zero(session, make_venue):
    venue = await make_venue(max_distance_meters=100)
    out = await verify_presence(
        session, MemoryReplayGuard(),
        venue_id=venue.id, user_id=uuid.uuid4(),
        latitude=37.5710, longitude=VENUE_LNG, now=NOW,
    )
    assert (out.code_score, out.location_score, out.total) == (0, 0, 0)
    assert not out.passed
    assert out.location.band == "far"

async def test_venue_without_coordinates_gives_no_location_score(session, make_venue):
    venue = await make_venue(latitude=None, longitude=None)
    out = await verify_presence(
        session, MemoryReplayGuard(),
        venue_id=venue.id, user_id=uuid.uuid4(),
        latitude=VENUE_LAT, longitude=VENUE_LNG, now=NOW,
    )
    assert out.location is None
    assert out.location_score == 0
    # still stored, rounded
    assert out.record.user_latitude == round(VENUE_LAT, 4)

async def test_missing_secret_means_no_code_points(session, make_venue):
    venue = await make_venue(secret=None)
    out = await verify_presence(
        session, MemoryReplayGuard(),
        venue_id=venue.id, user_id=uuid.uuid4(),
        code="123456", now=NOW,
    )
    assert out.code_score == 0

async def test_coordinates_are_rounded_before_persisting(session, make_venue):
    venue = await make_venue()
    out = await verify_presence(
        session, MemoryReplayGuard(),
        venue_id=venue.id, user_id=uuid.uuid4(),
        latitude=37.566512345, longitude=126.978049876, now=NOW,
    )
    assert out.record.user_latitude == 37.5665
    assert out.record.user_longitude == 126.978

async def test_already_passed_short_circuits_without_change(session, make_venue):
    venue = await make_venue()
    user_id = uuid.uuid4()
    guard = MemoryReplayGuard()
    first = await verify_presence(
        session, guard, venue_id=venue.id, user_id=user_id,
        latitude=VENUE_LAT, longitude=VENUE_LNG, code=generate_code(VENUE_SECRET, NOW), now=NOW,
    )
    assert first.passed
    before = (first.record.total_score, first.record.attempts, first.record.verified_at)

    later = NOW + 120
    with pytest.raises(AlreadyVerified) as exc:
        await verify_presence(
            session, guard, venue_id=venue.id, user_id=user_id,
            latitude=VENUE_LAT, longitude=VENUE_LNG, code=generate_code(VENUE_SECRET, later), now=later,
        )
    assert exc.value.record.id == first.record.id
    # no code was consumed by the rejected attempt
    assert not await guard.is_used(generate_code(VENUE_SECRET, later), str(venue.id), str(user_id))

    session.expire_all()
    stored = await get_checkin(session, venue.id, user_id)
    assert (stored.total_score, stored.attempts, stored.verified_at) == before

async def test_pending_record_is_upgraded_on_retry(session, make_venue):
    venue = await make_venue()
    user_id = uuid.uuid4()
    guard = MemoryReplayGuard()
    await verify_presence(session, guard, venue_id=venue.id, user_id=user_id, code=generate_code(VENUE_SECRET, NOW), now=NOW)
    out = await verify_presence(
        session, guard, venue_id=venue.id, user_id=user_id,
        latitude=VENUE_LAT, longitude=VENUE_LNG, code=generate_code(VENUE_SECRET, NOW + 30), now=NOW + 30,
    )
    assert out.passed
    assert out.record.attempts == 2

async def test_risk_is_advisory_only(session, make_venue):
    venue = await make_venue()
    user_id = uuid.uuid4()
    # a fix in Busan one minute before arriving in Seoul
    await upsert_checkin(
        session, venue_id=uuid.uuid4(), user_id=user_id,
        scores=ScoreBundle(user_latitude=35.1796, user_longitude=129.0756),
        verified_at=datetime.fromtimestamp(NOW - 60, tz=timezone.utc),
    )
    out = await verify_presence(
        session, MemoryReplayGuard(), venue_id=venue.id, user_id=user_id,
        latitude=VENUE_LAT, longitude=VENUE_LNG, accuracy=0,
        code=generate_code(VENUE_SECRET, NOW), now=NOW,
    )
    assert out.risk.suspicious_speed
    assert out.risk.inconsistent_accuracy
    assert out.risk.risk_score == 70
    assert out.passed
    assert out.record.risk_score == 70
    assert out.record.suspicious_speed

async def test_unknown_venue(session):
    with pytest.raises(VenueNotFound):
        await verify_presence(session, MemoryReplayGuard(), venue_id=uuid.uuid4(), user_id=uuid.uuid4(), now=NOW)

@pytest.mark.parametrize("status", [VenueStatus.DRAFT, VenueStatus.CANCELLED])
async def test_closed_venue(session, make_venue, status):
    venue = await make_venue(status=status)
    with pytest.raises(VenueNotOpen):
        await verify_presence(session, MemoryReplayGuard(), venue_id=venue.id, user_id=uuid.uuid4(), now=NOW)

async def test_completed_venue_still_accepts_checkins(session, make_venue):
    venue = await make_venue(status=VenueStatus.COMPLETED)
    out = await verify_presence(session, MemoryReplayGuard(), venue_id=venue.id, user_id=uuid.uuid4(), now=NOW)
    assert out.total == 0

@pytest.mark.parametrize(
    "kwargs, fields",
    [
        ({"latitude": 91, "longitude": 0}, ["latitude"]),
        ({"latitude": 0, "longitude": 181}, ["longitude"]),
        ({"latitude": 37.5}, ["longitude"]),
        ({"accuracy": 5}, ["accuracy"]),
        ({"latitude": float("nan"), "longitude": 0}, ["latitude"]),
        ({"code": "12a456"}, ["code"]),
        ({"code": "1234567"}, ["code"]),
    ],
)
async def test_invalid_input_reports_fields(session, kwargs, fields):
    with pytest.raises(InvalidCheckinInput) as exc:
        await verify_presence(session, MemoryReplayGuard(), venue_id=uuid.uuid4(), user_id=uuid.uuid4(), now=NOW, **kwargs)
    assert [e.field for e in exc.value.errors] == fields

async def test_replay_guard_outage_is_retryable(session, make_venue):
    class DownGuard(MemoryReplayGuard):
        async def claim(self, code, venue_id, user_id):
            raise ReplayGuardUnavailable("redis down")

    venue = await make_venue()
    user_id = uuid.uuid4()
    with pytest.raises(StoreUnavailable):
        await verify_presence(
            session, DownGuard(), venue_id=venue.id, user_id=user_id,
            code=generate_code(VENUE_SECRET, NOW), now=NOW,
        )
    assert await get_checkin(session, venue.id, user_id) is None

async def test_publish_only_on_pass_and_failures_swallowed(session, make_venue):
    venue = await make_venue()
    events = []

    async def publish(evt):
        events.append(evt)
        raise RuntimeError("bus down")

    pending = await verify_presence(
        session, MemoryReplayGuard(), venue_id=venue.id, user_id=uuid.uuid4(),
        code=generate_code(VENUE_SECRET, NOW), publish=publish, now=NOW,
    )
    assert not pending.passed
    assert events == []

    user_id = uuid.uuid4()
    passed = await verify_presence(
        session, MemoryReplayGuard(), venue_id=venue.id, user_id=user_id,
        latitude=VENUE_LAT, longitude=VENUE_LNG, code=generate_code(VENUE_SECRET, NOW), publish=publish, now=NOW,
    )
    assert passed.passed
    assert len(events) == 1
    assert events[0]["idempotency_key"] == f"{venue.id}:{user_id}"
    assert events[0]["total_score"] == 80

def test_summary_badges():
    assert summarize(80, True)[0] == "success"
    assert summarize(60, True)[0] == "partial"
    assert summarize(40, False)[0] == "fail"

class TwinPassesFirst(MemoryReplayGuard):
    """While this request claims its code, a twin request for the same user commits a pass."""

    def __init__(self, venue_id, user_id, claim_wins):
        super().__init__()
        self.venue_id = venue_id
        self.user_id = user_id
        self.claim_wins = claim_wins

    async def claim(self, code, venue_id, user_id):
        async with async_session_maker() as other:
            await upsert_checkin(
                other, venue_id=self.venue_id, user_id=self.user_id,
                scores=ScoreBundle(code_score=40, location_score=40, total_score=80, passed=True, code_matched=True),
            )
        return self.claim_wins

async def _pending_record(session, venue, user_id):
    out = await verify_presence(
        session, MemoryReplayGuard(), venue_id=venue.id, user_id=user_id,
        code=generate_code(VENUE_SECRET, NOW), now=NOW,
    )
    assert not out.record.passed
    return out.record

async def test_already_verified_after_race_reports_stored_pass(session, make_venue):
    venue = await make_venue()
    user_id = uuid.uuid4()
    pending = await _pending_record(session, venue, user_id)

    later = NOW + 30
    with pytest.raises(AlreadyVerified) as exc:
        await verify_presence(
            session, TwinPassesFirst(venue.id, user_id, claim_wins=True),
            venue_id=venue.id, user_id=user_id,
            latitude=VENUE_LAT, longitude=VENUE_LNG, code=generate_code(VENUE_SECRET, later), now=later,
        )
    assert exc.value.record.id == pending.id
    assert exc.value.record.passed is True
    assert exc.value.record.total_score == 80

async def test_lost_claim_to_passing_twin_is_already_verified(session, make_venue):
    venue = await make_venue()
    user_id = uuid.uuid4()
    await _pending_record(session, venue, user_id)

    later = NOW + 30
    with pytest.raises(AlreadyVerified) as exc:
        await verify_presence(
            session, TwinPassesFirst(venue.id, user_id, claim_wins=False),
            venue_id=venue.id, user_id=user_id,
            code=generate_code(VENUE_SECRET, later), now=later,
        )
    assert exc.value.record.passed is True
    assert exc.value.record.total_score == 80

async def test_venue_radius_must_be_positive(make_venue):
    with pytest.raises(IntegrityError):
        await make_venue(max_distance_meters=-5)
    with pytest.raises(IntegrityError):
        await make_venue(max_distance_meters=0)
