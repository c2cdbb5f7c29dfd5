from __future__ import annotations
import os
import tempfile
import uuid

_DB_PATH = os.path.join(tempfile.gettempdir(), f"presence-test-{uuid.uuid4().hex}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ.setdefault("AUTH_JWKS_URL", "http://auth.invalid/.well-known/jwks.json")
os.environ.setdefault("REPLAY_BACKEND", "memory")
os.environ.setdefault("RL_ENABLED", "false")
os.environ.setdefault("KIOSK_API_KEY", "test-kiosk-key")

import pytest
from httpx import ASGITransport, AsyncClient

from presence_svc.db import async_session_maker, engine
from presence_svc.deps import get_claims, get_publisher, get_replay_guard
from presence_svc.main import app
from presence_svc.models import Base, Venue, VenueSecret, VenueStatus
from presence_svc.core.replay import MemoryReplayGuard

VENUE_LAT = 37.5665
VENUE_LNG = 126.978
VENUE_SECRET = "venue-secret-for-tests"

@pytest.fixture
async def db_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()

@pytest.fixture
async def session(db_schema):
    async with async_session_maker() as s:
        yield s

@pytest.fixture
def make_venue(db_schema):
    async def _make(
        *,
        status: VenueStatus = VenueStatus.CONFIRMED,
        latitude: float | None = VENUE_LAT,
        longitude: float | None = VENUE_LNG,
        secret: str | None = VENUE_SECRET,
        max_distance_meters: float | None = None,
        name: str = "Seongsu Popup",
    ) -> Venue:
        async with async_session_maker() as s:
            venue = Venue(
                display_name=name, latitude=latitude, longitude=longitude,
                status=status, max_distance_meters=max_distance_meters,
            )
            s.add(venue)
            await s.flush()
            if secret is not None:
                s.add(VenueSecret(venue_id=venue.id, secret_key=secret))
            await s.commit()
            await s.refresh(venue)
            return venue
    return _make

@pytest.fixture
def replay_guard() -> MemoryReplayGuard:
    return MemoryReplayGuard()

@pytest.fixture
def published() -> list[dict]:
    return []

@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()

@pytest.fixture
async def client(db_schema, replay_guard, published, user_id):
    async def _publish(evt: dict):
        published.append(evt)

    app.dependency_overrides[get_claims] = lambda: {"sub": str(user_id), "role": "attendee"}
    app.dependency_overrides[get_replay_guard] = lambda: replay_guard
    app.dependency_overrides[get_publisher] = lambda: _publish
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
