from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Header, HTTPException, status
import time
import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .core.config import get_settings
from .core.compare import constant_time_equal
from .core.nats import publish_verification_passed
from .core.redis import get_redis
from .core.replay import MemoryReplayGuard, RedisReplayGuard, ReplayGuard

settings = get_settings()

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def _decode_bearer(authorization: str) -> Dict[str, Any]:
    token = authorization.split(" ", 1)[1].strip()
    try:
        key = await get_signing_key()
    except httpx.HTTPError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Identity provider unavailable")
    try:
        payload = jwt.decode(
            token, key=key, algorithms=["RS256"], issuer=settings.token_issuer, options={"verify_aud": False}
        )
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or "role" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    return await _decode_bearer(authorization)

async def require_kiosk_or_organiser(
    x_kiosk_api_key: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> str:
    """Code displays authenticate with the kiosk key; organisers may use their session instead."""
    if settings.kiosk_api_key and constant_time_equal(x_kiosk_api_key, settings.kiosk_api_key):
        return "kiosk"
    if authorization and authorization.lower().startswith("bearer "):
        claims = await _decode_bearer(authorization)
        if claims.get("role") == "organiser":
            return "organiser"
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Organiser role required")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Provide a valid X-Kiosk-Api-Key header or sign in",
    )

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

_memory_guard = MemoryReplayGuard()

def get_replay_guard() -> ReplayGuard:
    if settings.replay_backend == "memory":
        return _memory_guard
    return RedisReplayGuard(get_redis())

def get_publisher():
    return publish_verification_passed
