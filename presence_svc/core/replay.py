from __future__ import annotations
import asyncio
import hashlib
import time
from typing import Callable, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

from .policy import REPLAY_TTL_SECONDS

class ReplayGuardUnavailable(Exception):
    """The used-code index could not be read or written."""

def marker_key(code: str, venue_id: str, user_id: str) -> str:
    # hashed so raw codes never sit in the index
    raw = f"{venue_id}:{user_id}:{code}".encode("utf-8")
    return "replay:code:" + hashlib.sha256(raw).hexdigest()

class ReplayGuard:
    """
    Index of consumed (code, venue, user) triples.

    ``claim`` is the operation the verifier relies on: it marks the triple and
    reports whether this caller was the first, in one atomic step.
    """

    ttl_seconds: int = REPLAY_TTL_SECONDS

    async def claim(self, code: str, venue_id: str, user_id: str) -> bool:
        raise NotImplementedError

    async def is_used(self, code: str, venue_id: str, user_id: str) -> bool:
        raise NotImplementedError

    async def mark_used(self, code: str, venue_id: str, user_id: str) -> None:
        await self.claim(code, venue_id, user_id)

class RedisReplayGuard(ReplayGuard):
    def __init__(self, client: redis.Redis, ttl_seconds: int = REPLAY_TTL_SECONDS):
        self._r = client
        self.ttl_seconds = ttl_seconds

    async def claim(self, code: str, venue_id: str, user_id: str) -> bool:
        # SET NX EX: first caller wins, everyone else sees None
        try:
            ok = await self._r.set(marker_key(code, venue_id, user_id), str(int(time.time())), ex=self.ttl_seconds, nx=True)
        except RedisError as e:
            raise ReplayGuardUnavailable(str(e)) from e
        return bool(ok)

    async def is_used(self, code: str, venue_id: str, user_id: str) -> bool:
        try:
            return bool(await self._r.exists(marker_key(code, venue_id, user_id)))
        except RedisError as e:
            raise ReplayGuardUnavailable(str(e)) from e

class MemoryReplayGuard(ReplayGuard):
    """In-process index for single-instance deployments and tests."""

    def __init__(self, ttl_seconds: int = REPLAY_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._expires: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _sweep(self, now: float) -> None:
        for key in [k for k, exp in self._expires.items() if exp <= now]:
            del self._expires[key]

    async def claim(self, code: str, venue_id: str, user_id: str) -> bool:
        key = marker_key(code, venue_id, user_id)
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            if key in self._expires:
                return False
            self._expires[key] = now + self.ttl_seconds
            return True

    async def is_used(self, code: str, venue_id: str, user_id: str) -> bool:
        key = marker_key(code, venue_id, user_id)
        async with self._lock:
            self._sweep(self._clock())
            return key in self._expires

    def __len__(self) -> int:
        return len(self._expires)
