from __future__ import annotations
import json
import logging
from typing import Sequence
from nats.aio.client import Client as NATS
from .config import get_settings

_settings = get_settings()
_nats = NATS()
logger = logging.getLogger(__name__)

async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)

async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception:
        logger.warning("nats drain failed on shutdown", exc_info=True)

async def publish_verification_passed(evt: dict):
    """
    evt = {
      "venue_id": str,
      "user_id": str,
      "total_score": int,
      "verified_at": iso8601,
      "idempotency_key": "venue_id:user_id"
    }
    """
    await nats_connect()
    await _nats.publish(_settings.nats_subject_verified, json.dumps(evt).encode("utf-8"))
