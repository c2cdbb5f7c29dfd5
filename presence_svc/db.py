from __future__ import annotations
import logging
from typing import Any, AsyncGenerator, Dict
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .core.config import get_settings
from .models import Base

settings = get_settings()
logger = logging.getLogger(__name__)

def _engine_options(url: str) -> Dict[str, Any]:
    # sqlite (tests, single-box demos) has no server to ping and needs a longer busy wait
    # while concurrent upserts queue on the file lock
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"timeout": 15}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 10}

engine = create_async_engine(settings.database_url, echo=False, **_engine_options(settings.database_url))
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("check-in schema ready on %s", engine.url.get_backend_name())

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
