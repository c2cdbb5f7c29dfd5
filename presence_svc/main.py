from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from .db import init_db
from .routers import checkins
from .core.config import get_settings
from .core.redis import ping_redis
from .core.nats import nats_connect, nats_close

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    # best-effort connect to infra; service still runs if these fail
    try:
        await nats_connect()
    except Exception:
        logger.warning("nats not reachable at startup; verification.passed events will retry on publish")
    if settings.replay_backend == "redis":
        await ping_redis()
    yield
    await nats_close()

app = FastAPI(title="presence-verification-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkins.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "presence-verification-svc"}

Instrumentator().instrument(app).expose(app)
