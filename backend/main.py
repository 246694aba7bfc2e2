"""Live rooms backend: FastAPI application."""

import logging

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from fastapi import FastAPI

from config import limiter, settings

logger = logging.getLogger(__name__)

# Ensure logger outputs to console
_root = logging.getLogger()
if not _root.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setLevel(settings.log_level.upper())
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    console_handler.setFormatter(formatter)
    _root.addHandler(console_handler)
    _root.setLevel(settings.log_level.upper())
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        traces_sample_rate=0.1,
        environment=settings.environment,
    )

from database import build_store
from liveroom import LiveCoordinator, live_router

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(title="Live Rooms", version="0.1.0")

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Single registry/hub for this process; rooms are not shared across instances.
app.state.coordinator = LiveCoordinator(
    build_store(),
    queue_size=settings.outbound_queue_size,
    history_limit=settings.chat_history_limit,
)

app.include_router(live_router)


@app.get("/health")
async def health():
    return {"status": "ok", "rooms": len(app.state.coordinator.registry)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.host, port=settings.port)
