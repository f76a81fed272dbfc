import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from homeenergy.config import settings
from homeenergy.db.session import AsyncSessionLocal, engine
from homeenergy.workers.consumers import build_consumers

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    app.state.consumers = []
    if settings.consumers_enabled:
        app.state.consumers = build_consumers(settings, AsyncSessionLocal)
        for runner in app.state.consumers:
            runner.start()
    yield
    logger.info("Shutting down: draining consumers and disposing DB engine")
    await asyncio.gather(
        *(
            runner.stop(timeout=settings.shutdown_drain_timeout_seconds)
            for runner in app.state.consumers
        )
    )
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Home energy monitoring service: keeps a local device directory in sync "
        "with lifecycle events and aggregates raw measurements into hourly buckets."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ── Root liveness check ────────────────────────────────────────────────────────
@app.get("/health", tags=["System"], summary="Liveness check")
async def health():
    """Returns 200 OK if the service is running."""
    return {"status": "ok"}


# ── Versioned API routes ────────────────────────────────────────────────────────
from homeenergy.api.v1.router import api_v1_router  # noqa: E402  imported after app creation

app.include_router(api_v1_router, prefix="/api/v1")
