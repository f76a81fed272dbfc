import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from homeenergy.config import settings
from homeenergy.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/status",
    summary="Service status",
    description=(
        "Returns service version, database connection status, and the state of "
        "each event consumer."
    ),
)
async def get_status(request: Request, db: AsyncSession = Depends(get_db)):
    # ── DB liveness ────────────────────────────────────────────────────────────
    db_status = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        db_status = "error"

    # ── Consumers (absent when the lifespan did not start them) ───────────────
    runners = getattr(request.app.state, "consumers", [])

    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "db": db_status,
        "consumers": {
            runner.name: {"queue": runner.queue, "state": runner.state.value}
            for runner in runners
        },
        "config": {
            "sync_queue": settings.sync_queue,
            "measurement_queue": settings.measurement_queue,
            "sync_prefetch": settings.sync_prefetch,
            "measurement_prefetch": settings.measurement_prefetch,
            "max_redeliveries": settings.max_redeliveries,
        },
    }
