"""Consumption read query: one device, one UTC day, 24 hourly points."""

import logging
import uuid
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from homeenergy.db.session import get_db
from homeenergy.services.consumption import fetch_consumption, fill_day

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/consumption",
    summary="Hourly consumption for one device and day",
    description=(
        "Returns 24 points (hours 0–23, UTC) of accumulated consumption for the "
        "device. Hours without measurements are reported as 0."
    ),
)
async def get_consumption(
    device_id: uuid.UUID,
    day: date = Query(..., description="Calendar day, YYYY-MM-DD (UTC)"),
    db: AsyncSession = Depends(get_db),
):
    rows = await fetch_consumption(db, device_id, day)
    return {
        "device_id": str(device_id),
        "day": day.isoformat(),
        "points": fill_day(rows),
    }
