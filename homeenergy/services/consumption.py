"""Hourly consumption buckets: additive upsert and the daily read query."""

import logging
import uuid
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from homeenergy.messaging.events import HourBucket
from homeenergy.models.consumption import DEVICE_FK_NAME, HourlyConsumption

logger = logging.getLogger(__name__)

FOREIGN_KEY_VIOLATION = "23503"
HOURS_PER_DAY = 24


class DeviceNotSyncedError(LookupError):
    """The bucket references a device id that is not in the local directory."""

    def __init__(self, device_id: uuid.UUID) -> None:
        super().__init__(f"device {device_id} is not in the directory")
        self.device_id = device_id


def is_device_fk_violation(exc: IntegrityError) -> bool:
    """True only for a violation of the bucket → device foreign key.

    Any other integrity error (including other foreign keys added later) is
    left to propagate.
    """
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code != FOREIGN_KEY_VIOLATION:
        return False
    # asyncpg exposes the constraint on the driver exception wrapped by the adapter
    constraint = getattr(orig, "constraint_name", None) or getattr(
        orig.__cause__, "constraint_name", None
    )
    return constraint == DEVICE_FK_NAME


def accumulate_statement(device_id: uuid.UUID, bucket: HourBucket, value: float):
    stmt = pg_insert(HourlyConsumption).values(
        device_id=device_id,
        day=bucket.day,
        hour=bucket.hour,
        accumulated_value=value,
    )
    return stmt.on_conflict_do_update(
        index_elements=["device_id", "day", "hour"],
        set_={
            "accumulated_value": HourlyConsumption.accumulated_value
            + stmt.excluded.accumulated_value,
            "updated_at": func.now(),
        },
    )


async def accumulate_measurement(
    db: AsyncSession, device_id: uuid.UUID, bucket: HourBucket, value: float
) -> None:
    """Add *value* to the (device, day, hour) bucket, creating it if absent.

    Raises DeviceNotSyncedError when the device is missing from the directory;
    the session must be rolled back before it is reused.
    """
    try:
        await db.execute(accumulate_statement(device_id, bucket, value))
    except IntegrityError as exc:
        if is_device_fk_violation(exc):
            raise DeviceNotSyncedError(device_id) from exc
        raise


async def fetch_consumption(
    db: AsyncSession, device_id: uuid.UUID, day: date
) -> list[tuple[int, float]]:
    result = await db.execute(
        select(HourlyConsumption.hour, HourlyConsumption.accumulated_value)
        .where(HourlyConsumption.device_id == device_id, HourlyConsumption.day == day)
        .order_by(HourlyConsumption.hour)
    )
    return [(int(hour), float(value)) for hour, value in result.all()]


def fill_day(rows: list[tuple[int, float]]) -> list[dict]:
    """Expand stored buckets into 24 hourly points, unseen hours at 0.0."""
    points = [{"hour": hour, "value": 0.0} for hour in range(HOURS_PER_DAY)]
    for hour, value in rows:
        if 0 <= hour < HOURS_PER_DAY:
            points[hour]["value"] = value
    return points
