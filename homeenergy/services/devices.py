"""Device directory projection: materialized upserts, placeholders and deletes."""

import logging
import uuid

from sqlalchemy import delete, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from homeenergy.messaging.events import DevicePayload
from homeenergy.models.device import PLACEHOLDER_DEVICE_NAME, Device

logger = logging.getLogger(__name__)

# Keyed by column name; the ORM attribute for "metadata" is device_metadata
devices = Device.__table__


def upsert_statement(payload: DevicePayload):
    stmt = pg_insert(devices).values(
        {
            "id": payload.id,
            "user_id": payload.user_id,
            "name": payload.name,
            "max_consumption": payload.max_consumption,
            "metadata": payload.metadata,
            "placeholder": False,
        }
    )
    # created_at survives; every descriptive field is overwritten
    return stmt.on_conflict_do_update(
        index_elements=["id"],
        set_={
            "user_id": stmt.excluded.user_id,
            "name": stmt.excluded.name,
            "max_consumption": stmt.excluded.max_consumption,
            "metadata": stmt.excluded["metadata"],
            "placeholder": False,
            "updated_at": func.now(),
        },
    )


def placeholder_statement(device_id: uuid.UUID):
    stmt = pg_insert(devices).values(
        {"id": device_id, "name": PLACEHOLDER_DEVICE_NAME, "metadata": {}, "placeholder": True}
    )
    return stmt.on_conflict_do_nothing(index_elements=["id"])


async def upsert_device(db: AsyncSession, payload: DevicePayload) -> None:
    await db.execute(upsert_statement(payload))
    logger.info("Upserted device %s (%s)", payload.id, payload.name)


async def ensure_device_placeholder(db: AsyncSession, device_id: uuid.UUID) -> None:
    """Insert a placeholder row for *device_id* unless one already exists.

    Safe under concurrent callers: the loser's insert is a no-op.
    """
    await db.execute(placeholder_statement(device_id))


async def delete_device(db: AsyncSession, device_id: uuid.UUID) -> None:
    """Remove a device; its hourly buckets go with it (ON DELETE CASCADE)."""
    result = await db.execute(delete(Device).where(Device.id == device_id))
    if result.rowcount:
        logger.info("Deleted device %s", device_id)
    else:
        logger.info("Delete for unknown device %s ignored", device_id)
