"""Measurement stream handler: folds raw readings into hourly buckets.

Accumulation is a commutative add, so redelivered or reordered readings land
in the same total. A reading for a device the directory has not heard of yet
gets a placeholder row first, then the bucket upsert is retried exactly once.
"""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homeenergy.messaging.events import HourBucket, MeasurementMessage
from homeenergy.services.consumption import DeviceNotSyncedError, accumulate_measurement
from homeenergy.services.devices import ensure_device_placeholder

logger = logging.getLogger(__name__)


class MeasurementAggregator:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def __call__(self, body: bytes) -> None:
        # ValidationError here is a decode failure; the runner dead-letters it at the ceiling
        message = MeasurementMessage.model_validate_json(body)
        bucket = HourBucket.from_timestamp(message.timestamp)
        await self.accumulate(message.device_id, bucket, message.measurement_value)

    async def accumulate(self, device_id: uuid.UUID, bucket: HourBucket, value: float) -> None:
        async with self._session_factory() as db:
            try:
                await accumulate_measurement(db, device_id, bucket, value)
            except DeviceNotSyncedError:
                await db.rollback()
                logger.info(
                    "Device %s not synced yet; creating placeholder for %s hour %d",
                    device_id, bucket.day, bucket.hour,
                )
                await ensure_device_placeholder(db, device_id)
                await accumulate_measurement(db, device_id, bucket, value)
            await db.commit()
