"""Lifecycle stream handler: projects device events into the local directory."""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homeenergy.messaging.consumer import PoisonMessageError
from homeenergy.messaging.events import (
    DEVICE_UPSERT_KINDS,
    USER_KINDS,
    DevicePayload,
    EventKind,
    SyncEnvelope,
)
from homeenergy.services.devices import delete_device, upsert_device

logger = logging.getLogger(__name__)


class DeviceDirectorySync:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def __call__(self, body: bytes) -> None:
        envelope = SyncEnvelope.model_validate_json(body)
        await self.apply(envelope)

    async def apply(self, envelope: SyncEnvelope) -> None:
        kind = envelope.kind

        if kind in DEVICE_UPSERT_KINDS:
            if envelope.payload is None:
                # Harmless but useless; acking keeps it from blocking the queue
                logger.warning("%s without payload ignored: %s", kind.value, envelope)
                return
            payload = DevicePayload.model_validate(envelope.payload)
            async with self._session_factory() as db:
                await upsert_device(db, payload)
                await db.commit()

        elif kind is EventKind.device_deleted:
            device_id = _deleted_device_id(envelope)
            if device_id is None:
                logger.warning("DEVICE_DELETED without device id ignored: %s", envelope)
                return
            async with self._session_factory() as db:
                await delete_device(db, device_id)
                await db.commit()

        elif kind in USER_KINDS:
            logger.debug("%s not relevant to the device directory", kind.value)

        else:
            logger.warning("Unhandled sync event type '%s'", envelope.event_type)


def _deleted_device_id(envelope: SyncEnvelope) -> uuid.UUID | None:
    if envelope.device_id is not None:
        return envelope.device_id
    if envelope.payload and envelope.payload.get("id") is not None:
        try:
            return uuid.UUID(str(envelope.payload["id"]))
        except ValueError as exc:
            raise PoisonMessageError(f"malformed device id {envelope.payload['id']!r}") from exc
    return None
