"""Reliable, broker-confirmed event publisher.

One instance is shared by every request path of a producing service. The
cached connection/channel pair is guarded by an asyncio lock that is held only
while the handle is read or replaced; the publish and its confirm run outside
the lock so concurrent publishes do not queue behind each other's I/O.

Delivery is retried a bounded number of times with a fixed delay. When every
attempt fails ``publish`` returns ``False`` and the caller decides: for
non-critical events the platform logs and carries on (tolerated loss), while
safety-critical callers use ``publish_strict`` which raises ``PublishError``.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractConnection
from pydantic import BaseModel

from homeenergy.config import Settings
from homeenergy.messaging.broker import declare_queue
from homeenergy.messaging.events import (
    DevicePayload,
    EventKind,
    device_deleted,
    device_event,
    encode,
)

logger = logging.getLogger(__name__)

Connect = Callable[[str], Awaitable[AbstractConnection]]


class PublishError(RuntimeError):
    """Raised by ``publish_strict`` when every delivery attempt failed."""


@dataclass
class _ChannelState:
    connection: AbstractConnection
    channel: AbstractChannel


class ReliablePublisher:
    def __init__(
        self,
        url: str,
        queue: str,
        *,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        publish_timeout: float | None = 10.0,
        connect: Connect = aio_pika.connect,
    ) -> None:
        self._url = url
        self._queue = queue
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self._publish_timeout = publish_timeout
        self._connect = connect
        self._lock = asyncio.Lock()
        self._state: _ChannelState | None = None

    @classmethod
    def for_queue(
        cls, config: Settings, url: str, queue: str, **kwargs
    ) -> "ReliablePublisher":
        return cls(
            url,
            queue,
            max_attempts=config.publish_max_attempts,
            retry_delay=config.publish_retry_delay_seconds,
            **kwargs,
        )

    @property
    def queue(self) -> str:
        return self._queue

    # ── Public API ─────────────────────────────────────────────────────────────

    async def publish(self, event: BaseModel) -> bool:
        """Deliver *event* as a persistent message; True once the broker confirms."""
        body = encode(event)
        # Shared by every attempt so consumers see retries as the same message
        message_id = uuid.uuid4().hex

        for attempt in range(1, self._max_attempts + 1):
            channel: AbstractChannel | None = None
            try:
                channel = await self._ensure_channel()
                await channel.default_exchange.publish(
                    aio_pika.Message(
                        body,
                        content_type="application/json",
                        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                        message_id=message_id,
                    ),
                    routing_key=self._queue,
                    timeout=self._publish_timeout,
                )
                return True
            except Exception as exc:
                logger.warning(
                    "Publish to %s failed (attempt %d/%d): %s",
                    self._queue, attempt, self._max_attempts, exc,
                )
                await self._discard(channel)

            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_delay)

        logger.error(
            "Giving up on message %s for %s after %d attempts",
            message_id, self._queue, self._max_attempts,
        )
        return False

    async def publish_strict(self, event: BaseModel) -> None:
        if not await self.publish(event):
            raise PublishError(
                f"event could not be delivered to '{self._queue}' "
                f"after {self._max_attempts} attempts"
            )

    async def publish_device_event(self, kind: EventKind, device: DevicePayload) -> bool:
        return await self.publish(device_event(kind, device))

    async def publish_device_deleted(self, device_id: uuid.UUID) -> bool:
        return await self.publish(device_deleted(device_id))

    async def connect(self) -> None:
        """Open the channel eagerly, e.g. at service startup."""
        await self._ensure_channel()

    async def close(self) -> None:
        async with self._lock:
            state, self._state = self._state, None
        if state is not None:
            await _close_quietly(state.connection)

    # ── Cached channel handling ────────────────────────────────────────────────

    async def _ensure_channel(self) -> AbstractChannel:
        async with self._lock:
            if self._state is not None:
                return self._state.channel

        state = await self._open()

        async with self._lock:
            if self._state is None:
                self._state = state
                return state.channel
            winner = self._state

        # Another publish reconnected first; keep its channel
        await _close_quietly(state.connection)
        return winner.channel

    async def _open(self) -> _ChannelState:
        connection = await self._connect(self._url)
        try:
            channel = await connection.channel(publisher_confirms=True)
            await declare_queue(channel, self._queue)
        except Exception:
            await _close_quietly(connection)
            raise
        logger.info("Publisher connected to queue %s", self._queue)
        return _ChannelState(connection=connection, channel=channel)

    async def _discard(self, channel: AbstractChannel | None) -> None:
        # Nothing was cached by a failed connect
        if channel is None:
            return
        async with self._lock:
            state = self._state
            if state is None or state.channel is not channel:
                return
            self._state = None
        await _close_quietly(state.connection)


def build_publishers(config: Settings, **kwargs) -> dict[str, ReliablePublisher]:
    """One publisher per stream, keyed like the consumers that read them."""
    return {
        "sync": ReliablePublisher.for_queue(
            config, config.sync_broker_url, config.sync_queue, **kwargs
        ),
        "measurements": ReliablePublisher.for_queue(
            config, config.data_broker_url, config.measurement_queue, **kwargs
        ),
    }


async def _close_quietly(connection: AbstractConnection) -> None:
    try:
        await connection.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing broker connection: %s", exc)
