"""Supervised, at-least-once queue consumer.

A :class:`ConsumerRunner` owns one durable subscription. Each delivery is
handed to an async handler; success acks the message, any exception nacks it
with requeue. Only undecodable messages (see :data:`UNDECODABLE`) count
towards the redelivery ceiling; once they hit it they are rejected without
requeue, which routes them to ``<queue>.dead-letter``. Storage and
connectivity failures are always requeued, however often they repeat.

Lifecycle::

    disconnected → connecting → consuming → disconnected → … (restart after delay)

The supervising loop only ends when :meth:`ConsumerRunner.stop` is called.
Stopping cancels the broker-side consumer first so no new deliveries arrive,
lets the in-flight handler finish, then closes the connection.
"""

import asyncio
import enum
import hashlib
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable

import aio_pika
from aio_pika.abc import AbstractConnection, AbstractIncomingMessage, AbstractQueueIterator
from pydantic import ValidationError

from homeenergy.messaging.broker import declare_queue

logger = logging.getLogger(__name__)

Handler = Callable[[bytes], Awaitable[None]]
Connect = Callable[[str], Awaitable[AbstractConnection]]


class PoisonMessageError(ValueError):
    """Raised by handlers for a body that can never be processed as sent."""


# Failures that no amount of redelivery will fix
UNDECODABLE = (ValidationError, UnicodeDecodeError, PoisonMessageError)


class RunnerState(str, enum.Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    consuming = "consuming"
    stopped = "stopped"


class RedeliveryTracker:
    """Bounded LRU of failure counts per message.

    Classic queues carry no delivery counter, so failures are counted in
    process. Counts are lost on restart, which only delays dead-lettering.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        self._capacity = capacity
        self._failures: OrderedDict[str, int] = OrderedDict()

    @staticmethod
    def key_for(message_id: str | None, body: bytes) -> str:
        if message_id:
            return message_id
        return hashlib.sha1(body).hexdigest()

    def record_failure(self, key: str) -> int:
        count = self._failures.pop(key, 0) + 1
        self._failures[key] = count
        while len(self._failures) > self._capacity:
            self._failures.popitem(last=False)
        return count

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)

    def __len__(self) -> int:
        return len(self._failures)


class ConsumerRunner:
    def __init__(
        self,
        name: str,
        url: str,
        queue: str,
        handler: Handler,
        *,
        prefetch: int,
        restart_delay: float = 5.0,
        max_redeliveries: int = 0,
        connect: Connect = aio_pika.connect,
    ) -> None:
        self.name = name
        self.queue = queue
        self.state = RunnerState.disconnected
        self._url = url
        self._handler = handler
        self._prefetch = prefetch
        self._restart_delay = restart_delay
        self._max_redeliveries = max_redeliveries
        self._connect = connect
        self._tracker = RedeliveryTracker()
        self._stopping = asyncio.Event()
        self._iterator: AbstractQueueIterator | None = None
        self._task: asyncio.Task | None = None

    # ── Supervision ────────────────────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run_forever(), name=f"consumer:{self.name}")
        return self._task

    async def run_forever(self) -> None:
        """Run the consume procedure, restarting it after every exit until stopped."""
        while not self._stopping.is_set():
            try:
                await self.run_once()
                logger.info("%s consumer exited", self.name)
            except Exception as exc:
                logger.error("%s consumer error: %s", self.name, exc, exc_info=True)
            finally:
                self._iterator = None
                self.state = RunnerState.disconnected

            if self._stopping.is_set():
                break
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._restart_delay)
            except asyncio.TimeoutError:
                pass

        self.state = RunnerState.stopped
        logger.info("%s consumer stopped", self.name)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop pulling deliveries, drain the in-flight one, then end the task."""
        self._stopping.set()
        iterator = self._iterator
        if iterator is not None:
            try:
                await iterator.close()
            except Exception as exc:
                logger.warning("%s: error cancelling consumer: %s", self.name, exc)

        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not drain within %.1fs; cancelling", self.name, timeout)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── One connection lifetime ────────────────────────────────────────────────

    async def run_once(self) -> None:
        self.state = RunnerState.connecting
        connection = await self._connect(self._url)
        async with connection:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._prefetch)
            queue = await declare_queue(channel, self.queue)

            async with queue.iterator() as iterator:
                self._iterator = iterator
                # stop() ran while connecting and had no iterator to close
                if self._stopping.is_set():
                    return
                self.state = RunnerState.consuming
                logger.info(
                    "%s consuming from %s (prefetch=%d)", self.name, self.queue, self._prefetch
                )
                async for message in iterator:
                    await self.process(message)
                    if self._stopping.is_set():
                        break

    async def process(self, message: AbstractIncomingMessage) -> None:
        """Apply the handler to one delivery and settle it with the broker."""
        key = RedeliveryTracker.key_for(message.message_id, message.body)
        try:
            await self._handler(message.body)
        except Exception as exc:
            logger.error("%s: failed to process message %s: %s", self.name, key, exc, exc_info=True)
            await self._settle_failure(message, key, poison=isinstance(exc, UNDECODABLE))
            return

        self._tracker.forget(key)
        try:
            await message.ack()
        except Exception as exc:
            logger.error("%s: failed to ack message %s: %s", self.name, key, exc)

    async def _settle_failure(
        self, message: AbstractIncomingMessage, key: str, *, poison: bool
    ) -> None:
        requeue = True
        if poison and self._max_redeliveries:
            failures = self._tracker.record_failure(key)
            requeue = failures < self._max_redeliveries
        if not requeue:
            logger.error(
                "%s: message %s failed %d times; dead-lettering", self.name, key, failures
            )
            self._tracker.forget(key)
        try:
            await message.nack(requeue=requeue)
        except Exception as exc:
            logger.error("%s: failed to nack message %s: %s", self.name, key, exc)
