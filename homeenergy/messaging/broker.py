"""Queue topology shared by producers and consumers.

Both sides declare every queue through :func:`declare_queue` so the broker
always sees identical arguments; a mismatch would make RabbitMQ reject the
declaration with PRECONDITION_FAILED.

Queue arguments cannot be changed on an existing queue. A broker where
``sync.events`` or ``device.measurements`` was already declared without the
``x-dead-letter-*`` arguments (by an older producer) must have those queues
deleted and redeclared, or drained and recreated, before this version starts;
until then every declaration fails and the consumers keep restarting. Every
producer writing to these queues has to declare them the same way.
"""

import logging

from aio_pika.abc import AbstractChannel, AbstractQueue
from aio_pika.exceptions import ChannelPreconditionFailed

logger = logging.getLogger(__name__)

DEAD_LETTER_SUFFIX = ".dead-letter"


def dead_letter_queue_name(queue: str) -> str:
    return f"{queue}{DEAD_LETTER_SUFFIX}"


async def declare_queue(channel: AbstractChannel, queue: str) -> AbstractQueue:
    """Idempotently declare *queue* and its dead-letter companion.

    Messages rejected without requeue are routed by the default exchange
    into ``<queue>.dead-letter``.
    """
    dead_letter = dead_letter_queue_name(queue)
    await channel.declare_queue(dead_letter, durable=True, auto_delete=False)
    try:
        declared = await channel.declare_queue(
            queue,
            durable=True,
            auto_delete=False,
            arguments={
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": dead_letter,
            },
        )
    except ChannelPreconditionFailed:
        logger.error(
            "Queue %s exists with different arguments; delete and redeclare it "
            "with x-dead-letter-routing-key=%s",
            queue, dead_letter,
        )
        raise
    logger.debug("Declared queue %s (dead-letter: %s)", queue, dead_letter)
    return declared
