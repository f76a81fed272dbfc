"""Wires the two event streams to their handlers.

Each stream gets its own broker connection, prefetch limit and supervising
task; both write through the shared session factory.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from homeenergy.config import Settings
from homeenergy.messaging.consumer import ConsumerRunner
from homeenergy.workers.aggregator import MeasurementAggregator
from homeenergy.workers.directory_sync import DeviceDirectorySync


def build_consumers(
    config: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> list[ConsumerRunner]:
    common = {
        "restart_delay": config.consumer_restart_delay_seconds,
        "max_redeliveries": config.max_redeliveries,
    }
    return [
        ConsumerRunner(
            "sync",
            config.sync_broker_url,
            config.sync_queue,
            DeviceDirectorySync(session_factory),
            prefetch=config.sync_prefetch,
            **common,
        ),
        ConsumerRunner(
            "measurements",
            config.data_broker_url,
            config.measurement_queue,
            MeasurementAggregator(session_factory),
            prefetch=config.measurement_prefetch,
            **common,
        ),
    ]
