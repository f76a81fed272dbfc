"""Shared pytest fixtures for the HomeEnergy test suite.

Nothing here needs a live PostgreSQL or RabbitMQ: storage functions are
patched with an in-memory directory and broker objects are replaced by small
fakes that mimic the aio-pika surface the code uses.
"""

import asyncio
import itertools
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from aio_pika.exceptions import ChannelPreconditionFailed
from httpx import ASGITransport, AsyncClient

from homeenergy.db.session import get_db
from homeenergy.main import app
from homeenergy.models.device import PLACEHOLDER_DEVICE_NAME
from homeenergy.services.consumption import DeviceNotSyncedError


# ── HTTP ──────────────────────────────────────────────────────────────────────

@pytest.fixture
async def client(fake_session) -> AsyncClient:
    """Async test client that talks directly to the ASGI app (no network required)."""

    async def _override_get_db():
        yield fake_session

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


# ── Storage ───────────────────────────────────────────────────────────────────

class FakeSession:
    """Stands in for AsyncSession; records transaction boundaries only."""

    def __init__(self) -> None:
        self.commits = 0
        self.rollbacks = 0
        self.execute_error: Exception | None = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, *args, **kwargs):
        if self.execute_error is not None:
            raise self.execute_error
        return None

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def session_factory(fake_session: FakeSession):
    return lambda: fake_session


class InMemoryDirectory:
    """Device directory + hourly buckets with the same semantics as the SQL."""

    def __init__(self) -> None:
        self.devices: dict[uuid.UUID, dict] = {}
        self.buckets: dict[tuple, float] = {}
        self._clock = itertools.count()
        self._epoch = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        return self._epoch + timedelta(seconds=next(self._clock))

    async def accumulate(self, db, device_id, bucket, value) -> None:
        if device_id not in self.devices:
            raise DeviceNotSyncedError(device_id)
        key = (device_id, bucket.day, bucket.hour)
        self.buckets[key] = self.buckets.get(key, 0.0) + value

    async def ensure_placeholder(self, db, device_id) -> None:
        if device_id in self.devices:
            return
        now = self._now()
        self.devices[device_id] = {
            "id": device_id,
            "user_id": None,
            "name": PLACEHOLDER_DEVICE_NAME,
            "max_consumption": None,
            "metadata": {},
            "placeholder": True,
            "created_at": now,
            "updated_at": now,
        }

    async def upsert(self, db, payload) -> None:
        now = self._now()
        existing = self.devices.get(payload.id)
        self.devices[payload.id] = {
            "id": payload.id,
            "user_id": payload.user_id,
            "name": payload.name,
            "max_consumption": payload.max_consumption,
            "metadata": dict(payload.metadata),
            "placeholder": False,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }

    async def delete(self, db, device_id) -> None:
        self.devices.pop(device_id, None)
        # ON DELETE CASCADE
        for key in [k for k in self.buckets if k[0] == device_id]:
            del self.buckets[key]


@pytest.fixture
def directory(monkeypatch) -> InMemoryDirectory:
    store = InMemoryDirectory()
    monkeypatch.setattr("homeenergy.workers.aggregator.accumulate_measurement", store.accumulate)
    monkeypatch.setattr(
        "homeenergy.workers.aggregator.ensure_device_placeholder", store.ensure_placeholder
    )
    monkeypatch.setattr("homeenergy.workers.directory_sync.upsert_device", store.upsert)
    monkeypatch.setattr("homeenergy.workers.directory_sync.delete_device", store.delete)
    return store


# ── Broker ────────────────────────────────────────────────────────────────────

class FakeIncomingMessage:
    def __init__(self, body: bytes, message_id: str | None = None, fail_ack: bool = False):
        self.body = body
        self.message_id = message_id
        self.fail_ack = fail_ack
        self.acked = False
        self.nacks: list[bool] = []

    async def ack(self) -> None:
        if self.fail_ack:
            raise ConnectionError("channel closed")
        self.acked = True

    async def nack(self, requeue: bool = True) -> None:
        self.nacks.append(requeue)


class FakeQueueIterator:
    def __init__(self, messages: list, idle: bool = False) -> None:
        self._messages = messages
        self._idle = idle
        self._closed = asyncio.Event()
        self.closed = False
        self.pulled = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def __aiter__(self):
        return self

    async def __anext__(self):
        self.pulled += 1
        if not self.closed and not self._messages and self._idle:
            # Like a live subscription: wait for deliveries until cancelled
            await self._closed.wait()
        if self.closed or not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)

    async def close(self) -> None:
        self.closed = True
        self._closed.set()


class FakeQueue:
    def __init__(self, name: str) -> None:
        self.name = name
        self.messages: list[FakeIncomingMessage] = []
        self.iterators: list[FakeQueueIterator] = []
        self.idle = False

    def iterator(self) -> FakeQueueIterator:
        it = FakeQueueIterator(self.messages, idle=self.idle)
        self.iterators.append(it)
        return it


class FakeExchange:
    def __init__(self, broker: "FakeBroker") -> None:
        self._broker = broker

    async def publish(self, message, routing_key: str, timeout=None):
        broker = self._broker
        broker.publish_attempts += 1
        broker.attempted_ids.append(message.message_id)
        if broker.publish_failures:
            broker.publish_failures -= 1
            raise ConnectionError("confirm not received")
        broker.in_flight += 1
        broker.max_in_flight = max(broker.max_in_flight, broker.in_flight)
        try:
            if broker.gate is not None:
                await broker.gate.wait()
        finally:
            broker.in_flight -= 1
        broker.published.append((routing_key, message))


class FakeChannel:
    def __init__(self, broker: "FakeBroker", publisher_confirms: bool) -> None:
        self._broker = broker
        self.publisher_confirms = publisher_confirms
        self.default_exchange = FakeExchange(broker)
        self.declared: list[dict] = []
        self.prefetch: int | None = None

    async def declare_queue(self, name, durable=False, auto_delete=False, arguments=None):
        if name in self._broker.mismatched_queues:
            raise ChannelPreconditionFailed()
        self.declared.append(
            {"name": name, "durable": durable, "auto_delete": auto_delete, "arguments": arguments}
        )
        return self._broker.queue(name)

    async def set_qos(self, prefetch_count: int) -> None:
        self.prefetch = prefetch_count


class FakeConnection:
    def __init__(self, broker: "FakeBroker") -> None:
        self._broker = broker
        self.channels: list[FakeChannel] = []
        self.closed = False

    async def channel(self, publisher_confirms: bool = True) -> FakeChannel:
        ch = FakeChannel(self._broker, publisher_confirms)
        self.channels.append(ch)
        return ch

    async def close(self) -> None:
        self.closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()


class FakeBroker:
    """In-process stand-in for RabbitMQ with scriptable failures."""

    def __init__(self) -> None:
        self.connects = 0
        self.connect_failures = 0
        self.publish_failures = 0
        self.publish_attempts = 0
        self.attempted_ids: list[str] = []
        self.published: list[tuple] = []
        self.connections: list[FakeConnection] = []
        self.queues: dict[str, FakeQueue] = {}
        self.gate: asyncio.Event | None = None
        self.connect_gate: asyncio.Event | None = None
        self.mismatched_queues: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    async def connect(self, url: str) -> FakeConnection:
        self.connects += 1
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_failures:
            self.connect_failures -= 1
            raise ConnectionError("broker unreachable")
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    def queue(self, name: str) -> FakeQueue:
        return self.queues.setdefault(name, FakeQueue(name))


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def make_message():
    def _make(body: bytes, message_id: str | None = None, fail_ack: bool = False):
        return FakeIncomingMessage(body, message_id=message_id, fail_ack=fail_ack)

    return _make
