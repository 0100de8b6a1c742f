"""Transport tests."""

import asyncio

import pytest

from flowkeeper.contracts import PlatformEvent
from flowkeeper.transports import get_transport
from flowkeeper.transports.inmemory import InMemoryTransport
from flowkeeper.transports.redis import RedisTransport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()

    event = PlatformEvent(
        type="contact.created",
        tenant_id="tenant-1",
        source_module="crm",
        payload={"email": "ann@example.com"},
    )

    await transport.publish("test_topic", event)

    message_received = False
    async for raw_msg, received in transport.subscribe("test_topic"):
        assert received.id == event.id
        assert received.type == "contact.created"
        assert received.payload["email"] == "ann@example.com"

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("test_topic") == 0


@pytest.mark.asyncio
async def test_inmemory_transport_nack_requeues():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("events", PlatformEvent(type="deal.won", tenant_id="t"))

    seen = []
    async for raw_msg, received in transport.subscribe("events", lifespan=0.2):
        seen.append(received.id)
        if len(seen) == 1:
            await transport.nack(raw_msg, requeue=True)
        else:
            await transport.ack(raw_msg)

    assert len(seen) == 2
    assert seen[0] == seen[1]


@pytest.mark.asyncio
async def test_inmemory_transport_nack_without_requeue_drops():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("events", PlatformEvent(type="deal.won", tenant_id="t"))

    async for raw_msg, _ in transport.subscribe("events", lifespan=0.05):
        await transport.nack(raw_msg, requeue=False)

    assert transport.pending("events") == 0


@pytest.mark.asyncio
async def test_inmemory_subscribe_stops_after_lifespan():
    transport = InMemoryTransport(poll_interval=0.01)

    received = [event async for _, event in transport.subscribe("quiet", lifespan=0.05)]

    assert received == []


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert RedisTransport.queue_name("events") == "flowkeeper:events"


def test_get_transport_backend_override():
    assert isinstance(get_transport("inmemory"), InMemoryTransport)
    with pytest.raises(ValueError):
        get_transport("carrier-pigeon")


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for list-based queues."""

    def __init__(self):
        self.lists = {}

    async def ping(self):
        return True

    async def lpush(self, name, value):
        self.lists.setdefault(name, []).insert(0, value)

    async def rpush(self, name, value):
        self.lists.setdefault(name, []).append(value)

    async def brpop(self, name, timeout=0):
        items = self.lists.get(name)
        if items:
            return name, items.pop()
        await asyncio.sleep(0.01)
        return None

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_redis_transport_round_trip_with_requeue():
    client = FakeRedis()
    transport = RedisTransport(client=client)
    first = PlatformEvent(type="deal.won", tenant_id="t", payload={"n": 1})
    second = PlatformEvent(type="deal.won", tenant_id="t", payload={"n": 2})
    await transport.publish("events", first)
    await transport.publish("events", second)

    seen = []
    async for raw_msg, received in transport.subscribe("events", lifespan=0.1):
        seen.append(received.payload["n"])
        if seen == [1]:
            await transport.nack(raw_msg)
        else:
            await transport.ack(raw_msg)

    assert seen == [1, 1, 2]
    assert client.lists["flowkeeper:events"] == []


@pytest.mark.asyncio
async def test_redis_transport_skips_malformed_payloads():
    client = FakeRedis()
    client.lists["flowkeeper:events"] = [
        PlatformEvent(type="ok", tenant_id="t").to_json(),
        "not json",
    ]
    transport = RedisTransport(client=client)

    received = [event.type async for _, event in transport.subscribe("events", lifespan=0.1)]

    assert received == ["ok"]


@pytest.mark.asyncio
async def test_transport_as_context_manager():
    async with InMemoryTransport(poll_interval=0.01) as transport:
        await transport.publish("events", PlatformEvent(type="deal.won", tenant_id="t"))
        received = [event.type async for _, event in transport.subscribe("events", lifespan=0.05)]

    assert received == ["deal.won"]
