"""Test fixtures — an in-memory broker standing in for Redis.

Learn: Connections take a `client_factory`, so tests hand them clients of
FakeBroker instead of real redis.asyncio clients. The fake implements the
slice of the client surface Connection uses (ping, publish, pubsub with
subscribe/unsubscribe/get_message, aclose) and shares one channel table
between all its clients, so a publish on one client reaches the pub/subs
of every other client, like a real server.

`broker.fail()` makes every call raise redis ConnectionError until
`broker.recover()`, which is how reconnect paths are exercised.
"""

import asyncio
import time

import pytest
import pytest_asyncio
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError

from clusterbus.config import DispatcherConfig
from clusterbus.dispatcher import Dispatcher


class FakePubSub:
    def __init__(self, broker: "FakeBroker"):
        self.broker = broker
        self.channels: dict[str, None] = {}
        self.patterns: dict[str, None] = {}
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    @property
    def subscribed(self) -> bool:
        return bool(self.channels or self.patterns)

    async def subscribe(self, *channels: str) -> None:
        self.broker.check()
        for channel in channels:
            self.channels[channel] = None
            self.broker.subscribe_calls.append(channel)
            if self.broker.echo_on_subscribe:
                self.push(channel, "")

    async def unsubscribe(self, *channels: str) -> None:
        self.broker.check()
        for channel in channels:
            self.channels.pop(channel, None)
            self.broker.unsubscribe_calls.append(channel)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        self.broker.check()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            self.broker.check()
            return None

    async def aclose(self) -> None:
        self.closed = True
        self.channels.clear()
        if self in self.broker.pubsubs:
            self.broker.pubsubs.remove(self)

    def push(self, channel: str, data) -> None:
        self._queue.put_nowait(
            {"type": "message", "pattern": None, "channel": channel, "data": data}
        )


class FakeRedis:
    def __init__(self, broker: "FakeBroker"):
        self.broker = broker
        self.closed = False

    async def ping(self) -> bool:
        self.broker.check()
        self.broker.pings += 1
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.broker.check()
        self.broker.published.append((channel, message))
        return self.broker.deliver(channel, message)

    def pubsub(self, **kwargs) -> FakePubSub:
        pubsub = FakePubSub(self.broker)
        self.broker.pubsubs.append(pubsub)
        return pubsub

    async def aclose(self) -> None:
        self.closed = True


class FakeBroker:
    def __init__(self):
        self.down = False
        self.echo_on_subscribe = False
        self.pings = 0
        self.clients: list[FakeRedis] = []
        self.pubsubs: list[FakePubSub] = []
        self.published: list[tuple[str, str]] = []
        self.subscribe_calls: list[str] = []
        self.unsubscribe_calls: list[str] = []

    def client(self) -> FakeRedis:
        client = FakeRedis(self)
        self.clients.append(client)
        return client

    def check(self) -> None:
        if self.down:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def fail(self) -> None:
        self.down = True

    def recover(self) -> None:
        self.down = False

    def deliver(self, channel: str, data="") -> int:
        """Push a message to every pub/sub subscribed to `channel`."""
        receivers = [p for p in self.pubsubs if channel in p.channels]
        for pubsub in receivers:
            pubsub.push(channel, data)
        return len(receivers)

    def subscribers(self, channel: str) -> int:
        return sum(1 for p in self.pubsubs if channel in p.channels)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll `predicate` on the running loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


FAST = DispatcherConfig(
    reconnect_base_delay=0.01,
    reconnect_max_delay=0.05,
    poll_timeout=0.02,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture()
def broker():
    return FakeBroker()


@pytest.fixture()
def config():
    return FAST


@pytest_asyncio.fixture()
async def dispatcher(broker, config):
    """A started dispatcher wired to the fake broker, closed after the test."""
    d = Dispatcher(config, client_factory=broker.client).start()
    try:
        yield d
    finally:
        await d.close()
