"""Resilient Redis connections — never give up, never drop a request.

Learn: A Connection wraps one redis.asyncio client and owns a background
task that keeps it alive:

  connect (PING, AUTH via password) → serve → link drops → back off → connect ...

Retry attempts are unlimited and the delay between them decays up to
`reconnect_max_delay` (5s by default). Requests issued while the link is
down wait in an offline queue and are flushed in order on reconnect, so
callers never block and never see a transport error. Errors are logged,
not raised.

Two flavours exist:
- publisher: flushes PUBLISH requests, nothing else.
- subscriber: flushes SUBSCRIBE/UNSUBSCRIBE and concurrently listens for
  messages, handing each one to `on_message(event, payload)`. After every
  reconnect it re-subscribes to the channels it held before the drop.
"""

import asyncio
import contextlib
import itertools
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from clusterbus.config import DispatcherConfig
from clusterbus.errors import ProtocolViolation

logger = structlog.get_logger()

# Everything a dropped or unreachable broker can throw at us
CONNECTION_ERRORS = (RedisError, OSError)

PUBLISH = "publish"
SUBSCRIBE = "subscribe"
UNSUBSCRIBE = "unsubscribe"

MessageHandler = Callable[[str, Any], None]
ClientFactory = Callable[[], aioredis.Redis]

_ids = itertools.count(1)


@dataclass(frozen=True)
class Request:
    """One queued broker command."""
    command: str
    channel: str
    payload: str = ""


def backoff_delay(attempt: int, base: float, maximum: float, factor: float = 2.0) -> float:
    """Delay before reconnect attempt number `attempt` (1-based), capped at `maximum`."""
    if attempt < 1:
        return 0.0
    return min(maximum, base * factor ** (attempt - 1))


def redis_client_factory(config: DispatcherConfig) -> ClientFactory:
    """Build fresh redis.asyncio clients for the configured endpoint.

    The password is applied by redis-py during every connection handshake,
    which covers reconnects as well as the first connect.
    """

    def factory() -> aioredis.Redis:
        return aioredis.Redis(
            host=config.host,
            port=config.port,
            password=config.password,
            decode_responses=True,
        )

    return factory


class Connection:
    """A broker link that queues while offline and reconnects forever."""

    def __init__(
        self,
        config: DispatcherConfig,
        *,
        name: Optional[str] = None,
        subscriber: bool = False,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config
        self.name = name or f"{'subscriber' if subscriber else 'publisher'}-{next(_ids)}"
        self.subscriber = subscriber
        self.on_message: Optional[MessageHandler] = None
        self._client_factory = client_factory or redis_client_factory(config)
        self._client: Optional[aioredis.Redis] = None
        self._pubsub: Any = None
        self._pending: deque[Request] = deque()
        self._channels: set[str] = set()
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._has_channels = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._connected = False
        self._closed = False
        self.violations = 0
        self.last_violation: Optional[ProtocolViolation] = None

    # ─── State ────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of requests waiting in the offline queue."""
        return len(self._pending)

    @property
    def queued(self) -> tuple[Request, ...]:
        return tuple(self._pending)

    @property
    def channels(self) -> frozenset[str]:
        """Channels this connection is subscribed to on the broker."""
        return frozenset(self._channels)

    # ─── Public API (non-blocking) ────────────────────────

    def start(self) -> "Connection":
        """Spawn the I/O task. Requires a running event loop."""
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._run(), name=f"clusterbus:{self.name}")
        return self

    def publish(self, channel: str, payload: str = "") -> None:
        self._enqueue(Request(PUBLISH, channel, payload))

    def subscribe(self, channel: str) -> None:
        self._enqueue(Request(SUBSCRIBE, channel))

    def unsubscribe(self, channel: str) -> None:
        self._enqueue(Request(UNSUBSCRIBE, channel))

    async def drain(self) -> None:
        """Wait until connected with an empty queue."""
        while not (self._connected and not self._pending):
            task = self._task
            if self._closed or task is None or task.done():
                return
            waiter = asyncio.ensure_future(self._idle.wait())
            try:
                await asyncio.wait([waiter, task], return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()

    async def close(self) -> None:
        """Terminate the link. Queued requests are discarded."""
        if self._closed:
            return
        self._closed = True
        self.on_message = None
        self._pending.clear()
        task, self._task = self._task, None
        if task is not None:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._teardown()
        self._idle.set()
        logger.debug("clusterbus.closed", connection=self.name)

    # ─── Internals ────────────────────────────────────────

    def _enqueue(self, request: Request) -> None:
        if self._closed:
            return
        self._pending.append(request)
        self._idle.clear()
        self._wakeup.set()

    async def _run(self) -> None:
        attempt = 0
        while True:
            try:
                await self._open()
            except CONNECTION_ERRORS as e:
                await self._teardown()
                attempt += 1
                delay = backoff_delay(
                    attempt,
                    self.config.reconnect_base_delay,
                    self.config.reconnect_max_delay,
                    self.config.reconnect_factor,
                )
                logger.error(
                    "clusterbus.connect_failed",
                    connection=self.name,
                    attempt=attempt,
                    retry_in=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue

            attempt = 0
            self._connected = True
            logger.info(
                "clusterbus.connected",
                connection=self.name,
                host=self.config.host,
                port=self.config.port,
                pending=len(self._pending),
            )
            try:
                await self._serve()
            except CONNECTION_ERRORS as e:
                logger.error("clusterbus.connection_lost", connection=self.name, error=str(e))
            finally:
                await self._teardown()

    async def _open(self) -> None:
        self._client = self._client_factory()
        await self._client.ping()
        if self.subscriber:
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            if self._channels:
                await self._pubsub.subscribe(*sorted(self._channels))
                self._has_channels.set()

    async def _teardown(self) -> None:
        self._connected = False
        self._idle.clear()
        pubsub, self._pubsub = self._pubsub, None
        client, self._client = self._client, None
        if pubsub is not None:
            with contextlib.suppress(*CONNECTION_ERRORS):
                await pubsub.aclose()
        if client is not None:
            with contextlib.suppress(*CONNECTION_ERRORS):
                await client.aclose()

    async def _serve(self) -> None:
        """Run until the link drops. Subscribers also listen concurrently."""
        if not self.subscriber:
            await self._flush()
            return

        flusher = asyncio.create_task(self._flush())
        listener = asyncio.create_task(self._listen())
        try:
            done, _ = await asyncio.wait(
                [flusher, listener],
                return_when=asyncio.FIRST_EXCEPTION,
            )
        finally:
            for task in (flusher, listener):
                task.cancel()
            await asyncio.gather(flusher, listener, return_exceptions=True)
        for task in done:
            task.result()

    async def _flush(self) -> None:
        while True:
            while self._pending:
                # Leave the request queued until it went through, so a
                # failure retries it after reconnect.
                await self._execute(self._pending[0])
                self._pending.popleft()
            self._wakeup.clear()
            self._idle.set()
            await self._wakeup.wait()

    async def _execute(self, request: Request) -> None:
        if request.command == PUBLISH:
            await self._client.publish(request.channel, request.payload)
        elif request.command == SUBSCRIBE:
            await self._pubsub.subscribe(request.channel)
            self._channels.add(request.channel)
            self._has_channels.set()
        elif request.command == UNSUBSCRIBE:
            await self._pubsub.unsubscribe(request.channel)
            self._channels.discard(request.channel)

    async def _listen(self) -> None:
        while True:
            if not self._pubsub.subscribed:
                self._has_channels.clear()
                await self._has_channels.wait()
                continue
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True,
                timeout=self.config.poll_timeout,
            )
            if message is None or message.get("type") != "message":
                continue
            self._deliver(message["channel"], message["data"])

    def _deliver(self, channel: str, data: Any) -> None:
        handler = self.on_message
        if handler is None:
            return
        try:
            handler(channel, data)
        except ProtocolViolation as e:
            # Only this delivery is lost; the link keeps listening.
            self.violations += 1
            self.last_violation = e
            logger.critical(
                "clusterbus.protocol_violation",
                connection=self.name,
                channel=channel,
                violations=self.violations,
            )
        except Exception:
            logger.exception("clusterbus.delivery_failed", connection=self.name, channel=channel)


def create_connection(
    config: DispatcherConfig,
    *,
    name: Optional[str] = None,
    subscriber: bool = False,
    client_factory: Optional[ClientFactory] = None,
) -> Connection:
    """Create a connection and start keeping it alive."""
    return Connection(
        config,
        name=name,
        subscriber=subscriber,
        client_factory=client_factory,
    ).start()
