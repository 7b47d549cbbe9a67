"""Dispatcher — attach contexts, subscribe them to events, publish anywhere.

Learn: Usage looks like this:

    dispatcher = clusterbus.start(6379, "localhost")
    registry = dispatcher.attach(socket)          # e.g. one per WebSocket client
    registry.subscribe("user_20ea5dc5", on_user_changed)
    ...
    dispatcher.publish("user_20ea5dc5")           # from any process
    # → on_user_changed(socket, "user_20ea5dc5") runs shortly after

A dispatcher owns one shared publisher connection for the whole process,
plus one dedicated subscriber connection per attached context, so one
context's subscriptions never interfere with another's.

Attachment state lives in a side-table keyed by context identity; the
context object itself is never modified. Everything here runs on one event
loop and none of the public calls suspend, so attach's check-and-insert
cannot interleave with another attach.
"""

import asyncio
import dataclasses
from typing import Any, Optional

import structlog

from clusterbus.config import DispatcherConfig
from clusterbus.connection import ClientFactory, Connection, create_connection
from clusterbus.errors import NotStartedError
from clusterbus.publisher import Publisher
from clusterbus.registry import Callback, ContextRegistry
from clusterbus.router import MessageRouter

logger = structlog.get_logger()


class Dispatcher:
    """Process-wide signaling hub. Create one with `start()`."""

    def __init__(
        self,
        config: Optional[DispatcherConfig] = None,
        *,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config or DispatcherConfig()
        self._client_factory = client_factory
        self._publisher: Optional[Publisher] = None
        self._registries: dict[int, ContextRegistry] = {}
        self._closing: set[asyncio.Task] = set()

    @property
    def debug(self) -> bool:
        return self.config.debug

    @property
    def started(self) -> bool:
        return self._publisher is not None

    @property
    def publisher(self) -> Optional[Publisher]:
        return self._publisher

    @property
    def contexts(self) -> int:
        return len(self._registries)

    def __len__(self) -> int:
        return len(self._registries)

    # ─── Lifecycle ────────────────────────────────────────

    def start(
        self,
        port: Optional[int] = None,
        host: Optional[str] = None,
        password: Optional[str] = None,
        debug: Optional[bool] = None,
    ) -> "Dispatcher":
        """Open the shared publisher connection.

        Calling this again replaces the configuration and the publisher
        connection; the previous publisher is closed in the background.
        Contexts attached earlier keep their existing connections.
        """
        changes = {
            key: value
            for key, value in (("port", port), ("host", host), ("password", password), ("debug", debug))
            if value is not None
        }
        if changes:
            self.config = dataclasses.replace(self.config, **changes)

        previous = self._publisher
        connection = create_connection(
            self.config,
            name="publisher",
            client_factory=self._client_factory,
        )
        self._publisher = Publisher(connection, debug=self.config.debug)
        if previous is not None:
            self._close_later(previous.connection)

        logger.info(
            "clusterbus.started",
            host=self.config.host,
            port=self.config.port,
            auth=self.config.password is not None,
            debug=self.config.debug,
        )
        return self

    async def drain(self) -> None:
        """Wait until every connection is up and has flushed its queue."""
        connections = [registry.connection for registry in self._registries.values()]
        if self._publisher is not None:
            connections.append(self._publisher.connection)
        await asyncio.gather(*(c.drain() for c in connections if c is not None))

    async def close(self) -> None:
        """Detach everything, close the publisher and wait for all links to go."""
        for registry in list(self._registries.values()):
            self.detach(registry.context)
        publisher, self._publisher = self._publisher, None
        if publisher is not None:
            self._close_later(publisher.connection)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info("clusterbus.stopped")

    def _close_later(self, connection: Connection) -> None:
        task = asyncio.create_task(connection.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    # ─── Attachment ───────────────────────────────────────

    def attach(self, context: Any) -> Optional[ContextRegistry]:
        """Attach `context` and return its registry.

        Returns None for a None context. Attaching an attached context is a
        no-op that returns the existing registry.
        """
        if context is None:
            return None
        existing = self.registry(context)
        if existing is not None:
            return existing
        if self.debug:
            logger.info("clusterbus.attach")

        connection = create_connection(
            self.config,
            subscriber=True,
            client_factory=self._client_factory,
        )
        registry = ContextRegistry(context, connection, debug=self.debug)
        connection.on_message = MessageRouter(
            registry,
            isolate_callbacks=self.config.isolate_callbacks,
            debug=self.debug,
        )
        self._registries[id(context)] = registry
        return registry

    def attached(self, context: Any) -> bool:
        attached = self.registry(context) is not None
        if self.debug:
            logger.info("clusterbus.attached", attached=attached)
        return attached

    def registry(self, context: Any) -> Optional[ContextRegistry]:
        if context is None:
            return None
        registry = self._registries.get(id(context))
        if registry is None or registry.context is not context:
            return None
        return registry

    def detach(self, context: Any) -> None:
        """Stop all of `context`'s subscriptions and close its connection."""
        registry = self.registry(context)
        if registry is None:
            return
        if self.debug:
            logger.info("clusterbus.detach", connection=registry.connection.name)

        del self._registries[id(context)]
        router = registry.connection.on_message
        connection = registry.release()
        if isinstance(router, MessageRouter):
            router.cancel()
        if connection is not None:
            self._close_later(connection)

    # ─── Convenience ──────────────────────────────────────

    def subscribe(self, context: Any, event: str, callback: Callback) -> "Dispatcher":
        """Subscribe an attached context. No-op for unattached contexts."""
        registry = self.registry(context)
        if registry is not None:
            registry.subscribe(event, callback)
        return self

    def unsubscribe(self, context: Any, event: str, callback: Callback) -> "Dispatcher":
        registry = self.registry(context)
        if registry is not None:
            registry.unsubscribe(event, callback)
        return self

    def publish(self, event: str) -> "Dispatcher":
        """Notify every subscriber of `event` across the cluster."""
        if not event:
            return self
        if self._publisher is None:
            raise NotStartedError("Dispatcher.start() must run before publishing")
        self._publisher.publish(event)
        return self

    def get_stats(self) -> dict:
        """Return dispatcher statistics for monitoring."""
        publisher = self._publisher.connection if self._publisher else None
        return {
            "started": publisher is not None,
            "publisher_connected": bool(publisher and publisher.connected),
            "publisher_pending": publisher.pending if publisher else 0,
            "attached": len(self._registries),
            "subscriptions": sum(len(r.events) for r in self._registries.values()),
        }


def start(
    port: int = 6379,
    host: str = "localhost",
    password: Optional[str] = None,
    debug: bool = False,
    *,
    client_factory: Optional[ClientFactory] = None,
    **options: Any,
) -> Dispatcher:
    """Build a dispatcher for the given broker and open its publisher connection.

    Extra keyword options are DispatcherConfig fields (reconnect delays,
    poll timeout, isolate_callbacks). Must be called from a running event loop.
    """
    config = DispatcherConfig(host=host, port=port, password=password, debug=debug, **options)
    return Dispatcher(config, client_factory=client_factory).start()
