"""Per-context subscription registry.

Learn: Every attached context gets exactly one ContextRegistry. It owns
the context's dedicated subscriber connection and maps each event name to
the ordered list of callbacks registered for it. Insertion order matters:
callbacks run oldest first.

The broker is told about every subscribe, even repeats (SUBSCRIBE is
idempotent on the broker), and is told to unsubscribe exactly when an
event's callback list becomes empty.
"""

from typing import Any, Callable, Optional

import structlog

from clusterbus.connection import Connection

logger = structlog.get_logger()

Callback = Callable[[Any, str], Any]


class ContextRegistry:
    """Subscriptions of one attached context."""

    def __init__(self, context: Any, connection: Connection, *, debug: bool = False):
        self._context = context
        self._connection: Optional[Connection] = connection
        self._callbacks: dict[str, list[Callback]] = {}
        self._debug = debug

    @property
    def context(self) -> Any:
        return self._context

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    @property
    def events(self) -> list[str]:
        return list(self._callbacks)

    @property
    def released(self) -> bool:
        return self._connection is None

    def callbacks(self, event: str) -> tuple[Callback, ...]:
        """Snapshot of the callbacks for `event`, oldest first."""
        return tuple(self._callbacks.get(event, ()))

    def subscribe(self, event: str, callback: Callback) -> "ContextRegistry":
        """Run `callback(context, event)` whenever `event` is published anywhere.

        Registering the same callback twice means two calls per delivery.
        """
        if self._debug:
            logger.info("clusterbus.subscribe", channel=event)
        if not event or callback is None or self._connection is None:
            return self

        self._callbacks.setdefault(event, []).append(callback)
        self._connection.subscribe(event)
        return self

    def unsubscribe(self, event: str, callback: Callback) -> "ContextRegistry":
        """Remove every registration of `callback` for `event`."""
        if self._debug:
            logger.info("clusterbus.unsubscribe", channel=event)
        if not event or callback is None or self._connection is None:
            return self

        callbacks = self._callbacks.get(event)
        if callbacks:
            callbacks[:] = [cb for cb in callbacks if cb != callback]
        if not callbacks:
            self._callbacks.pop(event, None)
            self._connection.unsubscribe(event)
        return self

    def release(self) -> Optional[Connection]:
        """Drop every reference this registry holds and hand back its connection."""
        connection, self._connection = self._connection, None
        if connection is not None:
            connection.on_message = None
        self._callbacks.clear()
        self._context = None
        return connection

    def __repr__(self) -> str:
        name = self._connection.name if self._connection else "released"
        return f"<ContextRegistry {name} events={len(self._callbacks)}>"
