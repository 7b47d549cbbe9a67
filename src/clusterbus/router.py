"""Message router — turns broker notifications into callback calls.

Learn: Each subscriber connection hands every inbound message to its
context's router, which runs a small state machine:

  validate → resolve → dispatch

1. Validate: a non-empty payload is a protocol violation. Nothing is
   dispatched and ProtocolViolation is raised on the spot.
2. Resolve: look up the event in the registry. Unknown events are dropped.
3. Dispatch: call every registered callback, oldest first, as
   callback(context, event). Callbacks returning an awaitable are
   scheduled on the running loop.

With isolate_callbacks (the default) a raising callback is logged and the
rest still run. Without it, the first failure aborts the delivery.

The router only holds a weak reference to its registry, so the
connection → router → registry path never keeps a detached context alive.
"""

import asyncio
import inspect
import weakref
from typing import Any

import structlog

from clusterbus.errors import ProtocolViolation
from clusterbus.registry import Callback, ContextRegistry

logger = structlog.get_logger()


class MessageRouter:
    """Routes messages of one subscriber connection to one registry."""

    def __init__(
        self,
        registry: ContextRegistry,
        *,
        isolate_callbacks: bool = True,
        debug: bool = False,
    ):
        self._registry = weakref.ref(registry)
        self.isolate_callbacks = isolate_callbacks
        self._debug = debug
        self._tasks: set[asyncio.Task] = set()

    def __call__(self, event: str, payload: Any = "") -> None:
        self.route(event, payload)

    def route(self, event: str, payload: Any = "") -> None:
        if self._debug:
            logger.info("clusterbus.message", channel=event)
        if not event:
            return
        if payload:
            raise ProtocolViolation(event, payload)

        registry = self._registry()
        if registry is None or registry.released:
            return
        callbacks = registry.callbacks(event)
        if self._debug:
            logger.info("clusterbus.message_callbacks", channel=event, count=len(callbacks))

        context = registry.context
        for callback in callbacks:
            if self.isolate_callbacks:
                try:
                    self._invoke(callback, context, event)
                except Exception:
                    logger.exception("clusterbus.callback_failed", channel=event)
            else:
                self._invoke(callback, context, event)

    def _invoke(self, callback: Callback, context: Any, event: str) -> None:
        result = callback(context, event)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "clusterbus.callback_failed",
                error=str(error),
                exc_info=(type(error), error, error.__traceback__),
            )

    @property
    def in_flight(self) -> int:
        """Async callbacks scheduled and not finished yet."""
        return len(self._tasks)

    def cancel(self) -> None:
        """Cancel async callbacks still running for a detached context."""
        for task in list(self._tasks):
            task.cancel()
