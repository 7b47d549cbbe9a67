"""ClusterBus CLI — publish events and watch them fly by.

Usage:
    clusterbus publish change:restaurant             # Notify every subscriber
    clusterbus publish user_42 org_7                 # Several events at once
    clusterbus listen change:restaurant user_42      # Print deliveries until Ctrl-C
    clusterbus serve --port 8000                     # Run the WebSocket bridge

Connection options default to the CLUSTERBUS_* environment variables.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Optional

import click
import structlog
import uvicorn

from clusterbus import __version__
from clusterbus.config import settings
from clusterbus.dispatcher import Dispatcher

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop — normal CLI invocation
        return asyncio.run(coro)
    else:
        # Already inside an event loop (e.g. test runner) — run in a thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _configure_logging(debug: bool) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.WARNING
        ),
    )


def _dispatcher(ctx: click.Context) -> Dispatcher:
    """Build and start a dispatcher from the group options."""
    opts = ctx.obj
    config = settings.dispatcher_config()
    return Dispatcher(
        config,
        client_factory=opts.get("client_factory"),
    ).start(
        port=opts["port"],
        host=opts["host"],
        password=opts["password"],
        debug=opts["debug"],
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="clusterbus")
@click.option("--host", default=settings.redis_host, show_default=True, help="Redis host")
@click.option("--port", "-p", default=settings.redis_port, show_default=True, type=int, help="Redis port")
@click.option("--password", default=settings.redis_password, help="Redis password")
@click.option("--debug", is_flag=True, default=settings.debug, help="Log every dispatcher operation")
@click.pass_context
def main(ctx: click.Context, host: str, port: int, password: Optional[str], debug: bool):
    """ClusterBus — payload-less cluster-wide event signaling."""
    ctx.ensure_object(dict)
    ctx.obj.update(host=host, port=port, password=password, debug=debug)
    _configure_logging(debug)


@main.command()
@click.argument("events", nargs=-1, required=True)
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for the broker")
@click.pass_context
def publish(ctx: click.Context, events: tuple[str, ...], timeout: float):
    """Publish one or more EVENTS to every subscriber in the cluster."""
    ok = _run(_publish_impl(ctx, events, timeout))
    if not ok:
        click.secho(f"Broker unreachable after {timeout:.0f}s, events not sent.", fg="red", err=True)
        ctx.exit(1)


async def _publish_impl(ctx: click.Context, events: tuple[str, ...], timeout: float) -> bool:
    dispatcher = _dispatcher(ctx)
    try:
        for event in events:
            dispatcher.publish(event)
        try:
            await asyncio.wait_for(dispatcher.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        for event in events:
            click.echo(f"Published {event}")
        return True
    finally:
        await dispatcher.close()


@main.command()
@click.argument("events", nargs=-1, required=True)
@click.option("--count", "-n", type=int, default=None, help="Exit after this many deliveries")
@click.pass_context
def listen(ctx: click.Context, events: tuple[str, ...], count: Optional[int]):
    """Print every delivery of EVENTS until interrupted."""
    try:
        _run(_listen_impl(ctx, events, count))
    except KeyboardInterrupt:
        click.echo()


async def _listen_impl(ctx: click.Context, events: tuple[str, ...], count: Optional[int]) -> None:
    dispatcher = _dispatcher(ctx)
    done = asyncio.Event()
    received = 0

    def on_event(_context, event: str) -> None:
        nonlocal received
        received += 1
        click.echo(event)
        if count is not None and received >= count:
            done.set()

    listener = object()
    registry = dispatcher.attach(listener)
    for event in events:
        registry.subscribe(event, on_event)
    click.secho(f"Listening on {', '.join(events)}", fg="green", err=True)

    try:
        await done.wait()
    finally:
        await dispatcher.close()


@main.command()
@click.option("--bind", default=settings.host, show_default=True, help="Interface for the WebSocket bridge")
@click.option("--bind-port", default=settings.port, show_default=True, type=int, help="Port for the WebSocket bridge")
def serve(bind: str, bind_port: int):
    """Run the WebSocket bridge (clusterbus.main:app) under uvicorn."""
    click.secho(f"Serving on http://{bind}:{bind_port}", fg="green", err=True)
    uvicorn.run("clusterbus.main:app", host=bind, port=bind_port)
