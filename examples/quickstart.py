#!/usr/bin/env python3
"""
ClusterBus Quickstart — attach, subscribe, publish, detach in one script.

Two "clients" attach to the dispatcher and subscribe to events. Publishing
an event notifies only the clients subscribed to it; nothing but the event
name travels.
Run with: python examples/quickstart.py

Requires: pip install -e .
Redis must be running: localhost:6379
"""

import asyncio
import sys

import clusterbus


class Client:
    def __init__(self, name: str):
        self.name = name
        self.seen: list[str] = []

    def on_change(self, event: str) -> None:
        # A real client would now re-fetch the changed object via the API
        self.seen.append(event)
        print(f"   {self.name} notified: {event}")


def notify(client: Client, event: str) -> None:
    client.on_change(event)


async def main():
    dispatcher = clusterbus.start(6379, "localhost")

    # ── Connect ───────────────────────────────────────────────────
    print("Connecting to Redis...")
    try:
        await asyncio.wait_for(dispatcher.drain(), timeout=5)
    except asyncio.TimeoutError:
        print("Redis not reachable at localhost:6379")
        await dispatcher.close()
        sys.exit(1)

    # ── Attach two clients ────────────────────────────────────────
    print("\n1. Attaching clients...")
    alice, bob = Client("alice"), Client("bob")
    dispatcher.attach(alice).subscribe("change:restaurant", notify)
    dispatcher.attach(bob).subscribe("change:restaurant", notify).subscribe("user_42", notify)
    await dispatcher.drain()
    print(f"   Attached: {len(dispatcher)}")

    # ── Publish ───────────────────────────────────────────────────
    print("\n2. Publishing change:restaurant (both listen)...")
    dispatcher.publish("change:restaurant")
    await asyncio.sleep(0.2)

    print("\n3. Publishing user_42 (only bob listens)...")
    dispatcher.publish("user_42")
    await asyncio.sleep(0.2)

    # ── Unsubscribe + detach ──────────────────────────────────────
    print("\n4. Bob unsubscribes from change:restaurant, alice detaches...")
    dispatcher.registry(bob).unsubscribe("change:restaurant", notify)
    dispatcher.detach(alice)
    await dispatcher.drain()
    dispatcher.publish("change:restaurant")
    await asyncio.sleep(0.2)
    print("   (nobody notified)")

    print(f"\nalice saw {alice.seen}")
    print(f"bob saw   {bob.seen}")

    await dispatcher.close()


if __name__ == "__main__":
    asyncio.run(main())
