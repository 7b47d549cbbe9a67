"""Publisher — fire-and-forget event broadcast across the cluster.

Learn: Publishing is just PUBLISH <event> "" on the shared publisher
connection. No payload ever travels: subscribers re-fetch whatever changed
through their normal, access-controlled APIs. There is no delivery
acknowledgment and no retry beyond what the connection's offline queue
provides.
"""

import structlog

from clusterbus.connection import Connection

logger = structlog.get_logger()


class Publisher:
    """Sends event names over one shared connection."""

    def __init__(self, connection: Connection, *, debug: bool = False):
        self.connection = connection
        self._debug = debug

    def publish(self, event: str) -> None:
        if self._debug:
            logger.info("clusterbus.publish", channel=event)
        if not event:
            return
        self.connection.publish(event, "")
