"""Error types.

Learn: Three kinds of trouble exist:
- Transport failures (broker down, link dropped) are logged and masked
  by reconnecting. They never reach callers.
- Caller misuse (missing event, callback or context) is a silent no-op.
  Publishing a real event before start() raises NotStartedError.
- A non-empty payload on delivery is a protocol violation. It is raised
  in the delivery path and kills that delivery, never the connection.
"""


class DispatcherError(Exception):
    """Base class for every error raised by clusterbus."""


class ProtocolViolation(DispatcherError):
    """Raised when a delivered message carries a payload.

    Publishers only ever send an empty payload, so anything else means a
    misbehaving or compromised publisher is on the broker.
    """

    def __init__(self, event: str, payload: object):
        self.event = event
        self.payload = payload
        super().__init__(
            f"A payload was delivered on {event!r}. Payloads are not supported "
            "to avoid leaking data around access control."
        )


class NotStartedError(DispatcherError):
    """Raised when publishing through a dispatcher that was never started."""
