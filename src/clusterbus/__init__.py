"""ClusterBus — payload-less, cluster-wide publish/subscribe signaling.

Any process attaches local objects ("contexts") to a dispatcher. Each
context subscribes to named events, and publishing an event from any
process notifies every matching subscription in the cluster. No data
travels with the event: receivers re-fetch the authoritative state
themselves, so access control never has to be duplicated here.
"""

__version__ = "0.1.0"

from clusterbus.dispatcher import Dispatcher, start
from clusterbus.errors import DispatcherError, NotStartedError, ProtocolViolation
from clusterbus.registry import ContextRegistry

__all__ = [
    "ContextRegistry",
    "Dispatcher",
    "DispatcherError",
    "NotStartedError",
    "ProtocolViolation",
    "start",
]
