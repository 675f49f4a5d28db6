"""
Jibri queue client: join a recording/dial-out waiting queue over XMPP and
follow its position, estimated wait and authorization token.
"""

from jibri_queue.connection import MatchSpec, StanzaConnection, XMPPConnection
from jibri_queue.errors import AlreadyJoinedError, NotJoinedError, QueueError, TransportError
from jibri_queue.events import EventEmitter, Subscription
from jibri_queue.ids import InstanceCounter, default_counter
from jibri_queue.queue import QueueClient
from jibri_queue.types import EventKind, QueueAction

__all__ = [
    "AlreadyJoinedError",
    "EventEmitter",
    "EventKind",
    "InstanceCounter",
    "MatchSpec",
    "NotJoinedError",
    "QueueAction",
    "QueueClient",
    "QueueError",
    "StanzaConnection",
    "Subscription",
    "TransportError",
    "XMPPConnection",
    "default_counter",
]
