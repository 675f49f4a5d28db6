from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional, Union

from slixmpp.xmlstream import ET

from jibri_queue.connection import HandlerRef, MatchSpec, StanzaConnection
from jibri_queue.errors import AlreadyJoinedError, NotJoinedError, TransportError
from jibri_queue.events import EventEmitter, EventHandler, Subscription
from jibri_queue.ids import InstanceCounter, default_counter
from jibri_queue.types import (
    EventKind, InfoUpdate, QueueAction, QueueMetrics, TokenUpdate, parse_update,
)
from shared.config import QueueSettings
from shared.log import get_logger, log_stanza
from shared.stanza import JIBRI_QUEUE_NS, Stanza, add_error, create_iq, create_result, qname

logger = get_logger(__name__)


class QueueClient:
    """
    Membership in a Jibri queue on behalf of one conference room.

    The queue service pushes 'info' (position / estimated wait) and 'token'
    updates while we wait; they are republished as 'metrics' and 'token'
    events. Pushes are only processed between a successful join and
    dispose().
    """

    def __init__(self, connection: StanzaConnection, queue_jid: str, room_jid: str,
                 *, counter: Optional[InstanceCounter] = None,
                 settings: Optional[QueueSettings] = None) -> None:
        self._id = (counter or default_counter()).next_id()
        self._queue_jid = queue_jid
        self._room_jid = room_jid
        self._connection = connection
        self._settings = settings or QueueSettings()
        self._metrics = QueueMetrics()
        self._has_joined = False
        self._events = EventEmitter()
        # Registered before returning so no push can be missed
        self._handler_ref: HandlerRef = connection.add_handler(
            self._on_iq, JIBRI_QUEUE_NS, "iq", "set",
            MatchSpec(from_=queue_jid, match_bare_from=True),
        )

    @property
    def id(self) -> int:
        return self._id

    @property
    def queue_jid(self) -> str:
        return self._queue_jid

    @property
    def room_jid(self) -> str:
        return self._room_jid

    @property
    def joined(self) -> bool:
        return self._has_joined

    @property
    def metrics(self) -> Dict[str, str]:
        return self._metrics.as_dict()

    def subscribe(self, kind: Union[EventKind, str], handler: EventHandler) -> Subscription:
        return self._events.subscribe(kind, handler)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self._events.unsubscribe(subscription)

    # ========================================
    #           JOIN / LEAVE
    # ========================================

    def join(self) -> asyncio.Future:
        """Ask the queue service to add our room to the queue."""
        future = asyncio.get_running_loop().create_future()
        if self._has_joined:
            future.set_exception(AlreadyJoinedError())
            return future

        request = self._request(QueueAction.JOIN, room=self._room_jid)

        def on_success(_: Stanza) -> None:
            self._has_joined = True
            logger.debug("Successfully joined the jibri queue!", extra=self._log_context())
            _resolve(future)

        def on_error(error: Any) -> None:
            logger.error(f"Error joining the jibri queue - {error}!", extra=self._log_context())
            _reject(future, TransportError.wrap(error))

        self._connection.send_iq(request, on_success, on_error)
        return future

    def leave(self) -> asyncio.Future:
        """
        Ask the queue service to drop us.

        The membership flag stays set after a successful leave unless
        settings.reset_membership_on_leave is enabled.
        """
        future = asyncio.get_running_loop().create_future()
        if not self._has_joined:
            future.set_exception(NotJoinedError())
            return future

        request = self._request(QueueAction.LEAVE)

        def on_success(_: Stanza) -> None:
            if self._settings.reset_membership_on_leave:
                self._has_joined = False
            logger.debug("Successfully left the jibri queue!", extra=self._log_context())
            _resolve(future)

        def on_error(error: Any) -> None:
            logger.error(f"Error leaving the jibri queue - {error}!", extra=self._log_context())
            _reject(future, TransportError.wrap(error))

        self._connection.send_iq(request, on_success, on_error)
        return future

    def _request(self, action: QueueAction, **attrs: str) -> Stanza:
        payload = ET.Element(qname(JIBRI_QUEUE_NS, "jibri-queue"), {"action": action.value, **attrs})
        return create_iq("set", self._queue_jid, payload)

    # ========================================
    #           INBOUND PUSHES
    # ========================================

    def _on_iq(self, iq: Stanza) -> bool:
        """Handle a push from the queue service. Returns True once acknowledged."""
        if not self._has_joined:
            return False

        payload = iq.find("jibri-queue", JIBRI_QUEUE_NS)
        if iq.from_ != self._queue_jid or payload is None:
            # Transport matched on the bare JID; anything else should not happen
            log_stanza(logger, "debug", "Ignoring unexpected jibri-queue iq", iq, queue_id=self._id)
            return False

        ack = create_result(iq)
        update = parse_update(payload)

        if isinstance(update, InfoUpdate):
            updated = False
            for key, value in update.fields:
                if self._metrics.update(key, value):
                    updated = True
            if updated:
                snapshot = self._metrics.as_dict()
                self._events.emit(EventKind.METRICS, snapshot)
                logger.debug("JibriQueue info update: %s", snapshot, extra=self._log_context())
        elif isinstance(update, TokenUpdate):
            self._events.emit(EventKind.TOKEN, update.value)
            logger.debug("JibriQueue: token received.", extra=self._log_context())
        else:
            log_stanza(logger, "warning", f"Unsupported jibri-queue action {update.action!r}",
                       iq, queue_id=self._id)
            add_error(ack, "service-unavailable", "cancel")

        self._connection.send(ack)
        return True

    def dispose(self) -> None:
        """Unregister from the connection and detach every listener."""
        self._connection.delete_handler(self._handler_ref)
        self._events.clear()
        self._has_joined = False

    def _log_context(self) -> Dict[str, Any]:
        return {"queue_id": self._id, "queue_jid": self._queue_jid}

    def __repr__(self) -> str:
        return f"QueueClient(id={self._id}, queue_jid={self._queue_jid!r}, joined={self._has_joined})"


def _resolve(future: asyncio.Future) -> None:
    # The caller may have cancelled the future while the request was in flight
    if not future.done():
        future.set_result(None)

def _reject(future: asyncio.Future, error: BaseException) -> None:
    if not future.done():
        future.set_exception(error)
