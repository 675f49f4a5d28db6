from __future__ import annotations
import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Optional, Tuple

from slixmpp import ClientXMPP
from slixmpp.exceptions import IqError, IqTimeout
from slixmpp.jid import JID
from slixmpp.xmlstream import StanzaBase
from slixmpp.xmlstream.handler import Callback
from slixmpp.xmlstream.matcher import MatchXPath
from slixmpp.xmlstream.matcher.base import MatcherBase

from jibri_queue.errors import TransportError
from shared.log import get_logger, log_stanza
from shared.stanza import CLIENT_NS, Stanza, StanzaParseError, qname

logger = get_logger(__name__)


# Returns True when the stanza was handled and no other handler should see it
StanzaHandler = Callable[[Stanza], Optional[bool]]
SuccessCallback = Callable[[Stanza], None]
ErrorCallback = Callable[[Any], None]


@dataclass(frozen=True)
class MatchSpec:
    """Sender filter for a handler. from_=None matches any sender."""
    from_: Optional[str] = None
    match_bare_from: bool = False


@dataclass(frozen=True)
class HandlerRef:
    """Opaque registration handle returned by add_handler()."""
    token: int


class StanzaConnection(ABC):
    """What a QueueClient needs from the XMPP connection it rides on."""

    @abstractmethod
    def add_handler(self, handler: StanzaHandler, namespace: Optional[str], name: Optional[str],
                    type: Optional[str], match: MatchSpec = MatchSpec()) -> HandlerRef:
        """Deliver inbound stanzas matching the filters to handler."""

    @abstractmethod
    def delete_handler(self, ref: HandlerRef) -> None:
        """Stop delivering to a handler. Raises KeyError for unknown refs."""

    @abstractmethod
    def send_iq(self, stanza: Stanza, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        """Send an iq request; exactly one callback fires, exactly once."""

    @abstractmethod
    def send(self, stanza: Stanza) -> None:
        """Fire-and-forget send."""


def stanza_xpath(namespace: Optional[str], name: Optional[str], type: Optional[str]) -> str:
    """
    MatchXPath criteria for the element filters, e.g.

        {jabber:client}iq[@type='set']/{http://jitsi.org/protocol/jibri-queue}*
    """
    path = qname(CLIENT_NS, name) if name else "*"
    if type:
        path += f"[@type='{type}']"
    if namespace:
        path += "/" + qname(namespace, "*")
    return path


class StanzaFilter(MatcherBase):
    """
    MatchXPath on kind, type and payload namespace, then the sender check
    XPath cannot express: comparing bare JIDs.
    """

    def __init__(self, namespace: Optional[str], name: Optional[str], type: Optional[str],
                 match: MatchSpec = MatchSpec()) -> None:
        super().__init__(match)
        self._xpath = MatchXPath(stanza_xpath(namespace, name, type))
        self._from = JID(match.from_) if match.from_ is not None else None

    def match(self, stanza: StanzaBase) -> bool:
        if not self._xpath.match(stanza):
            return False
        if self._from is None:
            return True
        sender = stanza['from']
        if self._criteria.match_bare_from:
            return sender.bare == self._from.bare
        return sender.full == self._from.full


class XMPPConnection(StanzaConnection):
    """
    StanzaConnection over a slixmpp ClientXMPP stream.

    slixmpp owns the socket, stream negotiation, authentication, resource
    binding and iq id correlation. This adapter converts between its
    stanza objects and Stanza, and guarantees every send_iq() settles
    exactly once, including when the stream goes away.
    """

    def __init__(self, xmpp: ClientXMPP, *, iq_timeout: Optional[float] = None) -> None:
        self.xmpp = xmpp
        # None leaves slixmpp's default iq timeout in place
        self.iq_timeout = iq_timeout
        self.handlers: Dict[HandlerRef, Callback] = {}
        self._tokens = itertools.count()
        self._pending: Dict[str, Tuple[SuccessCallback, ErrorCallback]] = {}
        self._session: Optional[asyncio.Future] = None
        self._closed = asyncio.Event()

        xmpp.add_event_handler("session_start", self._on_session_start)
        xmpp.add_event_handler("connection_failed", self._on_connection_failed)
        xmpp.add_event_handler("disconnected", self._on_disconnected)

    # ========================================
    #           CONNECTION LIFECYCLE
    # ========================================

    async def connect(self, host: Optional[str] = None, port: int = 5222) -> None:
        """
        Open the stream and wait for session_start.

        Args:
            host: server to dial; None resolves the JID's domain
            port: client-to-server port

        Raises:
            TransportError: the connection failed or was closed before the
                            session started (bad credentials end up here too)
        """
        self._session = asyncio.get_running_loop().create_future()
        self._closed.clear()
        logger.info("Connecting as %s to %s:%s", self.xmpp.boundjid, host or self.xmpp.boundjid.domain, port)
        await self.xmpp.connect(host=host or "", port=port)
        await self._session
        logger.info("Session started as %s", self.xmpp.boundjid)

    def _on_session_start(self, _event: Any) -> None:
        if self._session is not None and not self._session.done():
            self._session.set_result(None)

    def _on_connection_failed(self, error: Any) -> None:
        logger.warning("Connection attempt failed: %s", error)
        self._fail_session(TransportError(f"Connection failed: {error}", condition="disconnected"))

    def _on_disconnected(self, reason: Any) -> None:
        logger.warning("Disconnected: %s", reason or "no reason given")
        self._fail_session(TransportError(f"Disconnected: {reason}", condition="disconnected"))
        self._fail_pending("Disconnected")
        self._closed.set()

    def _fail_session(self, error: TransportError) -> None:
        if self._session is not None and not self._session.done():
            self._session.set_exception(error)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self) -> None:
        if self._session is not None:
            await self.xmpp.disconnect()
        self._fail_pending("Connection closed")
        self._closed.set()

    # ========================================
    #           INBOUND HANDLERS
    # ========================================

    def add_handler(self, handler: StanzaHandler, namespace: Optional[str], name: Optional[str],
                    type: Optional[str], match: MatchSpec = MatchSpec()) -> HandlerRef:
        ref = HandlerRef(next(self._tokens))
        callback = Callback(
            f"StanzaConnection {id(self)}/{ref.token}",
            StanzaFilter(namespace, name, type, match),
            partial(self._deliver, handler),
        )
        self.xmpp.register_handler(callback)
        self.handlers[ref] = callback
        return ref

    def delete_handler(self, ref: HandlerRef) -> None:
        callback = self.handlers.pop(ref)
        self.xmpp.remove_handler(callback.name)

    def _deliver(self, handler: StanzaHandler, incoming: StanzaBase) -> None:
        try:
            stanza = Stanza.from_element(incoming.xml)
        except StanzaParseError as e:
            logger.error("Dropping inbound stanza: %s", e)
            return
        handler(stanza)

    # ========================================
    #           OUTBOUND
    # ========================================

    def send(self, stanza: Stanza) -> None:
        self.xmpp.send(self._to_slixmpp(stanza))

    def send_iq(self, stanza: Stanza, on_success: SuccessCallback, on_error: ErrorCallback) -> None:
        iq = self._to_slixmpp(stanza)
        stanza.id = iq['id']
        if stanza.id in self._pending:
            on_error(TransportError(f"Duplicate request id {stanza.id}"))
            return

        self._pending[stanza.id] = (on_success, on_error)
        try:
            future = iq.send(timeout=self.iq_timeout)
        except Exception as e:
            del self._pending[stanza.id]
            log_stanza(logger, "warning", f"Could not send request: {e}", stanza)
            error = TransportError(f"Could not send request {stanza.id}: {e}", condition="disconnected")
            error.__cause__ = e
            on_error(error)
            return
        future.add_done_callback(partial(self._on_response, stanza.id))

    def _on_response(self, stanza_id: str, future: asyncio.Future) -> None:
        # Read the outcome first so a late result is never reported as unretrieved
        error = None if future.cancelled() else future.exception()
        callbacks = self._pending.pop(stanza_id, None)
        if callbacks is None:
            # Already failed when the stream went away
            return
        on_success, on_error = callbacks

        if future.cancelled():
            on_error(TransportError(f"Request {stanza_id} was cancelled", condition="disconnected"))
        elif error is None:
            on_success(Stanza.from_element(future.result().xml))
        elif isinstance(error, IqError):
            on_error(TransportError.from_stanza(Stanza.from_element(error.iq.xml)))
        elif isinstance(error, IqTimeout):
            logger.warning("Request %s timed out", stanza_id)
            on_error(TransportError(f"Request {stanza_id} timed out", condition="timeout"))
        else:
            on_error(TransportError.wrap(error))

    def _fail_pending(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for stanza_id, (_, on_error) in pending.items():
            on_error(TransportError(f"{reason} before request {stanza_id} completed",
                                    condition="disconnected"))

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def _to_slixmpp(self, stanza: Stanza) -> StanzaBase:
        factory = {
            "iq": self.xmpp.Iq,
            "message": self.xmpp.Message,
            "presence": self.xmpp.Presence,
        }[stanza.kind]
        out = factory()
        for key, value in (("type", stanza.type), ("to", stanza.to), ("from", stanza.from_), ("id", stanza.id)):
            if value is not None:
                out[key] = value
        for child in stanza.children:
            out.append(child)
        return out
