import asyncio

import pytest
from slixmpp import ClientXMPP
from slixmpp.exceptions import IqError, IqTimeout
from slixmpp.stanza import Iq
from slixmpp.xmlstream import ET

from jibri_queue.connection import MatchSpec, StanzaFilter, XMPPConnection, stanza_xpath
from jibri_queue.errors import TransportError
from jibri_queue.ids import InstanceCounter
from jibri_queue.queue import QueueClient
from jibri_queue.types import EventKind
from shared.stanza import JIBRI_QUEUE_NS, Stanza, create_error_reply, create_iq, qname
from tests.fakes import OWN_JID, QUEUE_JID, ROOM_JID


def push_xml(stanza_id, action="info", from_=QUEUE_JID, type_="set", body=""):
    return (
        f'<iq xmlns="jabber:client" type="{type_}" id="{stanza_id}" from="{from_}" to="{OWN_JID}">'
        f'<jibri-queue xmlns="{JIBRI_QUEUE_NS}" action="{action}">{body}</jibri-queue></iq>'
    )


def incoming(xmpp: ClientXMPP, raw: str) -> Iq:
    """An inbound iq as slixmpp hands it to handlers"""
    return xmpp.Iq(xml=ET.fromstring(raw))


def connected(monkeypatch, iq_timeout=None):
    # Created inside the running test loop; nothing goes on the wire
    xmpp = ClientXMPP(OWN_JID, "secret")
    sent = []
    monkeypatch.setattr(xmpp, "send", lambda data, *args, **kwargs: sent.append(data))
    return XMPPConnection(xmpp, iq_timeout=iq_timeout), sent


async def drain() -> None:
    # Future callbacks are scheduled with call_soon; let them run
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.fixture
def iq_futures(monkeypatch):
    """Replace Iq.send with one returning a future the test settles"""
    futures = []

    def send(self, callback=None, timeout=None, timeout_callback=None):
        future = asyncio.get_running_loop().create_future()
        futures.append((self, timeout, future))
        return future

    monkeypatch.setattr(Iq, "send", send)
    return futures


# ========================================
#           HANDLER MATCHING
# ========================================

def test_xpath_for_filters():
    assert stanza_xpath(JIBRI_QUEUE_NS, "iq", "set") == (
        "{jabber:client}iq[@type='set']/{http://jitsi.org/protocol/jibri-queue}*"
    )
    assert stanza_xpath(None, None, None) == "*"


@pytest.mark.asyncio
async def test_filter_matches_kind_type_namespace_and_bare_sender(monkeypatch):
    conn, _ = connected(monkeypatch)
    matcher = StanzaFilter(JIBRI_QUEUE_NS, "iq", "set", MatchSpec(from_=QUEUE_JID, match_bare_from=True))

    assert matcher.match(incoming(conn.xmpp, push_xml("a")))
    assert matcher.match(incoming(conn.xmpp, push_xml("b", from_=QUEUE_JID + "/focus")))
    assert not matcher.match(incoming(conn.xmpp, push_xml("c", from_="other@example.com")))
    assert not matcher.match(incoming(conn.xmpp, push_xml("d", type_="get")))
    assert not matcher.match(incoming(
        conn.xmpp, f'<iq xmlns="jabber:client" type="set" id="e" from="{QUEUE_JID}"><query xmlns="urn:other"/></iq>'
    ))


@pytest.mark.asyncio
async def test_filter_exact_sender(monkeypatch):
    conn, _ = connected(monkeypatch)
    matcher = StanzaFilter(None, None, None, MatchSpec(from_=QUEUE_JID))

    assert matcher.match(incoming(conn.xmpp, push_xml("a")))
    assert not matcher.match(incoming(conn.xmpp, push_xml("b", from_=QUEUE_JID + "/focus")))


@pytest.mark.asyncio
async def test_handler_receives_converted_stanza(monkeypatch):
    conn, _ = connected(monkeypatch)
    seen = []
    ref = conn.add_handler(seen.append, JIBRI_QUEUE_NS, "iq", "set",
                           MatchSpec(from_=QUEUE_JID, match_bare_from=True))
    callback = conn.handlers[ref]
    push = incoming(conn.xmpp, push_xml("p1", body="<position>4</position>"))

    assert callback.match(push)
    callback.run(push)

    assert len(seen) == 1
    assert (seen[0].kind, seen[0].type, seen[0].id, seen[0].from_) == ("iq", "set", "p1", QUEUE_JID)
    payload = seen[0].find("jibri-queue", JIBRI_QUEUE_NS)
    assert payload.find(qname(JIBRI_QUEUE_NS, "position")).text == "4"


@pytest.mark.asyncio
async def test_delete_handler_unregisters_from_slixmpp(monkeypatch):
    conn, _ = connected(monkeypatch)
    ref = conn.add_handler(lambda s: True, JIBRI_QUEUE_NS, "iq", "set")
    name = conn.handlers[ref].name

    conn.delete_handler(ref)

    assert conn.handlers == {}
    # Already gone from the stream's handler list
    assert conn.xmpp.remove_handler(name) is False
    with pytest.raises(KeyError):
        conn.delete_handler(ref)


# ========================================
#           OUTBOUND
# ========================================

@pytest.mark.asyncio
async def test_send_writes_default_namespace_stanza(monkeypatch):
    conn, sent = connected(monkeypatch)
    request = Stanza.from_xml(push_xml("p9"))

    conn.send(create_error_reply(request, "service-unavailable"))

    assert len(sent) == 1
    wire = str(sent[0])
    assert wire.startswith("<iq ")
    assert "ns0:" not in wire
    reply = Stanza.from_element(sent[0].xml)
    assert (reply.type, reply.id, reply.to) == ("error", "p9", QUEUE_JID)
    assert reply.error_condition() == "service-unavailable"


@pytest.mark.asyncio
async def test_send_iq_resolves_on_result(monkeypatch, iq_futures):
    conn, _ = connected(monkeypatch, iq_timeout=5.0)
    results, errors = [], []

    conn.send_iq(create_iq("set", QUEUE_JID, stanza_id="req-1"), results.append, errors.append)

    iq, timeout, future = iq_futures[0]
    assert (iq['id'], str(iq['to']), iq['type']) == ("req-1", QUEUE_JID, "set")
    assert timeout == 5.0
    assert conn.pending_requests == 1

    future.set_result(incoming(conn.xmpp, f'<iq xmlns="jabber:client" type="result" id="req-1" from="{QUEUE_JID}"/>'))
    await drain()

    assert [(r.type, r.id, r.from_) for r in results] == [("result", "req-1", QUEUE_JID)]
    assert errors == []
    assert conn.pending_requests == 0


@pytest.mark.asyncio
async def test_send_iq_fails_on_error_response(monkeypatch, iq_futures):
    conn, _ = connected(monkeypatch)
    results, errors = [], []
    conn.send_iq(create_iq("set", QUEUE_JID, stanza_id="req-2"), results.append, errors.append)

    reply = incoming(
        conn.xmpp,
        f'<iq xmlns="jabber:client" type="error" id="req-2" from="{QUEUE_JID}">'
        '<error type="cancel"><item-not-found xmlns="urn:ietf:params:xml:ns:xmpp-stanzas"/></error>'
        '</iq>'
    )
    iq_futures[0][2].set_exception(IqError(reply))
    await drain()

    assert results == []
    assert len(errors) == 1
    assert isinstance(errors[0], TransportError)
    assert errors[0].condition == "item-not-found"
    assert errors[0].stanza.id == "req-2"


@pytest.mark.asyncio
async def test_send_iq_times_out(monkeypatch, iq_futures):
    conn, _ = connected(monkeypatch)
    errors = []
    conn.send_iq(create_iq("set", QUEUE_JID, stanza_id="req-3"), lambda s: None, errors.append)

    iq, _, future = iq_futures[0]
    future.set_exception(IqTimeout(iq))
    await drain()

    assert [e.condition for e in errors] == ["timeout"]
    assert conn.pending_requests == 0


@pytest.mark.asyncio
async def test_failed_write_fails_request(monkeypatch):
    conn, _ = connected(monkeypatch)

    def broken_send(data, *args, **kwargs):
        raise ConnectionError("stream closed")

    monkeypatch.setattr(conn.xmpp, "send", broken_send)
    results, errors = [], []

    conn.send_iq(create_iq("set", QUEUE_JID, stanza_id="req-4"), results.append, errors.append)

    assert results == []
    assert len(errors) == 1
    assert errors[0].condition == "disconnected"
    assert isinstance(errors[0].__cause__, ConnectionError)
    assert conn.pending_requests == 0


@pytest.mark.asyncio
async def test_join_rejected_when_write_fails(monkeypatch):
    conn, _ = connected(monkeypatch)

    def broken_send(data, *args, **kwargs):
        raise ConnectionError("stream closed")

    monkeypatch.setattr(conn.xmpp, "send", broken_send)
    queue = QueueClient(conn, QUEUE_JID, ROOM_JID, counter=InstanceCounter())

    with pytest.raises(TransportError) as exc_info:
        await asyncio.wait_for(queue.join(), timeout=1)

    assert exc_info.value.condition == "disconnected"
    assert queue.joined is False


@pytest.mark.asyncio
async def test_disconnect_fails_pending_requests_once(monkeypatch, iq_futures):
    conn, _ = connected(monkeypatch)
    results, errors = [], []
    conn.send_iq(create_iq("set", QUEUE_JID, stanza_id="req-5"), results.append, errors.append)

    conn.xmpp.event("disconnected", "stream reset")

    assert [e.condition for e in errors] == ["disconnected"]
    assert conn.pending_requests == 0

    # A late outcome from slixmpp is not reported a second time
    iq, _, future = iq_futures[0]
    future.set_exception(IqTimeout(iq))
    await drain()

    assert results == []
    assert len(errors) == 1


# ========================================
#           LIFECYCLE
# ========================================

@pytest.mark.asyncio
async def test_connect_waits_for_session_start(monkeypatch):
    conn, _ = connected(monkeypatch)
    dialed = []

    async def fake_connect(host="", port=5222, **kwargs):
        dialed.append((host, port))
        conn.xmpp.event("session_start", {})

    monkeypatch.setattr(conn.xmpp, "connect", fake_connect)

    await asyncio.wait_for(conn.connect("xmpp.meet.example.com", 5223), timeout=1)

    assert dialed == [("xmpp.meet.example.com", 5223)]


@pytest.mark.asyncio
async def test_connect_fails_when_stream_closes_first(monkeypatch):
    conn, _ = connected(monkeypatch)

    async def fake_connect(host="", port=5222, **kwargs):
        conn.xmpp.event("disconnected", "authentication failed")

    monkeypatch.setattr(conn.xmpp, "connect", fake_connect)

    with pytest.raises(TransportError) as exc_info:
        await asyncio.wait_for(conn.connect(), timeout=1)

    assert exc_info.value.condition == "disconnected"
    await asyncio.wait_for(conn.wait_closed(), timeout=1)


@pytest.mark.asyncio
async def test_close_disconnects_and_fails_pending(monkeypatch, iq_futures):
    conn, _ = connected(monkeypatch)
    disconnects = []

    async def fake_connect(host="", port=5222, **kwargs):
        conn.xmpp.event("session_start", {})

    async def fake_disconnect(*args, **kwargs):
        disconnects.append(args)

    monkeypatch.setattr(conn.xmpp, "connect", fake_connect)
    monkeypatch.setattr(conn.xmpp, "disconnect", fake_disconnect)
    await conn.connect()
    errors = []
    conn.send_iq(create_iq("set", QUEUE_JID), lambda s: None, errors.append)

    await conn.close()

    assert len(disconnects) == 1
    assert [e.condition for e in errors] == ["disconnected"]
    await asyncio.wait_for(conn.wait_closed(), timeout=1)


# ========================================
#           QUEUE CLIENT OVER SLIXMPP
# ========================================

@pytest.mark.asyncio
async def test_queue_client_over_xmpp_connection(monkeypatch, iq_futures):
    conn, sent = connected(monkeypatch)
    queue = QueueClient(conn, QUEUE_JID, ROOM_JID, counter=InstanceCounter())
    metrics, tokens = [], []
    queue.subscribe(EventKind.METRICS, metrics.append)
    queue.subscribe(EventKind.TOKEN, tokens.append)

    joining = queue.join()
    iq, _, future = iq_futures[0]
    assert str(iq).startswith("<iq ")
    payload = iq.xml.find(qname(JIBRI_QUEUE_NS, "jibri-queue"))
    assert payload.get("action") == "join"
    assert payload.get("room") == ROOM_JID

    future.set_result(incoming(conn.xmpp, f'<iq xmlns="jabber:client" type="result" id="{iq["id"]}" from="{QUEUE_JID}"/>'))
    await asyncio.wait_for(joining, timeout=1)
    assert queue.joined is True

    (callback,) = conn.handlers.values()
    for raw in (
        push_xml("p1", body="<position>2</position><time>45</time>"),
        f'<iq xmlns="jabber:client" type="set" id="p2" from="{QUEUE_JID}" to="{OWN_JID}">'
        f'<jibri-queue xmlns="{JIBRI_QUEUE_NS}" action="token" value="secret-token"/></iq>',
    ):
        push = incoming(conn.xmpp, raw)
        assert callback.match(push)
        callback.run(push)

    assert metrics == [{"position": "2", "estimatedTimeLeft": "45"}]
    assert tokens == ["secret-token"]
    acks = [Stanza.from_element(stanza.xml) for stanza in sent]
    assert [(a.type, a.id, a.to) for a in acks] == [("result", "p1", QUEUE_JID), ("result", "p2", QUEUE_JID)]
    assert all(str(stanza).startswith("<iq ") for stanza in sent)
