from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Union
import uuid

from slixmpp.xmlstream import ET, tostring

CLIENT_NS = "jabber:client"
JIBRI_QUEUE_NS = "http://jitsi.org/protocol/jibri-queue"
STANZA_ERROR_NS = "urn:ietf:params:xml:ns:xmpp-stanzas"

STANZA_KINDS: Set[str] = {"iq", "message", "presence"}
IQ_TYPES: Set[str] = {"get", "set", "result", "error"}
ERROR_TYPES: Set[str] = {"auth", "cancel", "continue", "modify", "wait"}


class StanzaParseError(ValueError):
    """Raised when an inbound frame is not a well-formed stanza."""
    pass


def qname(namespace: Optional[str], tag: str) -> str:
    """ElementTree's '{namespace}tag' notation."""
    return f"{{{namespace}}}{tag}" if namespace else tag

def split_tag(tag: str) -> Tuple[Optional[str], str]:
    """'{ns}tag' → ('ns', 'tag'); 'tag' → (None, 'tag')"""
    if tag.startswith("{"):
        namespace, _, local = tag[1:].partition("}")
        return namespace, local
    return None, tag

def local_name(tag: str) -> str:
    return split_tag(tag)[1]

def get_text(element: ET.Element) -> str:
    """All text content of an element, children included."""
    return "".join(element.itertext())

def new_stanza_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Stanza:
    """
    One XMPP stanza:

    <iq xmlns="jabber:client" type="set" to="..." from="..." id="...">
      <jibri-queue xmlns="http://jitsi.org/protocol/jibri-queue" action="info">
        <position>3</position>
      </jibri-queue>
    </iq>

    Only the routing attributes are lifted out; the payload stays as
    ElementTree elements so extensions keep their namespaces.
    """
    kind: str                      # "iq", "message" or "presence"
    type: Optional[str] = None
    to: Optional[str] = None
    from_: Optional[str] = None    # renamed to avoid keyword collision
    id: Optional[str] = None
    children: List[ET.Element] = field(default_factory=list)

    @classmethod
    def from_xml(cls, xml_str: Union[str, bytes]) -> 'Stanza':
        """Parse a serialized stanza, text or raw bytes off the wire"""
        try:
            element = ET.fromstring(xml_str)
        except ET.ParseError as e:
            raise StanzaParseError(f"Invalid XML: {e}")

        return cls.from_element(element)

    @classmethod
    def from_element(cls, element: ET.Element) -> 'Stanza':
        """Create Stanza from an element, validating the top-level tag"""
        namespace, kind = split_tag(element.tag)
        if namespace not in (None, CLIENT_NS):
            raise StanzaParseError(f"Unexpected stanza namespace: {namespace}")
        if kind not in STANZA_KINDS:
            raise StanzaParseError(f"Unknown stanza kind: {kind}")

        stanza_type = element.get("type")
        if kind == "iq":
            if stanza_type not in IQ_TYPES:
                raise StanzaParseError(f"Invalid iq type: {stanza_type}")
            if not element.get("id"):
                raise StanzaParseError("iq stanza without id")

        return cls(
            kind=kind,
            type=stanza_type,
            to=element.get("to"),
            from_=element.get("from"),
            id=element.get("id"),
            children=list(element),
        )

    def to_element(self) -> ET.Element:
        attrs: Dict[str, str] = {}
        for key, value in (("type", self.type), ("to", self.to), ("from", self.from_), ("id", self.id)):
            if value is not None:
                attrs[key] = value
        element = ET.Element(qname(CLIENT_NS, self.kind), attrs)
        element.extend(self.children)
        return element

    def to_xml(self) -> str:
        """Serialize with jabber:client as the default namespace, as on the wire"""
        return tostring(self.to_element())

    def find(self, tag: str, namespace: Optional[str]) -> Optional[ET.Element]:
        """First direct child with the given tag and namespace."""
        wanted = qname(namespace, tag)
        for child in self.children:
            if child.tag == wanted:
                return child
        return None

    def child_namespaces(self) -> Set[Optional[str]]:
        return {split_tag(child.tag)[0] for child in self.children}

    @property
    def is_request(self) -> bool:
        return self.kind == "iq" and self.type in ("get", "set")

    @property
    def is_response(self) -> bool:
        return self.kind == "iq" and self.type in ("result", "error")

    def error_condition(self) -> Optional[str]:
        """
        Defined condition of an error stanza, e.g. 'service-unavailable'.
        None when the stanza carries no error element.
        """
        for child in self.children:
            if local_name(child.tag) != "error":
                continue
            for condition in child:
                namespace, name = split_tag(condition.tag)
                if namespace == STANZA_ERROR_NS and name != "text":
                    return name
            return "undefined-condition"
        return None


def create_iq(iq_type: str, to: Optional[str], payload: Optional[ET.Element] = None,
              *, stanza_id: Optional[str] = None, from_: Optional[str] = None) -> Stanza:
    """Helper to create an iq request with a fresh id (unless one is provided)"""
    if iq_type not in IQ_TYPES:
        raise ValueError(f"Invalid iq type: {iq_type}")
    return Stanza(
        kind="iq",
        type=iq_type,
        to=to,
        from_=from_,
        id=new_stanza_id() if stanza_id is None else stanza_id,
        children=[payload] if payload is not None else [],
    )

def create_result(request: Stanza) -> Stanza:
    """Acknowledgment addressed back to the sender with the request's id"""
    return Stanza(kind="iq", type="result", to=request.from_, id=request.id)

def add_error(stanza: Stanza, condition: str, error_type: str = "cancel",
              text: Optional[str] = None) -> Stanza:
    """
    Turn a stanza into an error response carrying a defined condition:

    <error type="cancel">
      <service-unavailable xmlns="urn:ietf:params:xml:ns:xmpp-stanzas"/>
    </error>
    """
    if error_type not in ERROR_TYPES:
        raise ValueError(f"Invalid error type: {error_type}")
    stanza.type = "error"
    error = ET.Element(qname(CLIENT_NS, "error"), {"type": error_type})
    ET.SubElement(error, qname(STANZA_ERROR_NS, condition))
    if text:
        ET.SubElement(error, qname(STANZA_ERROR_NS, "text")).text = text
    stanza.children.append(error)
    return stanza

def create_error_reply(request: Stanza, condition: str, error_type: str = "cancel") -> Stanza:
    return add_error(create_result(request), condition, error_type)
