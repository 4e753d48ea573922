"""Build and parse the XMPP stanzas exchanged with the SysAP.

Every frame on the WebSocket is one complete XML element (RFC 7395 framing).
Builders return :class:`xml.etree.ElementTree.Element` objects; call
``to_xml()`` to serialise.  Inbound frames are parsed with ``from_xml()`` and
sorted into a :class:`FrameKind` by ``classify()``.
"""

from __future__ import annotations

import enum
from collections.abc import Iterator, Sequence
from uuid import uuid4
from xml.etree import ElementTree as ET

from .models import DatapointWrite, format_value

HUB_JID = "mrha@busch-jaeger.de"
RPC_JID = f"{HUB_JID}/rpc"
UPDATE_NODE = "http://abb.com/protocol/update"

NS_CLIENT = "jabber:client"
NS_RPC = "jabber:iq:rpc"
NS_PING = "urn:xmpp:ping"
NS_CAPS = "http://jabber.org/protocol/caps"
NS_FRAMING = "urn:ietf:params:xml:ns:xmpp-framing"
NS_SASL = "urn:ietf:params:xml:ns:xmpp-sasl"
NS_BIND = "urn:ietf:params:xml:ns:xmpp-bind"
NS_SESSION = "urn:ietf:params:xml:ns:xmpp-session"

CAPS_NODE = "http://gonicus.de/caps"
CAPS_VER = "1.1"

SET_DATAPOINT = "RemoteInterface.setDatapoint"
GET_ALL = "RemoteInterface.getAll"


class FrameKind(str, enum.Enum):
    UPDATE = "update"
    RPC_RESULT = "rpc_result"
    PRESENCE = "presence"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------


def to_xml(element: ET.Element) -> str:
    return ET.tostring(element, encoding="unicode")


def from_xml(raw: str | bytes) -> ET.Element:
    """Parse one frame.  Raises ``ET.ParseError`` on malformed input."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return ET.fromstring(raw)


def local_name(element: ET.Element) -> str:
    """Tag name without the ``{namespace}`` prefix."""
    return element.tag.rpartition("}")[2]


def children(element: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in element:
        if local_name(child) == name:
            yield child


def find_path(element: ET.Element, path: Sequence[str]) -> ET.Element | None:
    """Follow the first child matching each local name in ``path``."""
    node: ET.Element | None = element
    for name in path:
        if node is None:
            return None
        node = next(children(node, name), None)
    return node


def bare_jid(jid: str | None) -> str:
    return (jid or "").partition("/")[0]


# ---------------------------------------------------------------------------
# Outbound stanzas
# ---------------------------------------------------------------------------


def _param(params: ET.Element, value: str | int) -> None:
    wrapper = ET.SubElement(ET.SubElement(params, "param"), "value")
    kind = "int" if isinstance(value, int) and not isinstance(value, bool) else "string"
    ET.SubElement(wrapper, kind).text = str(value)


def build_rpc_call(
    method: str,
    params: Sequence[str | int],
    *,
    request_id: str | None = None,
) -> ET.Element:
    """An ``iq type=set`` carrying a jabber:iq:rpc method call to the hub."""
    iq = ET.Element(
        "iq",
        {"type": "set", "to": RPC_JID, "id": request_id or uuid4().hex, "xmlns": NS_CLIENT},
    )
    call = ET.SubElement(ET.SubElement(iq, "query", {"xmlns": NS_RPC}), "methodCall")
    ET.SubElement(call, "methodName").text = method
    param_list = ET.SubElement(call, "params")
    for value in params:
        _param(param_list, value)
    return iq


def build_set_datapoint(write: DatapointWrite) -> ET.Element:
    return build_rpc_call(SET_DATAPOINT, [write.address, format_value(write.value)])


def build_get_all() -> ET.Element:
    return build_rpc_call(GET_ALL, ["de", 4, 0, 0])


def build_ping(ping_id: int) -> ET.Element:
    iq = ET.Element(
        "iq", {"type": "get", "to": RPC_JID, "id": str(ping_id), "xmlns": NS_CLIENT}
    )
    ET.SubElement(iq, "ping", {"xmlns": NS_PING})
    return iq


def _caps(presence: ET.Element) -> ET.Element:
    ET.SubElement(presence, "c", {"xmlns": NS_CAPS, "node": CAPS_NODE, "ver": CAPS_VER})
    return presence


def build_subscribe() -> ET.Element:
    return _caps(
        ET.Element("presence", {"type": "subscribe", "to": RPC_JID, "xmlns": NS_CLIENT})
    )


def build_presence() -> ET.Element:
    return _caps(ET.Element("presence", {"xmlns": NS_CLIENT}))


def build_open(domain: str) -> ET.Element:
    return ET.Element("open", {"xmlns": NS_FRAMING, "to": domain, "version": "1.0"})


def build_close() -> ET.Element:
    return ET.Element("close", {"xmlns": NS_FRAMING})


def build_auth(mechanism: str, payload: str | None = None) -> ET.Element:
    auth = ET.Element("auth", {"xmlns": NS_SASL, "mechanism": mechanism})
    if payload:
        auth.text = payload
    return auth


def build_sasl_response(payload: str = "") -> ET.Element:
    response = ET.Element("response", {"xmlns": NS_SASL})
    if payload:
        response.text = payload
    return response


def build_bind(resource: str) -> ET.Element:
    iq = ET.Element("iq", {"type": "set", "id": "bind_1", "xmlns": NS_CLIENT})
    bind = ET.SubElement(iq, "bind", {"xmlns": NS_BIND})
    ET.SubElement(bind, "resource").text = resource
    return iq


def build_session() -> ET.Element:
    iq = ET.Element("iq", {"type": "set", "id": "session_1", "xmlns": NS_CLIENT})
    ET.SubElement(iq, "session", {"xmlns": NS_SESSION})
    return iq


# ---------------------------------------------------------------------------
# Inbound classification
# ---------------------------------------------------------------------------


def classify(element: ET.Element) -> FrameKind:
    """Sort an inbound frame.  The checks are exclusive; first match wins."""
    name = local_name(element)
    if (
        name == "message"
        and element.get("type") == "headline"
        and element.get("from") == HUB_JID
    ):
        items = find_path(element, ("event", "items"))
        if items is not None and items.get("node") == UPDATE_NODE:
            return FrameKind.UPDATE
    if name == "iq" and element.get("type") == "result" and element.get("from") == RPC_JID:
        return FrameKind.RPC_RESULT
    if name == "presence":
        return FrameKind.PRESENCE
    return FrameKind.UNKNOWN


def is_hub_presence(element: ET.Element) -> bool:
    """True when a presence frame announces the hub itself as available."""
    return bare_jid(element.get("from")) == HUB_JID and element.get("type") not in (
        "unavailable",
        "error",
        "unsubscribed",
    )


def update_projects(element: ET.Element) -> list[ET.Element]:
    """Project documents embedded (escaped) in an update notification."""
    items = find_path(element, ("event", "items"))
    projects: list[ET.Element] = []
    if items is None:
        return projects
    for item in children(items, "item"):
        data = find_path(item, ("update", "data"))
        if data is not None and data.text and data.text.strip():
            projects.append(from_xml(data.text.strip()))
    return projects


def rpc_fault(element: ET.Element) -> str | None:
    """The faultString of an RPC result, if the call failed."""
    fault = find_path(element, ("query", "methodResponse", "fault"))
    if fault is None:
        return None
    for member in fault.iter():
        if local_name(member) != "member":
            continue
        name = find_path(member, ("name",))
        if name is not None and name.text == "faultString":
            value = find_path(member, ("value",))
            return "".join(value.itertext()).strip() if value is not None else ""
    return "".join(fault.itertext()).strip()


def rpc_result_text(element: ET.Element) -> str | None:
    """The first string/plain value of an RPC method response."""
    value = find_path(element, ("query", "methodResponse", "params", "param", "value"))
    if value is None:
        return None
    return "".join(value.itertext())


def response_project(element: ET.Element) -> ET.Element | None:
    """The project document carried by a ``getAll`` result, if any."""
    text = rpc_result_text(element)
    if not text or not text.lstrip().startswith("<"):
        return None
    return from_xml(text.strip())
