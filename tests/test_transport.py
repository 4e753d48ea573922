"""Tests for the XMPP stream handshake."""

from __future__ import annotations

import base64

import pytest

from conftest import FakeWebSocket
from sysapbridge import stanzas, transport
from sysapbridge.config import Config
from sysapbridge.transport import TransportError

pytestmark = pytest.mark.anyio

OPEN = '<open xmlns="urn:ietf:params:xml:ns:xmpp-framing" from="busch-jaeger.de" id="s1" version="1.0"/>'
BIND_JID = "installer@busch-jaeger.de/sysapbridge"


def features(*mechanisms: str, bind: bool = False, session: bool = False) -> str:
    body = ""
    if mechanisms:
        body += '<mechanisms xmlns="urn:ietf:params:xml:ns:xmpp-sasl">'
        body += "".join(f"<mechanism>{m}</mechanism>" for m in mechanisms)
        body += "</mechanisms>"
    if bind:
        body += '<bind xmlns="urn:ietf:params:xml:ns:xmpp-bind"/>'
    if session:
        body += '<session xmlns="urn:ietf:params:xml:ns:xmpp-session"/>'
    return f'<features xmlns="http://etherx.jabber.org/streams">{body}</features>'


def sasl(name: str, payload: str = "") -> str:
    encoded = base64.b64encode(payload.encode()).decode() if payload else ""
    return f'<{name} xmlns="urn:ietf:params:xml:ns:xmpp-sasl">{encoded}</{name}>'


def iq_result(iq_id: str, body: str = "") -> str:
    return f'<iq xmlns="jabber:client" type="result" id="{iq_id}">{body}</iq>'


BIND_RESULT = iq_result(
    "bind_1", f'<bind xmlns="urn:ietf:params:xml:ns:xmpp-bind"><jid>{BIND_JID}</jid></bind>'
)


def sent_named(ws: FakeWebSocket, name: str):
    return [e for e in ws.sent_elements if stanzas.local_name(e) == name]


# ---------------------------------------------------------------------------
# DIGEST-MD5
# ---------------------------------------------------------------------------


def test_digest_md5_reference_vector():
    # RFC 2831 section 4 example
    response, rspauth = transport.digest_md5_response(
        "chris",
        "secret",
        "elwood.innosoft.com",
        "OA6MG9tEQGm2hh",
        "OA6MHXh6VqTrRk",
        "imap/elwood.innosoft.com",
    )

    assert response == "d388dad90d4bbd760a152321f2143af7"
    assert rspauth == "ea40f60335c427b5527b84dbabcdfffd"


def test_parse_digest_challenge():
    fields = transport.parse_digest_challenge(
        'realm="busch-jaeger.de",nonce="abc\\"def",qop="auth",charset=utf-8,algorithm=md5-sess'
    )

    assert fields == {
        "realm": "busch-jaeger.de",
        "nonce": 'abc\\"def',
        "qop": "auth",
        "charset": "utf-8",
        "algorithm": "md5-sess",
    }


async def test_digest_md5_exchange():
    config = Config(jid="installer@busch-jaeger.de", password="secret")
    _, rspauth = transport.digest_md5_response(
        "installer", "secret", "busch-jaeger.de", "n0nce", "c0nce", "xmpp/busch-jaeger.de"
    )
    ws = FakeWebSocket(
        [
            sasl("challenge", 'realm="busch-jaeger.de",nonce="n0nce",qop="auth",algorithm=md5-sess'),
            sasl("challenge", f"rspauth={rspauth}"),
            sasl("success"),
        ]
    )

    await transport._auth_digest_md5(ws, config, cnonce="c0nce")

    auth, first, second = ws.sent_elements
    assert auth.get("mechanism") == "DIGEST-MD5"
    reply = transport.parse_digest_challenge(base64.b64decode(first.text).decode())
    assert reply["username"] == "installer"
    assert reply["digest-uri"] == "xmpp/busch-jaeger.de"
    assert reply["cnonce"] == "c0nce"
    assert len(reply["response"]) == 32
    assert not second.text


async def test_digest_md5_wrong_rspauth():
    config = Config(password="secret")
    ws = FakeWebSocket(
        [
            sasl("challenge", 'realm="busch-jaeger.de",nonce="n0nce",qop="auth"'),
            sasl("challenge", "rspauth=00000000000000000000000000000000"),
        ]
    )

    with pytest.raises(TransportError, match="rspauth"):
        await transport._auth_digest_md5(ws, config, cnonce="c0nce")


# ---------------------------------------------------------------------------
# Full handshake
# ---------------------------------------------------------------------------


async def test_plain_handshake_binds_resource():
    config = Config(password="pw", sasl_mechanism="PLAIN")
    ws = FakeWebSocket(
        [
            OPEN,
            features("DIGEST-MD5", "PLAIN"),
            sasl("success"),
            OPEN,
            features(bind=True, session=True),
            BIND_RESULT,
            iq_result("session_1"),
        ]
    )

    jid = await transport.authenticate(ws, config)

    assert jid == BIND_JID
    (auth,) = sent_named(ws, "auth")
    assert auth.get("mechanism") == "PLAIN"
    assert base64.b64decode(auth.text) == b"\0installer\0pw"
    assert len(sent_named(ws, "open")) == 2
    bind, session = sent_named(ws, "iq")
    assert bind.get("id") == "bind_1"
    assert session.get("id") == "session_1"


async def test_optional_session_is_skipped():
    config = Config(password="pw", sasl_mechanism="PLAIN")
    ws = FakeWebSocket(
        [
            OPEN,
            features("PLAIN"),
            sasl("success"),
            OPEN,
            features(bind=True).replace(
                "</features>",
                '<session xmlns="urn:ietf:params:xml:ns:xmpp-session"><optional/></session></features>',
            ),
            BIND_RESULT,
        ]
    )

    assert await transport.authenticate(ws, config) == BIND_JID
    assert len(sent_named(ws, "iq")) == 1


async def test_rejected_credentials():
    config = Config(password="wrong", sasl_mechanism="PLAIN")
    ws = FakeWebSocket(
        [
            OPEN,
            features("PLAIN"),
            '<failure xmlns="urn:ietf:params:xml:ns:xmpp-sasl"><not-authorized/></failure>',
        ]
    )

    with pytest.raises(TransportError, match="not-authorized"):
        await transport.authenticate(ws, config)


async def test_mechanism_not_offered():
    ws = FakeWebSocket([OPEN, features("SCRAM-SHA-1")])

    with pytest.raises(TransportError, match="does not offer DIGEST-MD5"):
        await transport.authenticate(ws, Config())


async def test_hub_closes_during_setup():
    ws = FakeWebSocket(['<close xmlns="urn:ietf:params:xml:ns:xmpp-framing"/>'])

    with pytest.raises(TransportError, match="closed"):
        await transport.authenticate(ws, Config())


async def test_invalid_xml_during_setup():
    ws = FakeWebSocket(["<open"])

    with pytest.raises(TransportError, match="invalid XML"):
        await transport.authenticate(ws, Config())
