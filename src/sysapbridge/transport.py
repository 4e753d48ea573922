"""XMPP stream setup over an open WebSocket (RFC 7395 framing).

``authenticate()`` runs the whole handshake on a fresh connection:

  1. ``<open/>`` → hub ``<open/>`` + ``<features/>`` (SASL mechanisms)
  2. SASL ``DIGEST-MD5`` (default) or ``PLAIN``
  3. stream restart → ``<features/>`` (bind, session)
  4. resource bind, then legacy session establishment if the hub requires it

It returns the full JID the hub bound.  Failures raise :class:`TransportError`.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import re
import secrets
from typing import Any
from xml.etree import ElementTree as ET

from . import stanzas
from .config import Config
from .log_setup import WIRE_LOGGER

logger = logging.getLogger(__name__)
wire = logging.getLogger(WIRE_LOGGER)

HANDSHAKE_TIMEOUT_SECONDS = 15.0

_CHALLENGE_FIELD = re.compile(r'([\w-]+)=(?:"((?:[^"\\]|\\.)*)"|([^,]*))')


class TransportError(RuntimeError):
    """The XMPP stream could not be opened or authenticated."""


# ---------------------------------------------------------------------------
# Frame I/O
# ---------------------------------------------------------------------------


async def send_frame(ws: Any, element: ET.Element) -> None:
    raw = stanzas.to_xml(element)
    wire.debug("[SEND] %s", raw)
    await ws.send(raw)


async def _recv_frame(ws: Any) -> ET.Element:
    try:
        raw = await asyncio.wait_for(ws.recv(), timeout=HANDSHAKE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError as exc:
        raise TransportError("timed out waiting for the hub during handshake") from exc
    wire.debug("[RECEIVED] %s", raw)
    try:
        return stanzas.from_xml(raw)
    except ET.ParseError as exc:
        raise TransportError(f"hub sent invalid XML during handshake: {raw!r:.200}") from exc


async def _open_stream(ws: Any, domain: str) -> ET.Element:
    """Open (or restart) the stream and return the hub's features."""
    await send_frame(ws, stanzas.build_open(domain))
    while True:
        frame = await _recv_frame(ws)
        name = stanzas.local_name(frame)
        if name == "open":
            continue
        if name == "features":
            return frame
        if name == "close":
            raise TransportError("hub closed the stream during setup")
        raise TransportError(f"unexpected <{name}> while waiting for stream features")


# ---------------------------------------------------------------------------
# SASL
# ---------------------------------------------------------------------------


def _b64(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str | None) -> str:
    if not text or text.strip() == "=":
        return ""
    return base64.b64decode(text.strip()).decode("utf-8")


def mechanisms(features: ET.Element) -> list[str]:
    found = stanzas.find_path(features, ("mechanisms",))
    if found is None:
        return []
    return [m.text.strip() for m in stanzas.children(found, "mechanism") if m.text]


def parse_digest_challenge(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for match in _CHALLENGE_FIELD.finditer(text):
        quoted, bare = match.group(2), match.group(3)
        fields[match.group(1)] = quoted if quoted is not None else bare.strip()
    return fields


def _md5(data: str | bytes) -> bytes:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.md5(data).digest()  # noqa: S324 - mandated by DIGEST-MD5


def digest_md5_response(
    username: str,
    password: str,
    realm: str,
    nonce: str,
    cnonce: str,
    digest_uri: str,
    *,
    nc: str = "00000001",
    qop: str = "auth",
) -> tuple[str, str]:
    """Compute the DIGEST-MD5 ``response`` and the expected ``rspauth`` (RFC 2831)."""
    a1 = _md5(f"{username}:{realm}:{password}") + f":{nonce}:{cnonce}".encode("utf-8")
    ha1 = _md5(a1).hex()
    tail = f"{nonce}:{nc}:{cnonce}:{qop}"
    response = _md5(f"{ha1}:{tail}:{_md5(f'AUTHENTICATE:{digest_uri}').hex()}").hex()
    rspauth = _md5(f"{ha1}:{tail}:{_md5(f':{digest_uri}').hex()}").hex()
    return response, rspauth


def _expect_success(frame: ET.Element) -> None:
    name = stanzas.local_name(frame)
    if name == "success":
        return
    if name == "failure":
        reason = next(iter(frame), None)
        detail = stanzas.local_name(reason) if reason is not None else "unknown"
        raise TransportError(f"hub rejected authentication: {detail}")
    raise TransportError(f"unexpected <{name}> during authentication")


async def _auth_plain(ws: Any, config: Config) -> None:
    payload = _b64(f"\0{config.username}\0{config.password}")
    await send_frame(ws, stanzas.build_auth("PLAIN", payload))
    _expect_success(await _recv_frame(ws))


async def _auth_digest_md5(ws: Any, config: Config, cnonce: str | None = None) -> None:
    await send_frame(ws, stanzas.build_auth("DIGEST-MD5"))
    frame = await _recv_frame(ws)
    if stanzas.local_name(frame) != "challenge":
        _expect_success(frame)
        raise TransportError("hub skipped the DIGEST-MD5 challenge")

    challenge = parse_digest_challenge(_unb64(frame.text))
    if "nonce" not in challenge:
        raise TransportError("DIGEST-MD5 challenge has no nonce")
    realm = challenge.get("realm", config.domain)
    cnonce = cnonce or secrets.token_hex(16)
    digest_uri = f"xmpp/{config.domain}"
    response, rspauth = digest_md5_response(
        config.username, config.password, realm, challenge["nonce"], cnonce, digest_uri
    )
    payload = ",".join(
        [
            f'username="{config.username}"',
            f'realm="{realm}"',
            f'nonce="{challenge["nonce"]}"',
            f'cnonce="{cnonce}"',
            "nc=00000001",
            "qop=auth",
            f'digest-uri="{digest_uri}"',
            f"response={response}",
            "charset=utf-8",
        ]
    )
    await send_frame(ws, stanzas.build_sasl_response(_b64(payload)))

    frame = await _recv_frame(ws)
    name = stanzas.local_name(frame)
    if name in ("challenge", "success") and frame.text:
        confirmed = parse_digest_challenge(_unb64(frame.text)).get("rspauth")
        if confirmed is not None and confirmed != rspauth:
            raise TransportError("hub sent a wrong rspauth; refusing the session")
    if name == "challenge":
        await send_frame(ws, stanzas.build_sasl_response())
        frame = await _recv_frame(ws)
    _expect_success(frame)


# ---------------------------------------------------------------------------
# Resource binding
# ---------------------------------------------------------------------------


async def _await_iq(ws: Any, iq_id: str) -> ET.Element:
    while True:
        frame = await _recv_frame(ws)
        if stanzas.local_name(frame) == "iq" and frame.get("id") == iq_id:
            if frame.get("type") != "result":
                raise TransportError(f"hub refused {iq_id}: {stanzas.to_xml(frame)[:200]}")
            return frame
        logger.debug("ignoring <%s> during stream setup", stanzas.local_name(frame))


async def _bind(ws: Any, config: Config, features: ET.Element) -> str:
    if stanzas.find_path(features, ("bind",)) is None:
        raise TransportError("hub does not offer resource binding")
    request = stanzas.build_bind(config.resource)
    await send_frame(ws, request)
    result = await _await_iq(ws, request.get("id"))
    jid = stanzas.find_path(result, ("bind", "jid"))
    bound = jid.text.strip() if jid is not None and jid.text else f"{config.jid}/{config.resource}"

    session = stanzas.find_path(features, ("session",))
    if session is not None and stanzas.find_path(session, ("optional",)) is None:
        request = stanzas.build_session()
        await send_frame(ws, request)
        await _await_iq(ws, request.get("id"))
    return bound


async def authenticate(ws: Any, config: Config) -> str:
    """Run the full stream handshake and return the bound JID."""
    features = await _open_stream(ws, config.domain)
    offered = mechanisms(features)
    if config.sasl_mechanism not in offered:
        raise TransportError(
            f"hub does not offer {config.sasl_mechanism} (offers: {', '.join(offered) or 'none'})"
        )
    logger.debug("authenticating as %s via %s", config.jid, config.sasl_mechanism)
    if config.sasl_mechanism == "DIGEST-MD5":
        await _auth_digest_md5(ws, config)
    else:
        await _auth_plain(ws, config)

    features = await _open_stream(ws, config.domain)
    return await _bind(ws, config, features)
