"""The single long-lived XMPP session with the SysAP.

States::

    DISCONNECTED → CONNECTING → ONLINE → SUBSCRIBED
          ↑______________________|__________|   (error / close, after backoff)

- ``run()`` connects, authenticates (see transport.py) and goes ONLINE.
  It then starts the keepalive ping, sends the subscription presence and
  reads frames until the connection drops.
- The first presence frame from the hub moves the session to SUBSCRIBED and,
  exactly once per connection, sends an available presence and asks the hub
  for a full refresh (``RemoteInterface.getAll``).  Refreshing earlier would
  race with the first pushed update.
- On any error the session goes back to DISCONNECTED and reconnects with
  exponential backoff (1s → 2s → 4s … capped at ``backoff_max``).

``send()`` never blocks: stanzas go onto a queue that a writer task drains.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from xml.etree import ElementTree as ET

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from . import stanzas, transport
from .config import Config
from .log_setup import WIRE_LOGGER
from .stanzas import FrameKind
from .store import StateStore
from .transport import TransportError

logger = logging.getLogger(__name__)
wire = logging.getLogger(WIRE_LOGGER)


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ONLINE = "online"
    SUBSCRIBED = "subscribed"


_CONNECTED = (SessionState.ONLINE, SessionState.SUBSCRIBED)


class Session:
    """Owns the hub connection and routes every inbound frame."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        *,
        publish_status: Callable[[], None] | None = None,
        on_state_change: Callable[[SessionState], None] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._publish_status = publish_status
        self._on_state_change = on_state_change
        self.state = SessionState.DISCONNECTED
        self.jid: str | None = None
        self._outbound: asyncio.Queue[ET.Element] | None = None
        self._ping_count = 0
        self._last_ping: str | None = None
        self._subscribed = False
        self._reached_online = False

    @property
    def connected(self) -> bool:
        return self.state in _CONNECTED

    @property
    def last_ping_id(self) -> str | None:
        return self._last_ping

    @property
    def outbound(self) -> asyncio.Queue[ET.Element] | None:
        return self._outbound

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.info("session %s → %s", self.state.value, state.value)
        self.state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("state change handler failed")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send(self, element: ET.Element) -> None:
        """Queue a stanza for the hub (fire-and-forget)."""
        if self._outbound is None or not self.connected:
            logger.warning(
                "Hub is not connected; dropping outbound <%s>.", stanzas.local_name(element)
            )
            return
        self._outbound.put_nowait(element)

    def send_ping(self) -> int:
        self._ping_count += 1
        self._last_ping = str(self._ping_count)
        self.send(stanzas.build_ping(self._ping_count))
        return self._ping_count

    def subscribe(self) -> None:
        self.send(stanzas.build_subscribe())

    def on_subscribed(self) -> None:
        self.send(stanzas.build_presence())

    def request_full_refresh(self) -> None:
        logger.info("requesting full refresh from the hub")
        self.send(stanzas.build_get_all())

    def online(self, jid: str) -> None:
        """Enter ONLINE after the transport handshake and start the subscription."""
        self.jid = jid
        self._outbound = asyncio.Queue()
        self._subscribed = False
        self._reached_online = True
        self._set_state(SessionState.ONLINE)
        logger.info("hub online as %s", jid)
        self.subscribe()

    def offline(self) -> None:
        self._outbound = None
        self._subscribed = False
        self.jid = None
        self._set_state(SessionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_frame(self, frame: ET.Element) -> FrameKind:
        """Classify one inbound frame and route it."""
        kind = stanzas.classify(frame)
        try:
            match kind:
                case FrameKind.UPDATE:
                    logger.debug("update packet received")
                    self._store.apply_update(frame)
                    self._publish()
                case FrameKind.RPC_RESULT:
                    if frame.get("id") == self._last_ping:
                        wire.debug("ping result %s received", frame.get("id"))
                    else:
                        logger.debug("result packet %s received", frame.get("id"))
                        self._store.apply_response(frame)
                        self._publish()
                case FrameKind.PRESENCE:
                    logger.debug("presence packet received from %s", frame.get("from"))
                    if stanzas.is_hub_presence(frame) and not self._subscribed:
                        self._subscribed = True
                        self._set_state(SessionState.SUBSCRIBED)
                        self.on_subscribed()
                        self.request_full_refresh()
                case _:
                    logger.warning("unknown stanza <%s>", stanzas.local_name(frame))
        except ET.ParseError as exc:
            logger.warning("discarding %s frame with unparsable payload: %s", kind.value, exc)
        return kind

    def _publish(self) -> None:
        if self._publish_status is None:
            return
        try:
            self._publish_status()
        except Exception:
            logger.exception("status publish failed")

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Keep a session to the hub until ``stop_event`` is set."""
        backoff = self._config.backoff_base

        while not stop_event.is_set():
            self._reached_online = False
            self._set_state(SessionState.CONNECTING)
            try:
                await self._run_connection(stop_event)
                if stop_event.is_set():
                    break
                logger.warning("Hub closed the session. Reconnecting in %.0fs…", backoff)
            except TransportError as exc:
                logger.error("Hub handshake failed: %s. Reconnecting in %.0fs…", exc, backoff)
            except (OSError, websockets.WebSocketException) as exc:
                logger.error("Hub connection error: %s. Reconnecting in %.0fs…", exc, backoff)
            finally:
                self.offline()

            if stop_event.is_set():
                break
            if self._reached_online:
                backoff = self._config.backoff_base

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=backoff)
            except asyncio.TimeoutError:
                pass

            backoff = min(backoff * 2, self._config.backoff_max)

        self.offline()
        logger.info("Hub session stopped.")

    async def _run_connection(self, stop_event: asyncio.Event) -> None:
        logger.info("Connecting to hub: %s", self._config.hub_url)
        async with websockets.connect(
            self._config.hub_url, subprotocols=["xmpp"], ping_interval=None
        ) as ws:
            jid = await transport.authenticate(ws, self._config)
            self.online(jid)

            ping_task = asyncio.create_task(self._keepalive_loop())
            write_task = asyncio.create_task(self._write_frames(ws))
            read_task = asyncio.create_task(self._read_frames(ws))
            stop_task = asyncio.create_task(stop_event.wait())

            done, pending = await asyncio.wait(
                [ping_task, write_task, read_task, stop_task],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, ConnectionClosed):
                    pass

            if stop_task in done:
                try:
                    await transport.send_frame(ws, stanzas.build_close())
                except ConnectionClosed:
                    pass
                return
            for task in done:
                task.result()

    async def _keepalive_loop(self) -> None:
        while True:
            self.send_ping()
            await asyncio.sleep(self._config.keepalive_interval)

    async def _write_frames(self, ws: ClientConnection) -> None:
        queue = self._outbound
        if queue is None:
            return
        while True:
            element = await queue.get()
            await transport.send_frame(ws, element)

    async def _read_frames(self, ws: ClientConnection) -> None:
        async for raw in ws:
            wire.debug("[RECEIVED] %s", raw)
            try:
                frame = stanzas.from_xml(raw)
            except ET.ParseError:
                logger.warning("Invalid XML from hub: %.200s", raw)
                continue
            if stanzas.local_name(frame) == "close":
                logger.info("Hub closed the stream.")
                return
            try:
                self.handle_frame(frame)
            except Exception:
                logger.exception(
                    "Dropping <%s> frame that failed to apply.", stanzas.local_name(frame)
                )
