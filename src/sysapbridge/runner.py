"""Process entry point: wires the store, session, engine and HTTP server.

Everything runs inside a single asyncio event loop.  On SIGINT/SIGTERM the
session closes its stream, pending pulse stops are cancelled and the
actuator snapshot is written back to disk.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI

from . import config as config_module
from . import log_setup
from .commands import CommandEngine
from .config import Config
from .dispatcher import Dispatcher
from .server import create_app, run_http_server
from .session import Session, SessionState
from .status import StatusHub
from .store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class Bridge:
    """All long-lived components of one bridge process."""

    config: Config
    store: StateStore
    hub: StatusHub
    session: Session
    dispatcher: Dispatcher
    engine: CommandEngine
    app: FastAPI


def _record_state(state: SessionState, hub_url: str) -> None:
    if state is SessionState.ONLINE:
        config_module.mark_connected(hub_url)
    elif state is SessionState.SUBSCRIBED:
        config_module.mark_subscribed()
    elif state is SessionState.DISCONNECTED:
        config_module.mark_disconnected()


def build_bridge(config: Config, store: StateStore, *, record_state: bool = True) -> Bridge:
    hub = StatusHub(store)
    session = Session(
        config,
        store,
        publish_status=hub.publish,
        on_state_change=(lambda s: _record_state(s, config.hub_url)) if record_state else None,
    )
    dispatcher = Dispatcher(store, session.send)
    engine = CommandEngine(store, dispatcher, is_connected=lambda: session.connected)
    app = create_app(
        store=store, dispatcher=dispatcher, engine=engine, session=session, hub=hub
    )
    return Bridge(config, store, hub, session, dispatcher, engine, app)


async def run_bridge(
    config: Config,
    *,
    snapshot_file: Path | None = None,
    foreground: bool = False,
    verbose: bool = False,
) -> None:
    log_setup.init(
        "bridge",
        config_module.resolve_log_dir(config),
        level="DEBUG" if verbose else "INFO",
        foreground=foreground,
        log_levels=config.log_levels or None,
    )
    snapshot_file = snapshot_file or config_module.SNAPSHOT_FILE
    bridge = build_bridge(config, StateStore.load(snapshot_file))
    stop_event = asyncio.Event()

    def _shutdown(*_: object) -> None:
        logger.info("Shutdown signal received.")
        stop_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _shutdown)
    else:
        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)

    logger.info(
        "Starting sysapbridge. hub: %s as %s  HTTP: http://%s:%d/status",
        config.hub_url,
        config.jid,
        config.http_host,
        config.http_port,
    )

    async def _guard(name: str, coro: Awaitable[None]) -> None:
        try:
            await coro
        except (Exception, SystemExit):
            # uvicorn exits via SystemExit when it cannot bind
            logger.exception("%s stopped with an error; shutting down.", name)
            stop_event.set()

    await asyncio.gather(
        _guard("hub session", bridge.session.run(stop_event)),
        _guard("HTTP server", run_http_server(bridge.app, config, stop_event)),
    )

    cancelled = bridge.dispatcher.cancel_pending()
    if cancelled:
        logger.info("Cancelled %d pending pulse stop(s).", cancelled)
    bridge.store.save(snapshot_file)
    config_module.mark_disconnected()
    logger.info("sysapbridge exited.")
