"""FastAPI HTTP surface of the bridge.

Runs inside the same asyncio loop as the hub session.
Endpoints:
  POST /commands/{type}/{serial}/{channel}/{action}   — resolve and send a command
  POST /datapoints/{serial}/{channel}/{datapoint}      — raw write with a value marker
  POST /refresh                                        — ask the hub for all state
  GET  /status                                         — session and store status
  GET  /actuators, /actuators/{serial}                 — current actuator state
  WS   /ws                                             — status pushes
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Path, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .commands import CommandEngine
from .config import Config
from .dispatcher import DispatchError, Dispatcher
from .models import CommandOk
from .session import Session
from .status import StatusHub
from .store import StateStore
from .values import parse_spec

logger = logging.getLogger(__name__)

DATAPOINT_PATTERN = r"^(idp|odp|pm)[0-9A-Fa-f]{4}$"


def _result_body(result: Any) -> dict[str, Any]:
    body = result.model_dump(mode="json")
    body["message"] = result.message
    return body


def create_app(
    *,
    store: StateStore,
    dispatcher: Dispatcher,
    engine: CommandEngine,
    session: Session,
    hub: StatusHub,
) -> FastAPI:
    """Build the app with every collaborator injected via ``app.state``."""
    app = FastAPI(title="sysapbridge", version="0.1.0", docs_url=None, redoc_url=None)
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.engine = engine
    app.state.session = session
    app.state.hub = hub

    @app.post("/commands/{type}/{serial}/{channel}/{action}")
    async def post_command(
        request: Request,
        type: str,
        serial: str,
        channel: str,
        action: str,
        value: Optional[float] = Query(default=None),
    ) -> JSONResponse:
        result = request.app.state.engine.resolve(type, serial, channel, action, value)
        if isinstance(result, CommandOk):
            status_code = 200
        elif result.kind == "unknown_actuator":
            status_code = 404
        elif result.kind == "hub_unavailable":
            status_code = 503
        else:
            status_code = 400
        return JSONResponse(_result_body(result), status_code=status_code)

    @app.post("/datapoints/{serial}/{channel}/{datapoint}")
    async def post_datapoint(
        request: Request,
        serial: str,
        channel: str,
        datapoint: str = Path(pattern=DATAPOINT_PATTERN),
        value: str = Query(...),
    ) -> JSONResponse:
        try:
            spec = parse_spec(value)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        session: Session = request.app.state.session
        if not session.connected:
            raise HTTPException(
                status_code=503, detail=f"hub session is {session.state.value}"
            )
        try:
            write = request.app.state.dispatcher.dispatch(serial, channel, datapoint, spec)
        except DispatchError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse(
            {"ok": True, "write": write.model_dump(mode="json"), "message": str(write)}
        )

    @app.post("/refresh")
    async def post_refresh(request: Request) -> JSONResponse:
        session: Session = request.app.state.session
        if not session.connected:
            return JSONResponse(
                {"ok": False, "message": f"hub session is {session.state.value}"},
                status_code=503,
            )
        session.request_full_refresh()
        return JSONResponse({"ok": True, "message": "full refresh requested"})

    @app.get("/status")
    async def get_status(request: Request) -> JSONResponse:
        state = request.app.state
        return JSONResponse(
            {
                "session": state.session.state.value,
                "jid": state.session.jid,
                "last_ping_id": state.session.last_ping_id,
                "actuators": len(state.store),
                "pending_stops": len(state.dispatcher.pending_stops),
                "listeners": state.hub.connection_count,
                "last_published": state.hub.last_published,
            }
        )

    @app.get("/actuators")
    async def get_actuators(request: Request) -> JSONResponse:
        return JSONResponse(request.app.state.store.snapshot().model_dump(mode="json"))

    @app.get("/actuators/{serial}")
    async def get_actuator(request: Request, serial: str) -> JSONResponse:
        actuator = request.app.state.store.actuator(serial)
        if actuator is None:
            raise HTTPException(status_code=404, detail=f'actuator "{serial}" not found')
        return JSONResponse(actuator.model_dump(mode="json"))

    @app.websocket("/ws")
    async def ws_status(ws: WebSocket) -> None:
        hub: StatusHub = ws.app.state.hub
        await ws.accept()
        await hub.subscribe(ws)
        try:
            await ws.send_json(hub.snapshot())
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await hub.unsubscribe(ws)

    return app


async def run_http_server(app: FastAPI, config: Config, stop_event: asyncio.Event) -> None:
    """Start uvicorn and shut it down when stop_event is set."""
    uv_config = uvicorn.Config(
        app=app,
        host=config.http_host,
        port=config.http_port,
        log_level="warning",
        loop="none",  # use the existing event loop
    )
    server = uvicorn.Server(uv_config)

    serve_task = asyncio.create_task(server.serve())
    stop_task = asyncio.create_task(stop_event.wait())

    done, pending = await asyncio.wait(
        [serve_task, stop_task],
        return_when=asyncio.FIRST_COMPLETED,
    )

    if stop_task in done:
        server.should_exit = True
        await serve_task

    for task in pending:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    logger.info("HTTP server stopped.")
