"""Status publisher: pushes the actuator snapshot to WebSocket listeners.

The session calls ``publish()`` after every update or RPC result it applied.
Listeners are the ``/ws`` clients of the HTTP server.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket

from .store import StateStore

logger = logging.getLogger(__name__)


class StatusHub:
    """Tracks connected WebSocket listeners and broadcasts status to them."""

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self._clients: set[WebSocket] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self.last_published: str | None = None

    async def subscribe(self, ws: WebSocket) -> None:
        self._clients.add(ws)
        logger.info("Status listener connected (total: %d)", len(self._clients))

    async def unsubscribe(self, ws: WebSocket) -> None:
        self._clients.discard(ws)
        logger.info("Status listener disconnected (total: %d)", len(self._clients))

    def snapshot(self) -> dict[str, Any]:
        return {
            "type": "status",
            "actuators": self._store.snapshot().model_dump(mode="json")["actuators"],
        }

    def publish(self) -> None:
        """Schedule a broadcast of the current snapshot; returns immediately."""
        self.last_published = datetime.now(timezone.utc).isoformat()
        if not self._clients:
            return
        task = asyncio.get_running_loop().create_task(self.broadcast(self.snapshot()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def broadcast(self, data: dict[str, Any]) -> None:
        message = json.dumps(data)
        dead = []
        for ws in list(self._clients):
            try:
                await ws.send_text(message)
            except (ConnectionError, RuntimeError) as exc:
                logger.warning("Status broadcast failed: %s", exc)
                dead.append(ws)
        for ws in dead:
            self._clients.discard(ws)

    @property
    def connection_count(self) -> int:
        return len(self._clients)
