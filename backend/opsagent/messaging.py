"""WebSocket connection manager for live agent events.

Sockets subscribe per organization; every bus event carrying that org id is
forwarded to them as JSON.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from .events.bus import Event, EventBus

logger = logging.getLogger(__name__)


class ConnectionManager:
    """In-memory fan-out manager keyed by organization id."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocket]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._subscription: str | None = None

    def attach(self, bus: EventBus) -> None:
        if self._subscription is None:
            self._subscription = bus.subscribe("*", self.forward)

    def detach(self, bus: EventBus) -> None:
        if self._subscription is not None:
            bus.unsubscribe(self._subscription)
            self._subscription = None

    async def connect(self, org_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections[org_id].append(websocket)

    async def disconnect(self, org_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            if org_id in self._connections and websocket in self._connections[org_id]:
                self._connections[org_id].remove(websocket)

    def connection_count(self, org_id: str) -> int:
        return len(self._connections.get(org_id, []))

    async def forward(self, event: Event) -> None:
        if not event.org_id:
            return
        await self.broadcast(
            event.org_id,
            {
                "type": "event",
                "event": {
                    "id": event.id,
                    "name": event.name,
                    "correlation_id": event.correlation_id,
                    "source": event.source,
                    "emitted_at": event.emitted_at.isoformat(),
                    "payload": jsonable_encoder(event.payload),
                },
            },
        )

    async def broadcast(self, org_id: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            targets = list(self._connections.get(org_id, []))
        for ws in targets:
            try:
                await ws.send_json(payload)
            except Exception as exc:
                logger.info("dropping websocket org=%s error=%s", org_id, exc)
                await self.disconnect(org_id, ws)
