"""WebSocket connection manager for real-time scan events."""

import asyncio
import logging
from typing import Any

from fastapi import WebSocket

from core.config import get_settings

logger = logging.getLogger(__name__)

EVENTS_RESOURCE = "events"

# Lifecycle events go out immediately; entity events are batched
IMMEDIATE_EVENTS = frozenset({"scan_start", "scan_complete"})


def library_resource(library_id: Any) -> str:
    return f"library:{library_id}"


class WebSocketManager:
    """
    Manages WebSocket connections per event stream.

    Features:
    - Connection tracking per resource ID ("events" or "library:<id>")
    - Message buffering to prevent render thrashing during large scans
    - Implements the scan event emitter
    """

    def __init__(self) -> None:
        """Initialize WebSocket manager."""
        self.settings = get_settings()
        self._connections: dict[str, set[WebSocket]] = {}
        self._buffers: dict[str, list[dict[str, Any]]] = {}
        self._flush_tasks: dict[str, asyncio.Task[None]] = {}
        self._buffer_interval = self.settings.ws_log_buffer_ms / 1000.0

    async def connect(self, websocket: WebSocket, resource_id: str) -> None:
        """
        Accept and register a WebSocket connection.

        Args:
            websocket: The WebSocket connection
            resource_id: Identifier for the resource
        """
        await websocket.accept()
        self._connections.setdefault(resource_id, set()).add(websocket)
        self._buffers.setdefault(resource_id, [])

    def disconnect(self, websocket: WebSocket, resource_id: str) -> None:
        conns = self._connections.get(resource_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                del self._connections[resource_id]

        # If no listeners remain, clean up buffers/tasks for that resource id.
        if resource_id not in self._connections:
            self._buffers.pop(resource_id, None)
            task = self._flush_tasks.pop(resource_id, None)
            if task is not None:
                task.cancel()

    async def send_personal_message(self, message: dict[str, Any], resource_id: str) -> bool:
        """
        Send a message to every connection of one resource.

        Returns:
            True if sent to at least one connection
        """
        websockets = list(self._connections.get(resource_id, set()))
        if not websockets:
            return False

        sent_any = False
        to_drop: list[WebSocket] = []
        for ws in websockets:
            try:
                await ws.send_json(message)
                sent_any = True
            except Exception:
                logger.debug("Dropping websocket on %s after failed send", resource_id)
                to_drop.append(ws)

        for ws in to_drop:
            self.disconnect(ws, resource_id)

        return sent_any

    def buffer_message(self, message: dict[str, Any], resource_id: str) -> None:
        """
        Buffer a message for batched sending.

        Messages are collected and flushed at regular intervals so a scan of
        thousands of items does not send thousands of frames.
        """
        if resource_id not in self._connections:
            return

        self._buffers.setdefault(resource_id, []).append(message)

        # Start flush task if not already running
        task = self._flush_tasks.get(resource_id)
        if task is None or task.done():
            self._flush_tasks[resource_id] = asyncio.create_task(self._flush_buffer(resource_id))

    async def _flush_buffer(self, resource_id: str) -> None:
        await asyncio.sleep(self._buffer_interval)

        if resource_id not in self._buffers or resource_id not in self._connections:
            return

        messages = self._buffers[resource_id]
        if not messages:
            return

        self._buffers[resource_id] = []
        await self.send_personal_message(
            {
                "type": "batch",
                "messages": messages,
                "count": len(messages),
            },
            resource_id,
        )

    def _targets(self, data: Any) -> list[str]:
        targets = [EVENTS_RESOURCE]
        library_id = data.get("library_id") if isinstance(data, dict) else None
        if library_id:
            targets.append(library_resource(library_id))
        return targets

    async def emit(self, event: str, data: Any) -> None:
        """Deliver a scan event to the global stream and to the item's library stream."""
        message = {"type": event, "data": data}
        for resource_id in self._targets(data):
            if event in IMMEDIATE_EVENTS:
                await self.send_personal_message(message, resource_id)
            else:
                self.buffer_message(message, resource_id)
