"""WebSocket fan-out of cache queue events.

Clients connect to a single path, receive a ``cache-status`` snapshot of the
queue immediately, and then every job event as a JSON frame. A periodic sweep
pings each client and terminates the ones that stayed silent since the
previous sweep.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, WebSocket
from starlette.websockets import WebSocketDisconnect

from ..jobs.events import CacheEvent, EventBus, JobCompleted, JobEnqueued, JobFailed, JobStatusChanged, Subscription
from ..jobs.models import CacheJob, QueueStats

logger = logging.getLogger(__name__)

CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _job_identity(job: CacheJob) -> dict[str, Any]:
    return {
        "jobId": job.id,
        "mediaType": job.media_type.value,
        "mediaId": job.media_id,
        "imageKind": job.image_kind.value,
    }


def job_payload(job: CacheJob) -> dict[str, Any]:
    return {
        **_job_identity(job),
        "status": job.status.value,
        "progress": job.progress,
        "error": job.error,
        "attempts": job.attempts,
        "enqueuedAt": _iso(job.enqueued_at),
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
    }


def stats_message(stats: QueueStats) -> dict[str, Any]:
    return {"type": "cache-status", "data": {"type": "queue-stats", "stats": stats.to_dict()}}


def to_wire_message(event: CacheEvent) -> dict[str, Any]:
    if isinstance(event, JobEnqueued):
        return {
            "type": "cache-status",
            "data": {"type": "job-enqueued", **_job_identity(event.job), "stats": event.stats.to_dict()},
        }
    if isinstance(event, JobStatusChanged):
        return {"type": "cache-status", "data": job_payload(event.job)}
    if isinstance(event, JobCompleted):
        return {
            "type": "cache-completed",
            "data": {**_job_identity(event.job), "deliveryUrl": event.delivery_url},
        }
    if isinstance(event, JobFailed):
        return {
            "type": "cache-failed",
            "data": {**_job_identity(event.job), "error": event.error, "attempts": event.job.attempts},
        }
    raise TypeError(f"Unhandled cache event: {event!r}")


class ClientConnection:
    def __init__(self, websocket: WebSocket, *, send_timeout: float) -> None:
        self.websocket = websocket
        self.connection_id = uuid4().hex[:12]
        self.is_alive = True
        self.closed = False
        self._send_timeout = send_timeout

    async def send_json(self, message: dict[str, Any]) -> None:
        await asyncio.wait_for(self.websocket.send_text(json.dumps(message)), timeout=self._send_timeout)

    async def close(self, code: int, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("Error closing WebSocket client %s: %s", self.connection_id, exc)


class CacheStatusBroadcaster:
    """Pushes cache queue events to every connected WebSocket client."""

    def __init__(
        self,
        *,
        events: EventBus,
        stats_provider: Callable[[], QueueStats],
        heartbeat_interval: float = 30.0,
        send_timeout: float = 5.0,
    ) -> None:
        self._events = events
        self._stats_provider = stats_provider
        self.heartbeat_interval = heartbeat_interval
        self.send_timeout = send_timeout
        self.path: Optional[str] = None
        self._connections: dict[str, ClientConnection] = {}
        self._subscription: Optional[Subscription] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._started = False
        self._accepting = False

    def start(self, app: Optional[FastAPI] = None, *, path: str = "/ws/cache-status") -> None:
        if self._started:
            logger.debug("Cache status broadcaster already started on %s", self.path)
            return
        if app is not None:
            self._mount(app, path)
        self.path = path
        self._subscription = self._events.subscribe()
        self._pump_task = asyncio.create_task(self._pump(self._subscription), name="cache-status-pump")
        if self.heartbeat_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_forever(), name="cache-status-sweep")
        self._started = True
        self._accepting = True
        logger.info("Cache status WebSocket initialized on %s", path)

    async def shutdown(self) -> None:
        self._accepting = False
        tasks = [task for task in (self._pump_task, self._sweep_task) if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pump_task = None
        self._sweep_task = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

        connections = list(self._connections.values())
        self._connections.clear()
        if connections:
            await asyncio.gather(
                *(connection.close(CLOSE_GOING_AWAY, "Server shutting down") for connection in connections)
            )
        if self._started:
            logger.info("Cache status WebSocket closed (%s client(s) disconnected)", len(connections))
        self._started = False

    def get_stats(self) -> dict[str, Any]:
        return {"connected_clients": len(self._connections), "started": self._started}

    async def handle_connection(self, websocket: WebSocket) -> None:
        if not self._accepting:
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        await websocket.accept()
        connection = ClientConnection(websocket, send_timeout=self.send_timeout)
        self._connections[connection.connection_id] = connection
        logger.info(
            "WebSocket client %s connected (%s open)", connection.connection_id, len(self._connections)
        )
        try:
            if not await self._send(connection, stats_message(self._stats_provider())):
                return
            while not connection.closed:
                try:
                    message = await websocket.receive()
                except (WebSocketDisconnect, RuntimeError) as exc:
                    logger.debug("WebSocket client %s stopped receiving: %s", connection.connection_id, exc)
                    break
                if message["type"] == "websocket.disconnect":
                    break
                connection.is_alive = True
                await self._handle_frame(connection, message.get("text") or message.get("bytes"))
        finally:
            self._drop(connection)
            logger.info("WebSocket client %s disconnected", connection.connection_id)

    async def broadcast(self, message: dict[str, Any]) -> int:
        connections = [connection for connection in self._connections.values() if not connection.closed]
        if not connections:
            return 0
        results = await asyncio.gather(*(self._send(connection, message) for connection in connections))
        return sum(1 for delivered in results if delivered)

    async def sweep(self) -> int:
        """Run one liveness pass and return the number of terminated clients."""
        stale = [connection for connection in self._connections.values() if not connection.is_alive]
        for connection in stale:
            self._drop(connection)
            await connection.close(CLOSE_GOING_AWAY, "Heartbeat timeout")
        if stale:
            logger.info("Cleaned up %s dead WebSocket connection(s)", len(stale))

        live = list(self._connections.values())
        for connection in live:
            connection.is_alive = False
        if live:
            await asyncio.gather(*(self._send(connection, {"type": "ping"}) for connection in live))
        return len(stale)

    def _mount(self, app: FastAPI, path: str) -> None:
        if any(getattr(route, "path", None) == path for route in app.router.routes):
            return
        app.add_api_websocket_route(path, self.handle_connection, name="cache-status")

    async def _handle_frame(self, connection: ClientConnection, raw: Optional[str | bytes]) -> None:
        try:
            message = json.loads(raw) if raw else None
        except (ValueError, RecursionError):
            message = None
        if not isinstance(message, dict):
            logger.warning("Ignoring malformed WebSocket message from %s", connection.connection_id)
            return

        message_type = message.get("type")
        if message_type == "ping":
            await self._send(connection, {"type": "pong"})
        elif message_type == "pong":
            return
        else:
            logger.warning(
                "Unknown WebSocket message type from %s: %r", connection.connection_id, message_type
            )

    async def _send(self, connection: ClientConnection, message: dict[str, Any]) -> bool:
        try:
            await connection.send_json(message)
        except Exception as exc:
            logger.warning("Dropping WebSocket client %s after send failure: %s", connection.connection_id, exc)
            self._drop(connection)
            await connection.close(CLOSE_GOING_AWAY, "Send failed")
            return False
        return True

    def _drop(self, connection: ClientConnection) -> None:
        self._connections.pop(connection.connection_id, None)

    async def _pump(self, subscription: Subscription) -> None:
        while True:
            event = await subscription.get()
            try:
                message = to_wire_message(event)
            except TypeError:
                logger.exception("Cannot translate cache event %r", event)
                continue
            await self.broadcast(message)

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")
