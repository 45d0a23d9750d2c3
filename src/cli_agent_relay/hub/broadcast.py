"""WebSocket broadcast hub.

cli-agent-relay hub v0.1.0

Fans tagged relay messages out to every connected observer. Each observer
gets a bounded outbound queue drained by its own writer task, so a slow
observer only ever loses its own messages.

Liveness: every heartbeat interval each observer is marked suspect and sent
a PING frame. A PONG before the next interval clears the flag; an observer
still suspect at the next interval is evicted.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from aiohttp import WSCloseCode, WSMsgType, web

from ..types import ObserverMessageType, now_ms

__all__ = [
    "BroadcastHub",
    "ObserverConnection",
    "MessageHandler",
    "DEFAULT_HEARTBEAT_INTERVAL",
    "DEFAULT_MAX_QUEUE",
]

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0  # seconds
DEFAULT_MAX_QUEUE = 500

_connection_ids = itertools.count(1)


@dataclass(eq=False)
class ObserverConnection:
    """One connected observer.

    Attributes:
        ws: Server side of the WebSocket
        queue: Serialized messages waiting to be written
        suspect: Set by a liveness probe, cleared by the PONG reply
        writer: Task draining the queue into the socket
    """

    ws: web.WebSocketResponse
    queue: asyncio.Queue[str]
    id: int = field(default_factory=lambda: next(_connection_ids))
    suspect: bool = False
    writer: asyncio.Task[None] | None = None

    @property
    def closed(self) -> bool:
        return self.ws.closed


MessageHandler = Callable[
    [ObserverConnection, dict[str, Any]], Union[Awaitable[None], None]
]


class BroadcastHub:
    """Observer registry and fan-out.

    Example:
        hub = BroadcastHub(status_provider=lambda: worker.status.value)
        app.router.add_get("/ws", hub.handle_ws)
        await hub.start()
        hub.publish("status", status="running")
    """

    def __init__(
        self,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        max_queue: int = DEFAULT_MAX_QUEUE,
        status_provider: Callable[[], Any] | None = None,
    ) -> None:
        self._heartbeat_interval = heartbeat_interval
        self._max_queue = max_queue
        self._status_provider = status_provider
        self._connections: list[ObserverConnection] = []
        self._handlers: dict[str, MessageHandler] = {}
        self._liveness_task: asyncio.Task[None] | None = None
        self._closing: set[asyncio.Task[Any]] = set()

    @property
    def client_count(self) -> int:
        """Number of open observer connections."""
        return len(self._connections)

    @property
    def connections(self) -> list[ObserverConnection]:
        return list(self._connections)

    def set_status_provider(self, provider: Callable[[], Any] | None) -> None:
        self._status_provider = provider

    def on_message(self, message_type: str, handler: MessageHandler) -> None:
        """Route inbound observer messages of one type to a handler.

        The handler receives the sending connection and the decoded message;
        it may be a plain function or a coroutine function.
        """
        self._handlers[message_type] = handler

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the liveness loop; no-op if already started."""
        if self._liveness_task is None or self._liveness_task.done():
            self._liveness_task = asyncio.create_task(
                self._liveness_loop(), name="relay_hub_liveness"
            )

    async def close(self) -> None:
        """Stop the liveness loop and close every observer."""
        if self._liveness_task is not None:
            self._liveness_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._liveness_task
            self._liveness_task = None

        connections = list(self._connections)
        for conn in connections:
            self._discard(conn)
        await asyncio.gather(
            *(self._close_ws(conn, b"Server shutdown") for conn in connections),
            *self._closing,
        )
        logger.debug(f"Hub closed ({len(connections)} observers disconnected)")

    # =========================================================================
    # Outbound
    # =========================================================================

    def broadcast(self, message: dict[str, Any] | str) -> int:
        """Send one message to every open observer.

        The message is serialized once; closed connections are skipped.
        Never raises, including with zero observers.

        Returns:
            Number of observers the message was queued for
        """
        if isinstance(message, str):
            payload = message
        else:
            payload = json.dumps(message, ensure_ascii=False, default=str)

        delivered = 0
        for conn in list(self._connections):
            if self._enqueue(conn, payload):
                delivered += 1
        return delivered

    def publish(self, kind: str, **payload: Any) -> int:
        """Broadcast ``{"type": kind, **payload, "timestamp": <ms>}``."""
        message = {"type": kind, **payload, "timestamp": now_ms()}
        return self.broadcast(message)

    def send(self, conn: ObserverConnection, message: dict[str, Any]) -> bool:
        """Send a message to a single observer."""
        return self._enqueue(conn, json.dumps(message, ensure_ascii=False, default=str))

    def _enqueue(self, conn: ObserverConnection, payload: str) -> bool:
        if conn.closed:
            return False
        try:
            conn.queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.debug(f"Observer #{conn.id} queue full, dropping message")
            return False
        return True

    async def _write_loop(self, conn: ObserverConnection) -> None:
        while True:
            payload = await conn.queue.get()
            try:
                await conn.ws.send_str(payload)
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Observer #{conn.id} write failed: {e}")
                return

    # =========================================================================
    # Inbound
    # =========================================================================

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        """aiohttp handler for the observer endpoint."""
        # autoping off: PONG frames must reach us to clear the suspect flag
        ws = web.WebSocketResponse(autoping=False)
        await ws.prepare(request)

        conn = ObserverConnection(ws=ws, queue=asyncio.Queue(maxsize=self._max_queue))
        conn.writer = asyncio.create_task(
            self._write_loop(conn), name=f"relay_hub_writer_{conn.id}"
        )
        self.send(conn, self._handshake())
        self._connections.append(conn)
        logger.info(f"Observer #{conn.id} connected, total: {len(self._connections)}")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_text(conn, msg.data)
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.PONG:
                    conn.suspect = False
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(f"Observer #{conn.id} connection error: {ws.exception()}")
        finally:
            self._discard(conn)
            logger.info(f"Observer #{conn.id} disconnected, remaining: {len(self._connections)}")

        return ws

    def _handshake(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "type": ObserverMessageType.CONNECTED.value,
            "timestamp": now_ms(),
        }
        if self._status_provider is not None:
            status = self._status_provider()
            message["workerStatus"] = getattr(status, "value", status)
        return message

    async def _handle_text(self, conn: ObserverConnection, text: str) -> None:
        try:
            data = json.loads(text)
        except ValueError:
            logger.warning(f"Invalid message from observer #{conn.id}: {text[:100]}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object message from observer #{conn.id}")
            return

        message_type = data.get("type")
        if message_type == ObserverMessageType.PING.value:
            self.send(conn, {"type": ObserverMessageType.PONG.value, "timestamp": now_ms()})
            return

        handler = self._handlers.get(message_type) if isinstance(message_type, str) else None
        if handler is None:
            logger.debug(f"Unknown message type from observer #{conn.id}: {message_type}")
            return

        try:
            result = handler(conn, data)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Handler for {message_type} failed: {e}")

    # =========================================================================
    # Liveness
    # =========================================================================

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await self.check_liveness()

    async def check_liveness(self) -> int:
        """Run one liveness round.

        Returns:
            Number of observers evicted this round
        """
        evicted = 0
        for conn in list(self._connections):
            if conn.suspect:
                logger.warning(f"Observer #{conn.id} missed liveness probe, evicting")
                self._evict(conn)
                evicted += 1
                continue

            conn.suspect = True
            try:
                await conn.ws.ping()
            except (ConnectionResetError, RuntimeError) as e:
                logger.debug(f"Probe to observer #{conn.id} failed: {e}")
        return evicted

    def _evict(self, conn: ObserverConnection) -> None:
        self._discard(conn)
        # Closing waits for the peer's close frame; keep it off the liveness loop
        task = asyncio.create_task(self._close_ws(conn, b"Liveness timeout"))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _discard(self, conn: ObserverConnection) -> None:
        if conn in self._connections:
            self._connections.remove(conn)
        if conn.writer is not None and not conn.writer.done():
            conn.writer.cancel()

    async def _close_ws(self, conn: ObserverConnection, reason: bytes) -> None:
        try:
            await conn.ws.close(code=WSCloseCode.GOING_AWAY, message=reason)
        except (ConnectionResetError, RuntimeError) as e:
            logger.debug(f"Closing observer #{conn.id} failed: {e}")
