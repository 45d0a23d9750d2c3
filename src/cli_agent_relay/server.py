"""Relay HTTP control API.

All endpoints answer JSON. Successful calls return ``{"ok": true, ...}``;
failures return ``{"ok": false, "error": "<message>"}`` with:

- 400: missing or malformed input
- 409: operation not allowed in the current state
- 500: anything else

The observer channel is mounted at ``/ws``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from aiohttp import web

from .errors import (
    AlreadyRunningError,
    BusyError,
    InvalidStateError,
    NotRunningError,
)
from .types import WorkerStatus

if TYPE_CHECKING:
    from .app import RelayContext

__all__ = ["RelayServer", "create_app"]

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# Errors meaning "not now" rather than "broken"
CONFLICT_ERRORS = (AlreadyRunningError, BusyError, NotRunningError, InvalidStateError)

# Statuses in which the worker owns a process that stop() can end
STOPPABLE_STATUSES = frozenset({
    WorkerStatus.RUNNING,
    WorkerStatus.PAUSED,
    WorkerStatus.STOPPING_AFTER_CURRENT,
})


def _ok(http_status: int = 200, **payload: Any) -> web.Response:
    return web.json_response({"ok": True, **payload}, status=http_status)


def _fail(error: str, status: int) -> web.Response:
    return web.json_response({"ok": False, "error": error}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Map relay errors onto JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except CONFLICT_ERRORS as e:
        return _fail(str(e), 409)
    except ValueError as e:
        return _fail(str(e), 400)
    except Exception as e:
        logger.exception(f"{request.method} {request.path} failed")
        return _fail(str(e) or type(e).__name__, 500)


async def _read_json(request: web.Request) -> dict[str, Any]:
    """Request body as a JSON object ({} when empty)."""
    if not request.can_read_body:
        return {}
    body = await request.json()
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


class RelayServer:
    """Route handlers bound to one RelayContext."""

    def __init__(self, ctx: RelayContext) -> None:
        self.ctx = ctx

    def setup_routes(self, app: web.Application) -> None:
        r = app.router
        r.add_get("/healthz", self._handle_health)
        r.add_get("/ws", self.ctx.hub.handle_ws)
        # Worker
        r.add_get("/api/status", self._handle_status)
        r.add_post("/api/start", self._handle_start)
        r.add_post("/api/stop", self._handle_stop)
        r.add_post("/api/pause", self._handle_pause)
        r.add_post("/api/resume", self._handle_resume)
        r.add_post("/api/stop-after-current", self._handle_stop_after_current)
        r.add_post("/api/cancel-stop-after-current", self._handle_cancel_stop_after_current)
        r.add_post("/api/message", self._handle_message)
        # Conversation
        r.add_post("/api/task-chat/message", self._handle_chat_message)
        r.add_get("/api/task-chat/messages", self._handle_chat_messages)
        r.add_post("/api/task-chat/clear", self._handle_chat_clear)
        r.add_post("/api/task-chat/cancel", self._handle_chat_cancel)
        r.add_get("/api/task-chat/status", self._handle_chat_status)
        # Workspace
        r.add_post("/api/workspace/switch", self._handle_workspace_switch)

    def _worker_state(self) -> dict[str, Any]:
        return {"status": self.ctx.worker.status.value}

    # =========================================================================
    # Worker
    # =========================================================================

    async def _handle_health(self, request: web.Request) -> web.Response:
        return _ok()

    async def _handle_status(self, request: web.Request) -> web.Response:
        return _ok(**self._worker_state())

    async def _handle_start(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        iterations = body.get("iterations")
        if iterations is not None and (
            isinstance(iterations, bool) or not isinstance(iterations, int)
        ):
            raise ValueError("iterations must be an integer")

        await self.ctx.worker.start(iterations)
        return _ok(**self._worker_state())

    async def _handle_stop(self, request: web.Request) -> web.Response:
        if self.ctx.worker.status not in STOPPABLE_STATUSES:
            raise NotRunningError()
        await self.ctx.worker.stop(self.ctx.config.stop_timeout)
        return _ok(**self._worker_state())

    async def _handle_pause(self, request: web.Request) -> web.Response:
        self.ctx.worker.pause()
        return _ok(**self._worker_state())

    async def _handle_resume(self, request: web.Request) -> web.Response:
        self.ctx.worker.resume()
        return _ok(**self._worker_state())

    async def _handle_stop_after_current(self, request: web.Request) -> web.Response:
        self.ctx.worker.stop_after_current()
        return _ok(**self._worker_state())

    async def _handle_cancel_stop_after_current(self, request: web.Request) -> web.Response:
        self.ctx.worker.cancel_stop_after_current()
        return _ok(**self._worker_state())

    async def _handle_message(self, request: web.Request) -> web.Response:
        if not self.ctx.worker.is_running:
            raise NotRunningError()

        body = await _read_json(request)
        message = body.get("message")
        if message is None:
            raise ValueError("Message is required")

        # Plain text is wrapped in the envelope the worker expects
        if isinstance(message, str):
            message = {"type": "user_message", "content": message}
        self.ctx.worker.send(message)
        return _ok()

    # =========================================================================
    # Conversation
    # =========================================================================

    async def _handle_chat_message(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValueError("Message is required")

        # Reply streams to observers over /ws
        self.ctx.submit_chat(message.strip())
        return _ok(202, status="processing")

    async def _handle_chat_messages(self, request: web.Request) -> web.Response:
        conversation = self.ctx.conversation
        return _ok(
            messages=[message.to_dict() for message in conversation.messages],
            status=conversation.status.value,
        )

    async def _handle_chat_clear(self, request: web.Request) -> web.Response:
        self.ctx.conversation.clear_history()
        return _ok()

    async def _handle_chat_cancel(self, request: web.Request) -> web.Response:
        self.ctx.conversation.cancel()
        return _ok(status=self.ctx.conversation.status.value)

    async def _handle_chat_status(self, request: web.Request) -> web.Response:
        conversation = self.ctx.conversation
        return _ok(
            status=conversation.status.value,
            messageCount=len(conversation.messages),
        )

    # =========================================================================
    # Workspace
    # =========================================================================

    async def _handle_workspace_switch(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        path = body.get("path")
        if not isinstance(path, str) or not path.strip():
            raise ValueError("Workspace path is required")

        await self.ctx.switch_workspace(path.strip())
        workspace = self.ctx.cwd
        return _ok(
            workspace={"path": str(workspace), "name": Path(workspace).name or str(workspace)},
            **self._worker_state(),
        )


def create_app(ctx: RelayContext) -> web.Application:
    """Build the aiohttp application for a relay context."""
    app = web.Application(middlewares=[error_middleware])
    RelayServer(ctx).setup_routes(app)

    async def on_startup(app: web.Application) -> None:
        await ctx.hub.start()

    async def on_cleanup(app: web.Application) -> None:
        logger.info("Shutting down relay")
        await ctx.shutdown()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app
