"""CLI Agent Relay application entry.

Holds the service container, the supervisor-to-hub wiring and the server
lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from aiohttp import web

from .config import Config, load_config
from .context import IssueTrackerCLI, TaskContextProvider
from .errors import BusyError, RelayError
from .hub import BroadcastHub, ObserverConnection
from .runtime import Spawner
from .server import create_app
from .supervisors import ConversationSupervisor, WorkerSupervisor
from .types import (
    ConversationMessage,
    ConversationStatus,
    ExitInfo,
    ObserverMessageType,
    StructuredEvent,
    WorkerStatus,
    now_ms,
)

__all__ = ["RelayContext", "setup_logging", "run_server", "main"]

logger = logging.getLogger(__name__)


class RelayContext:
    """Service container for one relay server.

    Built once at process start and handed to the HTTP layer. Owns the hub,
    the worker supervisor, the conversation supervisor and the task-context
    provider, and forwards supervisor signals to observers.

    Example:
        ctx = RelayContext(load_config())
        app = create_app(ctx)
    """

    def __init__(
        self,
        config: Config,
        *,
        worker_spawner: Spawner | None = None,
        chat_spawner: Spawner | None = None,
    ) -> None:
        self.config = config
        self._worker_spawner = worker_spawner
        self._chat_spawner = chat_spawner
        self._chat_tasks: set[asyncio.Task[str]] = set()

        self.hub = BroadcastHub(
            heartbeat_interval=config.heartbeat_interval,
            max_queue=config.max_client_queue,
            status_provider=lambda: self.worker.status,
        )
        self.hub.on_message(ObserverMessageType.CHAT_MESSAGE.value, self._handle_chat_message)

        self.cwd = config.cwd
        self.tracker = self._create_tracker(self.cwd)
        self.worker = self._create_worker(self.cwd, watch=config.watch)
        self.conversation = self._create_conversation(self.cwd)

    # =========================================================================
    # Construction
    # =========================================================================

    def _create_tracker(self, cwd: Path) -> TaskContextProvider | None:
        if not self.config.tracker_command:
            return None
        return IssueTrackerCLI(command=self.config.tracker_command, cwd=cwd)

    def _create_worker(self, cwd: Path, *, watch: bool) -> WorkerSupervisor:
        worker = WorkerSupervisor(
            command=self.config.worker_command,
            args=self.config.worker_args,
            cwd=cwd,
            watch=watch,
            pause_mode=self.config.pause_mode,
            spawner=self._worker_spawner,
        )
        self._wire_worker(worker)
        return worker

    def _create_conversation(self, cwd: Path) -> ConversationSupervisor:
        conversation = ConversationSupervisor(
            command=self.config.chat_command,
            cwd=cwd,
            model=self.config.chat_model,
            task_context=self.tracker,
            spawner=self._chat_spawner,
        )
        self._wire_conversation(conversation)
        return conversation

    def _wire_worker(self, worker: WorkerSupervisor) -> None:
        hub = self.hub

        def on_status(status: WorkerStatus) -> None:
            hub.publish("status", status=status.value)

        def on_event(event: StructuredEvent) -> None:
            hub.publish("event", event=event.to_dict())

        def on_output(line: str) -> None:
            hub.publish("output", line=line)

        def on_error(error: Exception) -> None:
            hub.publish("error", error=str(error))

        def on_exit(info: ExitInfo) -> None:
            hub.publish("exit", code=info.code, signal=info.signal)

        worker.on("status", on_status)
        worker.on("event", on_event)
        worker.on("output", on_output)
        worker.on("error", on_error)
        worker.on("exit", on_exit)

    def _wire_conversation(self, conversation: ConversationSupervisor) -> None:
        hub = self.hub

        def on_message(message: ConversationMessage) -> None:
            hub.publish("chat:message", message=message.to_dict())

        def on_chunk(text: str) -> None:
            hub.publish("chat:chunk", text=text)

        def on_status(status: ConversationStatus) -> None:
            hub.publish("chat:status", status=status.value)

        def on_error(error: Exception) -> None:
            hub.publish("chat:error", error=str(error))

        conversation.on("message", on_message)
        conversation.on("chunk", on_chunk)
        conversation.on("status", on_status)
        conversation.on("error", on_error)

    def reset(self) -> None:
        """Detach every supervisor listener."""
        self.worker.remove_all_listeners()
        self.conversation.remove_all_listeners()

    # =========================================================================
    # Operations
    # =========================================================================

    def submit_chat(self, text: str) -> asyncio.Task[str]:
        """Start a conversation call in the background.

        The reply streams to observers; failures are already emitted on the
        conversation's "error" signal and only logged here.

        Raises:
            BusyError: A call is already in flight
        """
        # A task created but not yet scheduled has not set PROCESSING
        if self.conversation.is_processing or any(not t.done() for t in self._chat_tasks):
            raise BusyError()

        task = asyncio.create_task(self.conversation.send_message(text))
        self._chat_tasks.add(task)
        task.add_done_callback(self._chat_done)
        return task

    def _chat_done(self, task: asyncio.Task[str]) -> None:
        self._chat_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Conversation call failed: {error}")

    async def switch_workspace(self, path: Path | str) -> None:
        """Point every collaborator at another workspace.

        Stops the current worker, rebuilds the supervisors and the tracker for
        the new directory and starts the worker in watch mode. A failed start
        is logged; the worker can be started manually later.

        Raises:
            ValueError: path is not an existing directory
        """
        workspace = Path(path).expanduser().resolve()
        if not workspace.is_dir():
            raise ValueError(f"Workspace path does not exist: {workspace}")

        logger.info(f"Switching workspace: {self.cwd} -> {workspace}")

        if self.worker.status != WorkerStatus.STOPPED:
            await self.worker.stop(self.config.stop_timeout)
        self.conversation.cancel()
        self.reset()

        self.cwd = workspace
        self.tracker = self._create_tracker(workspace)
        self.worker = self._create_worker(workspace, watch=True)
        self.conversation = self._create_conversation(workspace)

        try:
            await self.worker.start()
        except RelayError as e:
            logger.error(f"Failed to auto-start worker in watch mode: {e}")

    async def shutdown(self) -> None:
        """Stop the worker, abandon any conversation call, close the hub."""
        self.conversation.cancel()
        if self.worker.status != WorkerStatus.STOPPED:
            await self.worker.stop(self.config.stop_timeout)
        if self._chat_tasks:
            await asyncio.gather(*self._chat_tasks, return_exceptions=True)
        await self.hub.close()

    def _handle_chat_message(self, conn: ObserverConnection, data: dict[str, Any]) -> None:
        """Relay an observer's chat message to the worker."""
        text = data.get("message")
        if not isinstance(text, str) or not text:
            self._send_error(conn, "Message is required")
            return
        if not self.worker.is_running:
            self._send_error(conn, "Worker is not running")
            return

        self.worker.send({"type": "user_message", "content": text})
        self.hub.publish(ObserverMessageType.USER_MESSAGE.value, message=text)

    def _send_error(self, conn: ObserverConnection, error: str) -> None:
        self.hub.send(
            conn,
            {"type": ObserverMessageType.ERROR.value, "error": error, "timestamp": now_ms()},
        )


def setup_logging(config: Config) -> None:
    """Install log handlers for the relay namespace."""
    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # LOG_DEBUG mode: write to the temp file
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # Third-party loggers (aiohttp.access etc.) stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("cli_agent_relay").setLevel(log_level)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows: no loop signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_server(config: Config) -> None:
    """Serve the relay until SIGINT/SIGTERM."""
    logger.info(f"Starting CLI Agent Relay: {config}")

    ctx = RelayContext(config)
    app = create_app(ctx)
    runner = web.AppRunner(app)
    stop_event = asyncio.Event()

    try:
        await runner.setup()
        site = web.TCPSite(runner, config.host, config.port)
        await site.start()
        logger.info(f"Listening on http://{config.host}:{config.port}")
        if config.log_debug and config.log_file:
            logger.info(f"Debug log: {config.log_file}")

        if config.autostart:
            try:
                await ctx.worker.start()
            except RelayError as e:
                logger.error(f"Autostart failed: {e}")

        _install_signal_handlers(stop_event)
        await stop_event.wait()
        logger.info("Shutdown signal received")

    finally:
        # on_cleanup stops the worker and closes the hub
        await runner.cleanup()
        logger.info("run_server: cleanup completed")


def main() -> None:
    """Console entry point."""
    config = load_config()
    setup_logging(config)
    asyncio.run(run_server(config))


if __name__ == "__main__":
    main()
