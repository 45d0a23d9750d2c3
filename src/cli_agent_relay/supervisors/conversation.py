"""Per-call conversation worker supervisor.

cli-agent-relay supervisors v0.1.0

Each send_message() spawns one short-lived worker in print mode with
streaming JSON output and rebuilds the assistant reply from its events.
The transcript is kept here and replayed into the prompt of later calls.

Signals:
- "message": ConversationMessage (user message first, assistant on success)
- "chunk": str, incremental or full reply text
- "event": StructuredEvent, every stream event verbatim
- "status": ConversationStatus
- "error": RelayError
- "historyCleared": no arguments
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from ..context import (
    FALLBACK_SYSTEM_PROMPT,
    TaskContextProvider,
    build_task_context,
    load_system_prompt,
)
from ..emitter import SignalEmitter
from ..errors import BusyError, ExitError, RelayError, SpawnError
from ..parsers import LineProtocolParser, StreamKind, classify_stream_event
from ..runtime import ProcessRunner, ProcessSpec, Spawner, WorkerProcess
from ..types import (
    ConversationMessage,
    ConversationStatus,
    ExitInfo,
    StructuredEvent,
)

__all__ = ["ConversationSupervisor", "HISTORY_WINDOW"]

logger = logging.getLogger(__name__)

# Prior messages replayed into the prompt
HISTORY_WINDOW = 9


@dataclass
class _Call:
    """State of one send_message() invocation."""

    future: asyncio.Future[str]
    parser: LineProtocolParser = field(default_factory=LineProtocolParser)
    process: WorkerProcess | None = None
    response: str = ""
    cancelled: bool = False


class ConversationSupervisor(SignalEmitter):
    """Runs one conversation worker per message.

    Example:
        chat = ConversationSupervisor(cwd=Path("/repo"), task_context=tracker)
        chat.on("chunk", print)
        reply = await chat.send_message("What should I work on next?")
    """

    def __init__(
        self,
        *,
        command: str = "claude",
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        model: str = "haiku",
        task_context: TaskContextProvider | None = None,
        system_prompt_loader: Callable[[Path], str] = load_system_prompt,
        spawner: Spawner | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            command: Conversation worker executable
            cwd: Working directory (default: current directory)
            env: Extra environment variables merged over os.environ
            model: Model selector passed to the worker
            task_context: Issue provider for the preamble (None = no context)
            system_prompt_loader: Loads the base instruction document
            spawner: Process factory, ProcessRunner().spawn by default
        """
        super().__init__()
        self._command = command
        self._cwd = Path(cwd) if cwd is not None else Path.cwd()
        self._env = dict(env or {})
        self._model = model
        self._task_context = task_context
        self._load_system_prompt = system_prompt_loader
        self._spawner = spawner or ProcessRunner().spawn

        self._status = ConversationStatus.IDLE
        self._messages: list[ConversationMessage] = []
        self._current: _Call | None = None

    @property
    def status(self) -> ConversationStatus:
        return self._status

    @property
    def is_processing(self) -> bool:
        return self._status == ConversationStatus.PROCESSING

    @property
    def cwd(self) -> Path:
        return self._cwd

    @property
    def messages(self) -> list[ConversationMessage]:
        """Copy of the transcript."""
        return list(self._messages)

    def clear_history(self) -> None:
        self._messages = []
        self.emit("historyCleared")

    async def send_message(self, text: str) -> str:
        """Send a user message and wait for the assistant reply.

        The user message is recorded and emitted before any await.

        Returns:
            Reply text ("" or partial text if cancelled)

        Raises:
            BusyError: A previous call is still in flight
            SpawnError: The worker could not be started
            ExitError: Worker failed without producing any text
        """
        if self._status == ConversationStatus.PROCESSING:
            raise BusyError()

        call = _Call(future=asyncio.get_running_loop().create_future())
        self._current = call
        self._set_status(ConversationStatus.PROCESSING)

        user_message = ConversationMessage(role="user", content=text)
        self._messages.append(user_message)
        self.emit("message", user_message)

        try:
            prompt = self.build_conversation_prompt(text)
            system_prompt = await self.build_system_prompt()

            if call.cancelled:
                logger.debug("Conversation call cancelled before spawn")
                self._finish(call)
                return call.response

            argv = self.build_command(system_prompt, prompt)
            logger.info(f"Starting conversation worker: {self._command} (model={self._model})")

            spec = ProcessSpec(
                argv=argv,
                cwd=self._cwd,
                env={**os.environ, **self._env},
                pipe_stdin=False,
            )
            call.process = await self._spawner(
                spec,
                on_stdout=lambda chunk: self._handle_stdout(call, chunk),
                on_stderr=self._handle_stderr,
                on_exit=lambda info: self._handle_exit(call, info),
            )
        except Exception as e:
            # OSError from the OS, ValueError for argv/env the OS cannot take
            self._finish(call)
            self._set_status(ConversationStatus.ERROR)
            error = SpawnError(self._command, str(e))
            logger.error(str(error))
            self.emit("error", error)
            raise error from e

        if call.cancelled:
            # cancel() ran while the spawn was in flight and had nothing to signal
            call.process.terminate()

        return await call.future

    def cancel(self) -> None:
        """Abandon the in-flight call; no-op when idle.

        Status flips to idle immediately. The pending send_message() settles
        with the text gathered so far once the worker has exited.
        """
        call = self._current
        if call is None or call.cancelled:
            return

        call.cancelled = True
        if call.process is not None:
            call.process.terminate()
        logger.info("Conversation call cancelled")
        self._set_status(ConversationStatus.IDLE)

    # =========================================================================
    # Prompt building
    # =========================================================================

    def build_command(self, system_prompt: str, prompt: str) -> list[str]:
        return [
            self._command,
            "--print",
            "--output-format",
            "stream-json",
            "--model",
            self._model,
            "--system-prompt",
            system_prompt,
            # Tools disabled: the conversation only informs and advises
            "--tools",
            "",
            prompt,
        ]

    def build_conversation_prompt(self, current_message: str) -> str:
        """Build the prompt for the newest user message.

        The first message is sent verbatim. Later ones replay the previous
        HISTORY_WINDOW messages before the new one.
        """
        if len(self._messages) <= 1:
            return current_message

        recent = self._messages[-(HISTORY_WINDOW + 1):-1]
        parts = ["Previous conversation:\n\n"]
        for message in recent:
            role = "User" if message.role == "user" else "Assistant"
            parts.append(f"{role}: {message.content}\n\n")
        parts.append(f"User: {current_message}\n\nAssistant:")
        return "".join(parts)

    async def build_system_prompt(self) -> str:
        """Base instruction document plus the current task summary."""
        try:
            base_prompt = self._load_system_prompt(self._cwd)
        except (OSError, ValueError) as e:
            # ValueError covers a prompt file that is not valid UTF-8
            logger.warning(f"Using built-in system prompt: {e}")
            base_prompt = FALLBACK_SYSTEM_PROMPT

        task_context = ""
        if self._task_context is not None:
            try:
                task_context = await build_task_context(self._task_context)
            except Exception as e:
                logger.warning(f"Failed to get task context, continuing without: {e}")

        return base_prompt + task_context

    # =========================================================================
    # Process callbacks
    # =========================================================================

    def _finish(self, call: _Call) -> None:
        if self._current is call:
            self._current = None

    def _set_status(self, status: ConversationStatus) -> None:
        if self._status != status:
            self._status = status
            self.emit("status", status)

    def _handle_stdout(self, call: _Call, chunk: bytes) -> None:
        for item in call.parser.feed(chunk):
            if not isinstance(item, StructuredEvent):
                logger.debug(f"Ignoring non-JSON conversation output: {item[:100]}")
                continue
            self._apply_event(call, item)

    def _apply_event(self, call: _Call, event: StructuredEvent) -> None:
        update = classify_stream_event(event)

        if update.kind == StreamKind.DELTA:
            for text in update.texts:
                call.response += text
                self.emit("chunk", text)
        elif update.kind == StreamKind.ASSISTANT:
            for text in update.texts:
                call.response = text
                self.emit("chunk", text)
        elif update.kind == StreamKind.RESULT:
            # Authoritative; replaces whatever the deltas built up
            call.response = update.texts[0]
        elif update.kind == StreamKind.ERROR:
            self.emit("error", RelayError(update.texts[0]))

        self.emit("event", event)

    def _handle_stderr(self, chunk: bytes) -> None:
        message = chunk.decode("utf-8", errors="replace").strip()
        if message:
            # Often just warnings; never fails the call
            logger.warning(f"Conversation worker stderr: {message[:500]}")

    def _handle_exit(self, call: _Call, info: ExitInfo) -> None:
        self._finish(call)
        call.parser.reset()
        if call.future.done():
            return

        if call.cancelled:
            call.future.set_result(call.response)
            return

        if info.code is not None and info.code != 0 and not call.response:
            error = ExitError(info.code, info.signal)
            logger.error(str(error))
            self._set_status(ConversationStatus.ERROR)
            self.emit("error", error)
            call.future.set_exception(error)
            return

        if call.response:
            assistant_message = ConversationMessage(role="assistant", content=call.response)
            self._messages.append(assistant_message)
            self.emit("message", assistant_message)

        self._set_status(ConversationStatus.IDLE)
        call.future.set_result(call.response)
