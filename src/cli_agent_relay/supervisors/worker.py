"""Long-lived worker process supervisor.

cli-agent-relay supervisors v0.1.0

Owns exactly one external worker process at a time:

    stopped --start()--> starting --spawn ok--> running
    starting --spawn error--> stopped
    running <--pause()/resume()--> paused
    {running,paused} --stop_after_current()--> stopping_after_current
    stopping_after_current --cancel_stop_after_current()--> running
    {running,paused,stopping_after_current} --stop()--> stopping --exit--> stopped
    any --unsolicited exit--> stopped

Signals:
- "status": WorkerStatus, on every transition
- "event": StructuredEvent, buffered while paused and flushed on resume
- "output": raw stdout line, dropped while paused
- "error": RelayError (spawn failure, stderr text)
- "exit": ExitInfo
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

from ..emitter import SignalEmitter
from ..errors import (
    AlreadyRunningError,
    InvalidStateError,
    NotRunningError,
    RelayError,
    SpawnError,
)
from ..parsers import LineProtocolParser
from ..runtime import IS_WINDOWS, EventBuffer, ProcessRunner, ProcessSpec, Spawner, WorkerProcess
from ..types import ExitInfo, PauseMode, StructuredEvent, WorkerStatus

__all__ = [
    "WorkerSupervisor",
    "DEFAULT_WORKER_COMMAND",
    "DEFAULT_WORKER_ARGS",
    "DEFAULT_STOP_TIMEOUT",
]

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = "npx"
DEFAULT_WORKER_ARGS: tuple[str, ...] = ("@herbcaudill/ralph", "--json")
DEFAULT_STOP_TIMEOUT = 5.0  # seconds before SIGKILL


def default_pause_mode() -> PauseMode:
    return PauseMode.MESSAGE if IS_WINDOWS else PauseMode.SIGNAL


class WorkerSupervisor(SignalEmitter):
    """Supervises one long-running worker and relays its output protocol.

    Example:
        supervisor = WorkerSupervisor(cwd=Path("/repo"), watch=True)
        supervisor.on("event", hub_forward)
        await supervisor.start(iterations=3)
        supervisor.pause()
        supervisor.resume()
        await supervisor.stop()
    """

    def __init__(
        self,
        *,
        command: str = DEFAULT_WORKER_COMMAND,
        args: list[str] | tuple[str, ...] | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        watch: bool = False,
        pause_mode: PauseMode | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        """Initialize the supervisor.

        Args:
            command: Worker executable
            args: Fixed base arguments
            cwd: Working directory (default: current directory)
            env: Extra environment variables merged over os.environ
            watch: Append --watch to every invocation
            pause_mode: Pause strategy (default: SIGNAL on POSIX)
            spawner: Process factory, ProcessRunner().spawn by default
        """
        super().__init__()
        self._command = command
        self._args = list(args if args is not None else DEFAULT_WORKER_ARGS)
        self._cwd = Path(cwd) if cwd is not None else Path.cwd()
        self._env = dict(env or {})
        self._watch = watch
        self._pause_mode = pause_mode or default_pause_mode()
        self._spawner = spawner or ProcessRunner().spawn

        self._status = WorkerStatus.STOPPED
        self._process: WorkerProcess | None = None
        self._suspended = False
        self._parser = LineProtocolParser()
        self._buffer = EventBuffer()

    @property
    def status(self) -> WorkerStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == WorkerStatus.RUNNING

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def cwd(self) -> Path:
        return self._cwd

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    def build_command(self, iterations: int | None = None) -> list[str]:
        """Build the worker command line.

        Args:
            iterations: Optional trailing integer argument

        Returns:
            argv list
        """
        argv = [self._command, *self._args]
        if self._watch:
            argv.append("--watch")
        if iterations is not None:
            argv.append(str(int(iterations)))
        return argv

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, iterations: int | None = None) -> None:
        """Spawn the worker; returns once the OS acknowledged the spawn.

        Raises:
            AlreadyRunningError: A process is already owned or being spawned
            SpawnError: The worker could not be started
        """
        if self._process is not None or self._status == WorkerStatus.STARTING:
            raise AlreadyRunningError()

        self._set_status(WorkerStatus.STARTING)
        self._parser.reset()
        self._buffer.clear()
        self._suspended = False

        argv = self.build_command(iterations)
        logger.info(f"Starting worker: {' '.join(argv)}")

        spec = ProcessSpec(
            argv=argv,
            cwd=self._cwd,
            env={**os.environ, **self._env},
            pipe_stdin=True,
        )
        try:
            process = await self._spawner(
                spec,
                on_stdout=self._handle_stdout,
                on_stderr=self._handle_stderr,
                on_exit=self._handle_exit,
            )
        except Exception as e:
            # OSError from the OS, ValueError for argv/env the OS cannot take
            self._set_status(WorkerStatus.STOPPED)
            error = SpawnError(self._command, str(e))
            logger.error(str(error))
            self.emit("error", error)
            raise error from e

        self._process = process
        logger.debug(f"Worker spawned pid={process.pid}")
        self._set_status(WorkerStatus.RUNNING)

    async def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> None:
        """Terminate the worker, killing it if still alive after ``timeout``.

        Returns once the process has actually exited. No-op when nothing
        is owned.
        """
        process = self._process
        if process is None:
            return

        self._set_status(WorkerStatus.STOPPING)
        await process.stop(timeout)

    def pause(self) -> None:
        """Suspend the worker without terminating it.

        Raises:
            NotRunningError: Nothing owned
            InvalidStateError: Status is not running
        """
        process = self._require_process()
        if self._status == WorkerStatus.PAUSED:
            return
        if self._status != WorkerStatus.RUNNING:
            raise InvalidStateError("pause", self._status.value)

        if self._pause_mode == PauseMode.SIGNAL:
            process.suspend()
            self._suspended = True
        else:
            self.send({"type": "pause"})
        self._set_status(WorkerStatus.PAUSED)

    def resume(self) -> None:
        """Resume a paused worker and flush events buffered meanwhile.

        Raises:
            NotRunningError: Nothing owned
            InvalidStateError: Status is not paused
        """
        self._require_process()
        if self._status != WorkerStatus.PAUSED:
            raise InvalidStateError("resume", self._status.value)

        if self._pause_mode == PauseMode.MESSAGE:
            self.send({"type": "resume"})
        self._leave_pause(WorkerStatus.RUNNING)

    def stop_after_current(self) -> None:
        """Ask the worker to finish its current unit of work and stop.

        Raises:
            NotRunningError: Nothing owned
            InvalidStateError: Status is neither running nor paused
        """
        self._require_process()
        if self._status not in (WorkerStatus.RUNNING, WorkerStatus.PAUSED):
            raise InvalidStateError("stop-after-current", self._status.value)

        was_paused = self._status == WorkerStatus.PAUSED
        self.send({"type": "stop_after_current"})
        if was_paused:
            # The worker can only finish its unit once it runs again
            self._leave_pause(WorkerStatus.STOPPING_AFTER_CURRENT)
        else:
            self._set_status(WorkerStatus.STOPPING_AFTER_CURRENT)

    def cancel_stop_after_current(self) -> None:
        """Withdraw a pending stop-after-current request.

        Raises:
            NotRunningError: Nothing owned
            InvalidStateError: Status is not stopping_after_current
        """
        self._require_process()
        if self._status != WorkerStatus.STOPPING_AFTER_CURRENT:
            raise InvalidStateError("cancel stop-after-current", self._status.value)

        self.send({"type": "cancel_stop_after_current"})
        self._set_status(WorkerStatus.RUNNING)

    def send(self, message: str | dict[str, Any]) -> None:
        """Write a newline-terminated message to the worker stdin.

        Non-string messages are JSON-encoded.

        Raises:
            NotRunningError: Nothing owned or stdin not writable
        """
        process = self._process
        if process is None or not process.stdin_writable:
            raise NotRunningError("Worker is not running or stdin is not writable")

        payload = message if isinstance(message, str) else json.dumps(message, ensure_ascii=False)
        process.write((payload + "\n").encode("utf-8"))
        logger.debug(f"Sent to worker: {payload[:200]}")

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_process(self) -> WorkerProcess:
        if self._process is None:
            raise NotRunningError()
        return self._process

    def _leave_pause(self, status: WorkerStatus) -> None:
        if self._suspended and self._process is not None:
            self._process.resume()
        self._suspended = False
        self._set_status(status)

        flushed = 0
        for event in self._buffer.drain():
            self.emit("event", event)
            flushed += 1
        if flushed:
            logger.debug(f"Flushed {flushed} buffered event(s)")

    def _set_status(self, status: WorkerStatus) -> None:
        if self._status != status:
            logger.debug(f"Worker status {self._status.value} -> {status.value}")
            self._status = status
            self.emit("status", status)

    def _handle_stdout(self, chunk: bytes) -> None:
        for item in self._parser.feed(chunk):
            paused = self._status == WorkerStatus.PAUSED
            if isinstance(item, StructuredEvent):
                if paused:
                    self._buffer.push(item)
                else:
                    self.emit("event", item)
            elif paused:
                logger.debug(f"Dropping output while paused: {item[:100]}")
            else:
                self.emit("output", item)

    def _handle_stderr(self, chunk: bytes) -> None:
        message = chunk.decode("utf-8", errors="replace").strip()
        if message:
            logger.warning(f"Worker stderr: {message[:500]}")
            self.emit("error", RelayError(f"stderr: {message}"))

    def _handle_exit(self, info: ExitInfo) -> None:
        self._process = None
        self._suspended = False
        self._parser.reset()
        dropped = self._buffer.clear()
        if dropped:
            logger.info(f"Worker exited while paused, discarded {dropped} buffered event(s)")

        logger.info(f"Worker exited code={info.code} signal={info.signal}")
        self._set_status(WorkerStatus.STOPPED)
        self.emit("exit", info)
