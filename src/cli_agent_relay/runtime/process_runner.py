"""Process runner with subprocess isolation and reliable termination.

cli-agent-relay runtime module v0.1.0

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Stdout/stderr pumping into callbacks, strictly in arrival order
- A single exit callback fired after stdout has been fully drained
- Graceful termination (SIGTERM -> timeout -> SIGKILL)
- Suspend/continue of the whole process group (POSIX)

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Signals target the process group, not just the main process
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio

from ..types import ExitInfo

__all__ = [
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
    "WorkerProcess",
    "Spawner",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Read size for stdout/stderr pumps
CHUNK_SIZE = 4096


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Environment variables (None = inherit parent)
        pipe_stdin: Keep stdin open as a pipe for control messages;
            otherwise stdin is DEVNULL
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None
    pipe_stdin: bool = True


def _exit_info(returncode: int | None) -> ExitInfo:
    """Translate an asyncio returncode into code/signal form."""
    if returncode is not None and returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return ExitInfo(code=None, signal=name)
    return ExitInfo(code=returncode, signal=None)


class WorkerProcess:
    """Handle to one running subprocess.

    Created by ProcessRunner.spawn(). Owns the stdout/stderr pumps and
    reports termination exactly once through ``on_exit``.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        on_stdout: Callable[[bytes], None],
        on_stderr: Callable[[bytes], None] | None = None,
        on_exit: Callable[[ExitInfo], None] | None = None,
    ) -> None:
        self._process = process
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr
        self._on_exit = on_exit
        self._monitor: asyncio.Task[None] = asyncio.create_task(
            self._run(), name=f"worker-process-{process.pid}"
        )

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdin_writable(self) -> bool:
        stdin = self._process.stdin
        return stdin is not None and not stdin.is_closing()

    def write(self, data: bytes) -> None:
        """Write bytes to the process stdin.

        Raises:
            BrokenPipeError: If stdin is closed or was never piped
        """
        if not self.stdin_writable:
            raise BrokenPipeError("stdin is not writable")
        assert self._process.stdin is not None
        self._process.stdin.write(data)

    async def wait_closed(self) -> None:
        """Wait until the process exited and on_exit has been called."""
        await asyncio.shield(self._monitor)

    # =========================================================================
    # Signals
    # =========================================================================

    def terminate(self) -> None:
        """Ask the process group to exit (SIGTERM / CTRL_BREAK_EVENT)."""
        if IS_WINDOWS:
            self._windows_terminate()
        else:
            self._signal_group(signal.SIGTERM)
            # A stopped group only acts on SIGTERM once continued
            self._signal_group(signal.SIGCONT)

    def kill(self) -> None:
        """Force the process group to exit (SIGKILL / TerminateProcess)."""
        if IS_WINDOWS:
            try:
                self._process.kill()
                logger.debug(f"Called kill() on pid={self.pid}")
            except ProcessLookupError:
                pass
        else:
            self._signal_group(signal.SIGKILL)

    def suspend(self) -> None:
        """Stop the process group without terminating it (SIGSTOP).

        Raises:
            OSError: On platforms without job-control signals
        """
        if IS_WINDOWS:
            raise OSError("Process suspension is not supported on Windows")
        self._signal_group(signal.SIGSTOP)

    def resume(self) -> None:
        """Continue a suspended process group (SIGCONT)."""
        if IS_WINDOWS:
            raise OSError("Process suspension is not supported on Windows")
        self._signal_group(signal.SIGCONT)

    async def stop(self, timeout: float) -> None:
        """Terminate gracefully, escalating to kill after ``timeout`` seconds.

        Returns once the exit callback has run.
        """
        pid = self.pid
        if self.returncode is None:
            logger.debug(f"Terminating subprocess pid={pid}")
            self.terminate()

        with anyio.move_on_after(timeout) as scope:
            await self.wait_closed()

        if scope.cancelled_caught:
            logger.warning(
                f"Subprocess pid={pid} did not exit within {timeout}s, force killing"
            )
            self.kill()
            await self.wait_closed()

        logger.debug(f"Subprocess stopped pid={pid} returncode={self.returncode}")

    def _signal_group(self, sig: signal.Signals) -> None:
        """Send a signal to the process group on POSIX systems."""
        try:
            # Process group ID equals pid because of start_new_session
            pgid = os.getpgid(self.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            # Fallback to signalling just the process
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass

    def _windows_terminate(self) -> None:
        try:
            # Works because the process was created with CREATE_NEW_PROCESS_GROUP
            os.kill(self.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={self.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    # =========================================================================
    # Pumps
    # =========================================================================

    async def _run(self) -> None:
        stderr_task = asyncio.create_task(self._drain_stderr())
        try:
            await self._pump_stdout()
            await stderr_task
            await self._process.wait()
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
                try:
                    await stderr_task
                except asyncio.CancelledError:
                    pass

        info = _exit_info(self._process.returncode)
        logger.debug(
            f"Subprocess completed pid={self.pid} code={info.code} signal={info.signal}"
        )
        if self._on_exit:
            self._on_exit(info)

    async def _pump_stdout(self) -> None:
        stdout = self._process.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            self._on_stdout(chunk)

    async def _drain_stderr(self) -> None:
        """Drain stderr to prevent buffer deadlock."""
        stderr = self._process.stderr
        if stderr is None:
            return
        while True:
            chunk = await stderr.read(CHUNK_SIZE)
            if not chunk:
                break
            if self._on_stderr:
                self._on_stderr(chunk)


@dataclass
class ProcessRunner:
    """Cross-platform process launcher with isolation.

    Example:
        runner = ProcessRunner()
        handle = await runner.spawn(
            ProcessSpec(argv=["my-worker", "--json"], cwd=Path("/workspace")),
            on_stdout=parser_feed,
            on_exit=on_exit,
        )
        handle.write(b'{"type": "pause"}\\n')
        await handle.stop(timeout=5.0)
    """

    async def spawn(
        self,
        spec: ProcessSpec,
        *,
        on_stdout: Callable[[bytes], None],
        on_stderr: Callable[[bytes], None] | None = None,
        on_exit: Callable[[ExitInfo], None] | None = None,
    ) -> WorkerProcess:
        """Start a subprocess; returns once the OS acknowledged the spawn.

        Raises:
            OSError: If the executable cannot be started
        """
        kwargs = self._build_subprocess_kwargs(spec)

        # DEVNULL instead of None: stdin=None would inherit the parent's stdin
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=asyncio.subprocess.PIPE if spec.pipe_stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=spec.cwd,
            **kwargs,
        )

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )

        return WorkerProcess(
            process,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            on_exit=on_exit,
        )

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs


# Signature of ProcessRunner.spawn, injectable for tests
Spawner = Callable[..., Any]
