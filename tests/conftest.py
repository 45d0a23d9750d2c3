"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cli_agent_relay.runtime import ProcessSpec  # noqa: E402
from cli_agent_relay.types import ExitInfo  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_WORKER = FIXTURES_DIR / "fake_worker.py"


class FakeProcess:
    """In-memory stand-in for runtime.WorkerProcess.

    Tests drive it directly: ``emit_stdout`` plays worker output through the
    supervisor callbacks and ``finish`` plays the exit.
    """

    def __init__(
        self,
        spec: ProcessSpec,
        *,
        on_stdout: Callable[[bytes], None],
        on_stderr: Callable[[bytes], None] | None = None,
        on_exit: Callable[[ExitInfo], None] | None = None,
        pid: int = 4242,
    ) -> None:
        self.spec = spec
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.on_exit = on_exit
        self.pid = pid
        self.returncode: int | None = None
        self.written: list[bytes] = []
        self.actions: list[str] = []
        self.exit_on_terminate: ExitInfo | None = ExitInfo(code=None, signal="SIGTERM")
        self.stdin_writable = spec.pipe_stdin

    @property
    def messages(self) -> list[Any]:
        """Decoded lines written to stdin."""
        lines = b"".join(self.written).decode("utf-8").splitlines()
        return [json.loads(line) for line in lines]

    def write(self, data: bytes) -> None:
        if not self.stdin_writable:
            raise BrokenPipeError("stdin is not writable")
        self.written.append(data)

    def emit_stdout(self, data: str | bytes) -> None:
        self.on_stdout(data.encode("utf-8") if isinstance(data, str) else data)

    def emit_stderr(self, data: str) -> None:
        assert self.on_stderr is not None
        self.on_stderr(data.encode("utf-8"))

    def finish(self, code: int | None = 0, signal: str | None = None) -> None:
        if self.returncode is not None:
            return
        self.returncode = code if code is not None else -1
        self.stdin_writable = False
        if self.on_exit:
            self.on_exit(ExitInfo(code=code, signal=signal))

    def terminate(self) -> None:
        self.actions.append("terminate")
        if self.exit_on_terminate is not None:
            self.finish(self.exit_on_terminate.code, self.exit_on_terminate.signal)

    def kill(self) -> None:
        self.actions.append("kill")
        self.finish(None, "SIGKILL")

    def suspend(self) -> None:
        self.actions.append("suspend")

    def resume(self) -> None:
        self.actions.append("resume")

    async def stop(self, timeout: float) -> None:
        self.actions.append("stop")
        self.terminate()
        if self.returncode is None:
            self.kill()


class FakeSpawner:
    """Records every spawn and hands back FakeProcess handles."""

    def __init__(self) -> None:
        self.processes: list[FakeProcess] = []
        self.error: Exception | None = None

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]

    async def __call__(self, spec: ProcessSpec, **callbacks: Any) -> FakeProcess:
        if self.error is not None:
            raise self.error
        process = FakeProcess(spec, pid=4242 + len(self.processes), **callbacks)
        self.processes.append(process)
        return process


@pytest.fixture
def project_root() -> Path:
    """Project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def chat_spawner() -> FakeSpawner:
    """Separate spawner for conversation calls."""
    return FakeSpawner()


@pytest.fixture
def fake_worker_args() -> Callable[..., list[str]]:
    """Arguments that run fixtures/fake_worker.py under the current interpreter."""

    def build(*extra: str) -> list[str]:
        return [str(FAKE_WORKER), *extra]

    return build


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace
