"""Relay environment configuration.

Environment variables:
    CAR_HOST: bind host (default 127.0.0.1)
    CAR_PORT: bind port (default 3000, 0 = ephemeral)

    CAR_CWD: workspace directory the workers run in (default: current dir)

    CAR_WORKER_COMMAND: long-lived worker executable (default npx)
    CAR_WORKER_ARGS: base arguments, shell-split (default "@herbcaudill/ralph --json")
    CAR_WATCH: append --watch to the worker invocation
        - true/1/yes/on = on
        - false/0/no = off (default)
    CAR_PAUSE_MODE: how pause/resume reaches the worker
        - signal = SIGSTOP/SIGCONT to the process group (default on POSIX)
        - message = {"type": "pause"} / {"type": "resume"} on stdin (default on Windows)
    CAR_STOP_TIMEOUT: seconds before a graceful stop escalates to kill
        - default 5.0, clamped to 0.1-120

    CAR_CHAT_COMMAND: conversation worker executable (default claude)
    CAR_CHAT_MODEL: conversation model selector (default haiku)
    CAR_TRACKER_COMMAND: issue tracker CLI for task context (default bd, empty = off)

    CAR_HEARTBEAT_INTERVAL: observer liveness probe interval in seconds
        - default 30, clamped to 1-600
    CAR_MAX_CLIENT_QUEUE: per-observer outbound queue size (default 500)

    CAR_AUTOSTART: start the worker together with the server (default false)

    CAR_LOG_DEBUG: debug logging
        - true/1/yes/on = DEBUG logs into a temp file
        - false/0/no = INFO logs to stderr (default)
"""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .supervisors.worker import (
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_WORKER_ARGS,
    DEFAULT_WORKER_COMMAND,
    default_pause_mode,
)
from .types import PauseMode

__all__ = ["Config", "load_config"]


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    """Parse a float, falling back to the default and clamping to range."""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number


def _parse_int(value: str | None, default: int, minimum: int | None = None) -> int:
    """Parse an integer, falling back to the default."""
    if not value:
        return default
    try:
        number = int(value)
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _parse_args(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    return tuple(shlex.split(value))


def _parse_pause_mode(value: str | None) -> PauseMode:
    if not value:
        return default_pause_mode()
    return PauseMode.from_string(value, default_pause_mode())


@dataclass
class Config:
    """Relay configuration.

    Attributes:
        host: Bind host
        port: Bind port (0 = ephemeral)
        cwd: Workspace directory
        worker_command: Long-lived worker executable
        worker_args: Base worker arguments
        watch: Append --watch to the worker invocation
        pause_mode: Pause strategy
        stop_timeout: Graceful stop timeout (seconds)
        chat_command: Conversation worker executable
        chat_model: Conversation model selector
        tracker_command: Issue tracker CLI, None disables task context
        heartbeat_interval: Observer liveness interval (seconds)
        max_client_queue: Per-observer outbound queue size
        autostart: Start the worker together with the server
        log_debug: Debug logging into a temp file
        log_file: Log file path (set when log_debug=True)
    """

    host: str = "127.0.0.1"
    port: int = 3000
    cwd: Path = field(default_factory=Path.cwd)
    worker_command: str = DEFAULT_WORKER_COMMAND
    worker_args: tuple[str, ...] = DEFAULT_WORKER_ARGS
    watch: bool = False
    pause_mode: PauseMode = field(default_factory=default_pause_mode)
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    chat_command: str = "claude"
    chat_model: str = "haiku"
    tracker_command: str | None = "bd"
    heartbeat_interval: float = 30.0
    max_client_queue: int = 500
    autostart: bool = False
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(host={self.host}, "
            f"port={self.port}, "
            f"cwd={self.cwd}, "
            f"worker={self.worker_command} {' '.join(self.worker_args)}, "
            f"watch={self.watch}, "
            f"pause_mode={self.pause_mode.value}, "
            f"stop_timeout={self.stop_timeout}, "
            f"chat={self.chat_command}/{self.chat_model}, "
            f"tracker={self.tracker_command or 'off'}, "
            f"heartbeat_interval={self.heartbeat_interval}, "
            f"autostart={self.autostart}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the temp dir."""
    log_dir = Path(tempfile.gettempdir()) / "cli-agent-relay"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"relay_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from environment variables."""
    env = os.environ
    log_debug = _parse_bool(env.get("CAR_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    cwd_value = env.get("CAR_CWD")
    cwd = Path(cwd_value).expanduser().resolve() if cwd_value else Path.cwd()

    tracker_command = env.get("CAR_TRACKER_COMMAND", "bd").strip() or None

    return Config(
        host=env.get("CAR_HOST") or "127.0.0.1",
        port=_parse_int(env.get("CAR_PORT"), 3000, minimum=0),
        cwd=cwd,
        worker_command=env.get("CAR_WORKER_COMMAND") or DEFAULT_WORKER_COMMAND,
        worker_args=_parse_args(env.get("CAR_WORKER_ARGS"), DEFAULT_WORKER_ARGS),
        watch=_parse_bool(env.get("CAR_WATCH"), default=False),
        pause_mode=_parse_pause_mode(env.get("CAR_PAUSE_MODE")),
        stop_timeout=_parse_float(
            env.get("CAR_STOP_TIMEOUT"), DEFAULT_STOP_TIMEOUT, minimum=0.1, maximum=120.0
        ),
        chat_command=env.get("CAR_CHAT_COMMAND") or "claude",
        chat_model=env.get("CAR_CHAT_MODEL") or "haiku",
        tracker_command=tracker_command,
        heartbeat_interval=_parse_float(
            env.get("CAR_HEARTBEAT_INTERVAL"), 30.0, minimum=1.0, maximum=600.0
        ),
        max_client_queue=_parse_int(env.get("CAR_MAX_CLIENT_QUEUE"), 500, minimum=1),
        autostart=_parse_bool(env.get("CAR_AUTOSTART"), default=False),
        log_debug=log_debug,
        log_file=log_file,
    )
