"""Relay exception classes.

cli-agent-relay errors v0.1.0

Guard-condition errors are raised synchronously at the call site.
Asynchronous failures (SpawnError, ExitError) reject the pending awaitable
and are additionally emitted on the owner's "error" signal.
"""

from __future__ import annotations

__all__ = [
    "RelayError",
    "SpawnError",
    "AlreadyRunningError",
    "BusyError",
    "NotRunningError",
    "InvalidStateError",
    "ExitError",
    "TaskContextError",
]


class RelayError(Exception):
    """Base exception for the relay."""
    pass


class SpawnError(RelayError):
    """The OS refused to start a worker process.

    Attributes:
        command: Executable that failed to start
    """

    def __init__(self, command: str, message: str) -> None:
        self.command = command
        super().__init__(f"Failed to spawn {command}: {message}")


class AlreadyRunningError(RelayError):
    """A worker process is already owned by the supervisor."""

    def __init__(self, message: str = "Worker is already running") -> None:
        super().__init__(message)


class BusyError(RelayError):
    """A conversation call is still in flight."""

    def __init__(self, message: str = "A request is already in progress") -> None:
        super().__init__(message)


class NotRunningError(RelayError):
    """No worker process is owned, or its stdin is not writable."""

    def __init__(self, message: str = "Worker is not running") -> None:
        super().__init__(message)


class InvalidStateError(RelayError):
    """Operation is not allowed from the current status.

    Attributes:
        operation: Name of the rejected operation
        status: Status value at the time of the call
    """

    def __init__(self, operation: str, status: str) -> None:
        self.operation = operation
        self.status = status
        super().__init__(f"Cannot {operation} worker in {status} state")


class ExitError(RelayError):
    """Worker exited unsuccessfully without producing output.

    Attributes:
        code: Process exit code (None when killed by a signal)
        signal: Signal name, if any
    """

    def __init__(self, code: int | None, signal: str | None = None) -> None:
        self.code = code
        self.signal = signal
        super().__init__(f"Worker exited with code {code}, signal {signal}")


class TaskContextError(RelayError):
    """Task-context collaborator call failed."""
    pass
