"""Runtime module for subprocess management and event buffering.

This module provides isolated process execution with proper signal handling,
reliable termination, and the pause buffer used by the worker supervisor.
"""

from __future__ import annotations

from .event_buffer import EventBuffer
from .process_runner import IS_WINDOWS, ProcessRunner, ProcessSpec, Spawner, WorkerProcess

__all__ = [
    "EventBuffer",
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
    "Spawner",
    "WorkerProcess",
]
