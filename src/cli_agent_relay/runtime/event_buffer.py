"""Pause buffer for structured worker events."""

from __future__ import annotations

from collections import deque
from typing import Iterator

from ..types import StructuredEvent

__all__ = ["EventBuffer"]


class EventBuffer:
    """FIFO of events that arrived while the worker was paused.

    Owned by exactly one WorkerSupervisor. Contents are flushed in arrival
    order on resume and dropped, not replayed, when the process exits.
    """

    def __init__(self) -> None:
        self._events: deque[StructuredEvent] = deque()

    def push(self, event: StructuredEvent) -> None:
        self._events.append(event)

    def drain(self) -> Iterator[StructuredEvent]:
        """Yield and remove events oldest first.

        Events pushed while draining are yielded too, after the earlier ones.
        """
        while self._events:
            yield self._events.popleft()

    def clear(self) -> int:
        """Drop all events; returns how many were discarded."""
        dropped = len(self._events)
        self._events.clear()
        return dropped

    def __len__(self) -> int:
        return len(self._events)

    def __bool__(self) -> bool:
        return bool(self._events)
