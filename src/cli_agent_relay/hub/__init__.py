"""Observer broadcast hub."""

from __future__ import annotations

from .broadcast import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_MAX_QUEUE,
    BroadcastHub,
    MessageHandler,
    ObserverConnection,
)

__all__ = [
    "BroadcastHub",
    "MessageHandler",
    "ObserverConnection",
    "DEFAULT_HEARTBEAT_INTERVAL",
    "DEFAULT_MAX_QUEUE",
]
