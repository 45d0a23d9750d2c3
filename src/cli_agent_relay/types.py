"""Relay data model.

cli-agent-relay types v0.1.0

Defines statuses, the structured worker event, conversation messages and
process exit information shared by supervisors and the broadcast hub.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict

__all__ = [
    "WorkerStatus",
    "ConversationStatus",
    "PauseMode",
    "ObserverMessageType",
    "StructuredEvent",
    "RawOutputLine",
    "ParsedLine",
    "ConversationMessage",
    "ExitInfo",
    "now_ms",
]


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


class WorkerStatus(str, Enum):
    """Lifecycle status of a long-lived worker process.

    Only the owning supervisor mutates it, through its own operations or
    the process-exit callback.
    """

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPING_AFTER_CURRENT = "stopping_after_current"


class ConversationStatus(str, Enum):
    """Status of a conversation supervisor."""

    IDLE = "idle"
    PROCESSING = "processing"
    ERROR = "error"


class PauseMode(str, Enum):
    """How pause/resume reaches the worker.

    - SIGNAL: SIGSTOP/SIGCONT to the worker's process group (POSIX only)
    - MESSAGE: cooperative {"type": "pause"} / {"type": "resume"} on stdin
    """

    SIGNAL = "signal"
    MESSAGE = "message"

    @classmethod
    def from_string(cls, value: str, default: "PauseMode") -> "PauseMode":
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return default


class ObserverMessageType(str, Enum):
    """The "type" tag of messages exchanged with observers."""

    CONNECTED = "connected"
    PING = "ping"
    PONG = "pong"
    STATUS = "status"
    EVENT = "event"
    OUTPUT = "output"
    ERROR = "error"
    EXIT = "exit"
    USER_MESSAGE = "user_message"
    CHAT_MESSAGE = "chat_message"


class StructuredEvent(BaseModel):
    """A successfully parsed line of worker stdout.

    ``type`` and ``timestamp`` are named but not validated: any JSON object
    the worker prints is an event, and every field is forwarded as received.
    """

    model_config = ConfigDict(extra="allow")

    type: Any = ""
    timestamp: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the event exactly as the worker sent it."""
        return self.model_dump(exclude_unset=True)

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a field, declared or opaque."""
        return self.to_dict().get(key, default)


# A stdout line that did not parse as a structured event
RawOutputLine = str

ParsedLine = Union[StructuredEvent, RawOutputLine]


@dataclass
class ConversationMessage:
    """One entry of the conversation transcript.

    Attributes:
        role: "user" or "assistant"
        content: Message text
        timestamp: Creation time in milliseconds
    """

    role: Literal["user", "assistant"]
    content: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class ExitInfo:
    """How a worker process terminated.

    Attributes:
        code: Exit code, None when terminated by a signal
        signal: Signal name (e.g. "SIGTERM"), None on a normal exit
    """

    code: int | None
    signal: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "signal": self.signal}
