"""Conversation worker stream-json classification.

cli-agent-relay parsers v0.1.0

The conversation worker (``claude --print --output-format stream-json``)
emits one JSON event per line. Four shapes matter for rebuilding the reply:

- content_block_delta: incremental text (``delta.type == "text_delta"``)
- assistant: full assistant message, ``message.content[]`` text blocks
- result: authoritative final text in ``result``
- error: error text in ``error`` or ``message``

Everything else is classified as OTHER and only forwarded verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..types import StructuredEvent

__all__ = ["StreamKind", "StreamUpdate", "classify_stream_event"]


class StreamKind(str, Enum):
    """Reply-relevant shape of a stream event."""

    DELTA = "delta"
    ASSISTANT = "assistant"
    RESULT = "result"
    ERROR = "error"
    OTHER = "other"


@dataclass(frozen=True)
class StreamUpdate:
    """What a stream event contributes to the reply.

    Attributes:
        kind: Event shape
        texts: Text pieces carried by the event, in order (one per
            assistant text block; single element otherwise)
    """

    kind: StreamKind
    texts: tuple[str, ...] = ()


_OTHER = StreamUpdate(StreamKind.OTHER)


def _assistant_texts(data: dict[str, Any]) -> tuple[str, ...]:
    message = data.get("message")
    if not isinstance(message, dict):
        return ()
    content = message.get("content")
    if not isinstance(content, list):
        return ()
    return tuple(
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
        and block["text"]
    )


def classify_stream_event(event: StructuredEvent) -> StreamUpdate:
    """Classify a conversation stream event.

    Args:
        event: Parsed stdout event

    Returns:
        StreamUpdate describing the reply-relevant content
    """
    data = event.to_dict()
    event_type = data.get("type")

    if event_type == "content_block_delta":
        delta = data.get("delta")
        if (
            isinstance(delta, dict)
            and delta.get("type") == "text_delta"
            and isinstance(delta.get("text"), str)
            and delta["text"]
        ):
            return StreamUpdate(StreamKind.DELTA, (delta["text"],))
        return _OTHER

    if event_type == "assistant":
        texts = _assistant_texts(data)
        return StreamUpdate(StreamKind.ASSISTANT, texts) if texts else _OTHER

    if event_type == "result":
        result = data.get("result")
        # An empty result keeps the text the deltas built up
        if isinstance(result, str) and result:
            return StreamUpdate(StreamKind.RESULT, (result,))
        return _OTHER

    if event_type == "error":
        error = data.get("error")
        message = data.get("message")
        if isinstance(error, str):
            text = error
        elif isinstance(message, str):
            text = message
        else:
            text = "Unknown error"
        return StreamUpdate(StreamKind.ERROR, (text,))

    return _OTHER
