"""Worker output parsers.

cli-agent-relay parsers v0.1.0

- line_protocol: chunk reassembly and structured/raw classification
- stream_json: reply reconstruction shapes of the conversation worker
"""

from __future__ import annotations

from .line_protocol import LineProtocolParser, classify_line
from .stream_json import StreamKind, StreamUpdate, classify_stream_event

__all__ = [
    "LineProtocolParser",
    "classify_line",
    "StreamKind",
    "StreamUpdate",
    "classify_stream_event",
]
