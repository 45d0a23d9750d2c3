"""Line-delimited worker output protocol.

cli-agent-relay parsers v0.1.0

Worker stdout is newline-delimited UTF-8. Each line is either a JSON object
(a structured event, normally carrying ``type`` and ``timestamp``) or arbitrary
text (a raw log line). Chunks arrive split at arbitrary byte offsets, so the
parser keeps the incomplete tail between calls.

Malformed lines are never errors: they are downgraded to raw output.
"""

from __future__ import annotations

import codecs
import json

from ..types import ParsedLine, StructuredEvent

__all__ = ["LineProtocolParser", "classify_line"]


def classify_line(line: str) -> ParsedLine:
    """Classify one complete, trimmed, non-empty line.

    Args:
        line: Line text without the trailing newline

    Returns:
        StructuredEvent if the line is a JSON object, else the line itself
    """
    try:
        data = json.loads(line)
    except ValueError:
        return line

    # Scalars and arrays parse as JSON but are not events
    if not isinstance(data, dict):
        return line

    return StructuredEvent.model_validate(data)


class LineProtocolParser:
    """Reassembles stdout chunks into classified lines.

    Example:
        parser = LineProtocolParser()
        for item in parser.feed(b'{"type":"a","timestamp":1}\\npartial'):
            ...  # StructuredEvent(type="a")
        parser.feed(b" line\\n")  # ["partial line"]
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Incomplete trailing fragment awaiting its newline."""
        return self._buffer

    def reset(self) -> None:
        """Drop any partial line (process restart or exit)."""
        self._buffer = ""
        self._decoder.reset()

    def split(self, chunk: bytes | str) -> list[str]:
        """Append a chunk and extract every complete line.

        Returns:
            Trimmed, non-empty lines in arrival order
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        lines: list[str] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            line = line.strip()
            if line:
                lines.append(line)
        return lines

    def feed(self, chunk: bytes | str) -> list[ParsedLine]:
        """Append a chunk and return the classified complete lines."""
        return [classify_line(line) for line in self.split(chunk)]
