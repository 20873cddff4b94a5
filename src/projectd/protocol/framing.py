"""Newline-delimited JSON framing for the worker control protocol.

Wire format, both directions:
    <json-object>\n

One compact JSON object per line, UTF-8 encoded. There is no length
prefix; ``json.dumps`` escapes embedded newlines so an encoded message
never spans lines. The decoder buffers partial lines (and partial UTF-8
sequences) across chunk boundaries and drops malformed lines with a
warning so a single bad line cannot stall the stream.
"""

from __future__ import annotations

import json
import logging
from typing import Any

CONTENT_ENCODING = "utf-8"
NEWLINE = b"\n"

_log = logging.getLogger("projectd.protocol")


class LineFramingError(Exception):
    """Error encoding a message for the line protocol.

    Raised when a message cannot be serialized to JSON.
    """

    pass


def encode_message(msg: dict[str, Any]) -> bytes:
    """Encode a message as one newline-terminated UTF-8 line.

    Raises:
        LineFramingError: If the message cannot be serialized to JSON.

    Example:
        >>> encode_message({"type": "get_state", "id": "1"})
        b'{"type":"get_state","id":"1"}\\n'
    """
    try:
        body = json.dumps(msg, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise LineFramingError(f"Message cannot be serialized to JSON: {e}") from e
    return body.encode(CONTENT_ENCODING) + NEWLINE


def decode_line(line: bytes) -> dict[str, Any] | None:
    """Decode a single line (without its terminator).

    Returns:
        The parsed object, or None for blank or malformed lines.
    """
    stripped = line.strip()
    if not stripped:
        return None

    try:
        text = stripped.decode(CONTENT_ENCODING)
    except UnicodeDecodeError as e:
        _log.warning("Dropping line with invalid UTF-8: %s", e)
        return None

    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        _log.warning("Failed to parse line as JSON: %s", text[:500])
        return None

    if not isinstance(message, dict):
        _log.warning("Dropping non-object JSON line (%s)", type(message).__name__)
        return None

    return message


class LineDecoder:
    """Incremental decoder turning byte chunks into JSON objects.

    Example:
        >>> decoder = LineDecoder()
        >>> decoder.feed(b'{"type":"a"}\\n{"ty')
        [{'type': 'a'}]
        >>> decoder.feed(b'pe":"b"}\\n')
        [{'type': 'b'}]
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        """Number of buffered bytes belonging to an unterminated line."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Consume a chunk and return every complete message it finished."""
        self._buffer.extend(chunk)
        messages: list[dict[str, Any]] = []

        while True:
            idx = self._buffer.find(NEWLINE)
            if idx == -1:
                break
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]

            message = decode_line(line)
            if message is not None:
                messages.append(message)

        return messages

    def flush(self) -> list[dict[str, Any]]:
        """Decode any trailing unterminated line (call at EOF)."""
        if not self._buffer:
            return []
        line = bytes(self._buffer)
        self._buffer.clear()
        message = decode_line(line)
        return [message] if message is not None else []
