"""Newline-delimited JSON framing for the agent RPC protocol.

Request frame:
    {"type": "<command>", "id": "req_<n>", ...command fields}

Response frame:
    {"type": "response", "id": "req_<n>", "command": "<command>",
     "success": true, "data": {...}}
    {"type": "response", "id": "req_<n>", "command": "<command>",
     "success": false, "error": "<message>"}

Event frame:
    any JSON object whose type is not "response".

Framing is anchored on newlines, never on JSON structure, so a malformed
line is dropped without disturbing the frames that follow it.
"""
from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

RESPONSE_TYPE = "response"


def encode_command(command: dict[str, Any]) -> bytes:
    """Serialize a command to one UTF-8 JSON line."""
    line = json.dumps(command, ensure_ascii=False) + "\n"
    return line.encode("utf-8")


def is_response(frame: dict[str, Any]) -> bool:
    return frame.get("type") == RESPONSE_TYPE


class FrameDecoder:
    """Incremental decoder turning arbitrary socket reads into JSON frames.

    Bytes are buffered (not text) so a multi-byte character split across two
    reads is decoded only once its line is complete.
    """

    def __init__(self) -> None:
        self._buffer = b""

    @property
    def buffered(self) -> int:
        """Number of bytes held back as an incomplete trailing line."""
        return len(self._buffer)

    def feed(self, data: bytes | str) -> list[Any]:
        """Append *data* and return every frame completed by it."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer += data

        frames: list[Any] = []
        while True:
            line, sep, rest = self._buffer.partition(b"\n")
            if not sep:
                break
            self._buffer = rest
            line = line.strip()
            if not line:
                continue
            try:
                frames.append(json.loads(line.decode("utf-8")))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.debug("Dropping malformed frame: %r", line[:200])
        return frames

    def reset(self) -> None:
        self._buffer = b""
