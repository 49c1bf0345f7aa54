"""
Incremental SSE framing.

Upstream and relay speak the same minimal dialect:

    data: {"event": "message", ...}\\n
    \\n

Frames are separated by a blank line. Only the first `data:` line of a frame
matters; comments, `event:` and `id:` lines are ignored. Bytes arrive in
arbitrary chunks, so the decoder keeps the tail of the last read until the
frame delimiter shows up.
"""

from __future__ import annotations

import codecs
import json
import logging

from ragdesk.errors import AppError, ErrorCode

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"
DONE_SENTINEL = "[DONE]"


def format_sse(payload: dict) -> str:
    """Render one payload as an SSE frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _data_line(frame: str) -> str | None:
    for line in frame.split("\n"):
        if line.startswith("data:"):
            return line
    return None


class SSEDecoder:
    """
    Feed raw bytes (or text), get back decoded JSON payloads.

    A payload that is not valid JSON is fatal for the whole stream.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Whatever is buffered waiting for a frame delimiter."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[dict]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")

        *frames, self._buffer = self._buffer.split(FRAME_DELIMITER)
        payloads = []
        for frame in frames:
            payload = self._parse_frame(frame)
            if payload is not None:
                payloads.append(payload)
        return payloads

    def close(self):
        """Upstream hung up. An unterminated frame is incomplete and dropped."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        if tail.strip():
            logger.debug("Discarding unterminated SSE frame (%d chars)", len(tail))
        self._buffer = ""

    @staticmethod
    def _parse_frame(frame: str) -> dict | None:
        line = _data_line(frame)
        if line is None:
            return None

        data = line[5:].strip()
        if not data or data == DONE_SENTINEL:
            return None

        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise AppError(
                ErrorCode.INVALID_RESPONSE,
                f"Failed to parse streaming event: {e}",
                502,
            ) from e

        if not isinstance(payload, dict):
            raise AppError(
                ErrorCode.INVALID_RESPONSE,
                f"Streaming event is not a JSON object: {data[:80]}",
                502,
            )
        return payload
