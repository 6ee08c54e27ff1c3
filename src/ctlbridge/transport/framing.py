"""Newline framing with partial buffer reassembly.

Incoming bytes arrive in arbitrary chunks. The framer keeps the trailing
fragment of each chunk until its delimiter arrives, so a message split
across any number of reads comes out exactly once, and a chunk holding
several messages yields all of them in arrival order.
"""

from __future__ import annotations

from typing import NamedTuple

from ctlbridge.logging import get_logger

log = get_logger("transport")

DELIMITER = b"\n"
DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024


class OversizedMessage(NamedTuple):
    """Placeholder for a message dropped for exceeding the size limit."""

    size: int


Frame = bytes | OversizedMessage


class LineFramer:
    """Split a byte stream into newline-terminated messages.

    A trailing carriage return is stripped and blank lines are skipped.
    Messages larger than `max_message_size` are discarded as they stream
    in and reported once, in order, as an OversizedMessage.
    """

    def __init__(self, max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE) -> None:
        self._max = max_message_size
        self._buffer = bytearray()
        self._discarded = 0

    @property
    def buffered(self) -> int:
        """Bytes held for the current unterminated message."""
        return len(self._buffer) + self._discarded

    @property
    def has_partial(self) -> bool:
        return self.buffered > 0

    def feed(self, chunk: bytes) -> list[Frame]:
        """Append a chunk and return every message it completes."""
        frames: list[Frame] = []
        start = 0
        while True:
            index = chunk.find(DELIMITER, start)
            if index < 0:
                break
            frame = self._complete(chunk[start:index])
            if frame is not None:
                frames.append(frame)
            start = index + 1

        self._append(chunk[start:])
        return frames

    def flush(self) -> bytes:
        """Drop and return the unterminated remainder (used at end of input)."""
        remainder = bytes(self._buffer)
        self._buffer.clear()
        self._discarded = 0
        return remainder

    def _complete(self, piece: bytes) -> Frame | None:
        if self._discarded:
            size = self._discarded + len(piece)
            self._discarded = 0
            return OversizedMessage(size)

        size = len(self._buffer) + len(piece)
        if size > self._max:
            self._buffer.clear()
            log.warning("Dropping %d byte message (limit %d)", size, self._max)
            return OversizedMessage(size)

        self._buffer += piece
        line = bytes(self._buffer)
        self._buffer.clear()
        if line.endswith(b"\r"):
            line = line[:-1]
        if not line.strip():
            return None
        return line

    def _append(self, rest: bytes) -> None:
        if not rest:
            return
        if self._discarded:
            self._discarded += len(rest)
            return
        self._buffer += rest
        if len(self._buffer) > self._max:
            log.warning("Message exceeds %d bytes; discarding until next newline", self._max)
            self._discarded = len(self._buffer)
            self._buffer.clear()
