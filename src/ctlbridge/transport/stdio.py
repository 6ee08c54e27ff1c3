"""Byte transport over stdin/stdout."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field


@dataclass
class StdioTransport:
    """Async byte stream over a reader/writer pair.

    The transport does no framing; the transport loop owns message
    boundaries. Writes are serialized so lines never interleave.
    """

    reader: asyncio.StreamReader | None = None
    writer: asyncio.StreamWriter | None = None
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    async def from_stdio(cls) -> StdioTransport:
        """Create transport from stdin/stdout."""
        loop = asyncio.get_running_loop()

        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        writer_transport, writer_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout
        )
        writer = asyncio.StreamWriter(writer_transport, writer_protocol, reader, loop)

        return cls(reader=reader, writer=writer)

    async def read_chunk(self, size: int) -> bytes:
        """Read up to `size` bytes. Returns b"" at end of input."""
        if self.reader is None:
            return b""
        return await self.reader.read(size)

    async def write(self, data: bytes) -> None:
        if self.writer is None:
            return

        async with self._write_lock:
            self.writer.write(data)
            await self.writer.drain()

    async def close(self) -> None:
        """Close the output side."""
        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                pass
