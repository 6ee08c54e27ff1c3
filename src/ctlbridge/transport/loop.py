"""Transport loop: bytes in, framed requests dispatched, responses out.

States:

    AWAITING_DATA -> HAS_PARTIAL_BUFFER -> HAS_COMPLETE_MESSAGES -> IDLE -> ...
    (any) -> CLOSING -> CLOSED

Each complete message becomes its own task, started in arrival order. A
single writer awaits those tasks in the same order, so responses leave in
dispatch order while requests on different ids run concurrently. With
`concurrent=False` each request finishes before the next one starts.

The loop ends at end of input or on request_stop(). Either way it closes
every live resource through the tree before returning the exit code.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from enum import Enum
from typing import Protocol

from ctlbridge.errors import InternalError, ParseError
from ctlbridge.logging import TRACE, get_logger
from ctlbridge.transport.dispatcher import RequestDispatcher
from ctlbridge.transport.framing import DEFAULT_MAX_MESSAGE_SIZE, LineFramer, OversizedMessage
from ctlbridge.transport.messages import Request, Response

log = get_logger("transport")


class ByteTransport(Protocol):
    """Byte stream the loop reads requests from and writes responses to."""

    async def read_chunk(self, size: int) -> bytes:
        """Next chunk of input; empty at end of input."""
        ...

    async def write(self, data: bytes) -> None:
        ...

    async def close(self) -> None:
        ...


class LoopState(Enum):
    AWAITING_DATA = "awaiting_data"
    HAS_PARTIAL_BUFFER = "has_partial_buffer"
    HAS_COMPLETE_MESSAGES = "has_complete_messages"
    IDLE = "idle"
    CLOSING = "closing"
    CLOSED = "closed"


class _Pending:
    """A response slot in dispatch order."""

    def __init__(
        self,
        request: Request | None = None,
        task: asyncio.Task[Response | None] | None = None,
        response: Response | None = None,
    ) -> None:
        self.request = request
        self.task = task
        self.response = response

    async def result(self) -> Response | None:
        if self.task is None:
            return self.response
        try:
            return await self.task
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise
            if self.request is None or self.request.is_notification:
                return None
            return Response.failure(self.request.id, InternalError("Request cancelled by shutdown"))


class TransportLoop:
    """Drives one dispatcher over one byte transport."""

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        transport: ByteTransport,
        *,
        concurrent: bool = True,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
        read_chunk_size: int = 64 * 1024,
    ) -> None:
        self._dispatcher = dispatcher
        self._transport = transport
        self._concurrent = concurrent
        self._chunk_size = read_chunk_size
        self._framer = LineFramer(max_message_size)
        self._state = LoopState.AWAITING_DATA
        self._queue: asyncio.Queue[_Pending | None] = asyncio.Queue()
        self._in_flight: set[asyncio.Task[Response | None]] = set()
        self._stop = asyncio.Event()
        self._output_closed = False

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def request_stop(self) -> None:
        """Ask the loop to stop reading and shut down (signal handlers call this)."""
        if not self._stop.is_set():
            log.info("Shutdown requested")
            self._stop.set()

    # -------------------------------------------------------------------------
    # Input
    # -------------------------------------------------------------------------

    async def feed(self, chunk: bytes) -> None:
        """Frame a chunk and dispatch every message it completes, in order."""
        frames = self._framer.feed(chunk)
        if not frames:
            self._state = LoopState.HAS_PARTIAL_BUFFER if self._framer.has_partial else LoopState.IDLE
            return

        self._state = LoopState.HAS_COMPLETE_MESSAGES
        for frame in frames:
            if isinstance(frame, OversizedMessage):
                error = ParseError(f"Message of {frame.size} bytes exceeds the size limit")
                await self._queue.put(_Pending(response=Response.failure(None, error)))
                continue

            decoded = self._dispatcher.decode(frame)
            if isinstance(decoded, Response):
                await self._queue.put(_Pending(response=decoded))
                continue

            task = asyncio.create_task(self._dispatcher.dispatch(decoded))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            await self._queue.put(_Pending(request=decoded, task=task))
            if not self._concurrent:
                await asyncio.wait({task})

        self._state = LoopState.HAS_PARTIAL_BUFFER if self._framer.has_partial else LoopState.IDLE

    async def _read_input(self) -> None:
        while True:
            self._state = LoopState.AWAITING_DATA
            try:
                chunk = await self._transport.read_chunk(self._chunk_size)
            except (ConnectionError, OSError) as e:
                log.warning("Input closed: %s", e)
                break
            if not chunk:
                break
            log.log(TRACE, "read %d bytes", len(chunk))
            await self.feed(chunk)

        remainder = self._framer.flush()
        if remainder.strip():
            log.warning("Discarding %d bytes of unterminated input at end of stream", len(remainder))
        log.debug("End of input")

    # -------------------------------------------------------------------------
    # Output
    # -------------------------------------------------------------------------

    async def _write_responses(self) -> None:
        while True:
            pending = await self._queue.get()
            if pending is None:
                return
            response = await pending.result()
            if response is None:
                continue
            await self._write(response)

    async def _write(self, response: Response) -> None:
        if self._output_closed:
            log.debug("Output closed; dropping response %r", response.id)
            return
        try:
            await self._transport.write(response.encode())
        except (ConnectionError, OSError) as e:
            log.warning("Output closed: %s", e)
            self._output_closed = True
            self.request_stop()

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> int:
        """Serve until end of input or stop, then shut down.

        Returns:
            Process exit code: 0 on clean shutdown, 1 if any top-level
            resource failed to close.
        """
        writer = asyncio.create_task(self._write_responses())
        reader = asyncio.create_task(self._read_input())
        stopper = asyncio.create_task(self._stop.wait())

        try:
            await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if not reader.done():
                reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader

            await self._queue.put(None)
            # A stop while draining still abandons whatever is running
            await asyncio.wait({writer, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if self._stop.is_set():
                self._cancel_in_flight()
            await writer
        finally:
            stopper.cancel()
            if not reader.done():
                reader.cancel()
                with suppress(asyncio.CancelledError):
                    await reader

        return await self.shutdown()

    def _cancel_in_flight(self) -> None:
        """Abandon in-flight work so teardown can take the locks."""
        if self._in_flight:
            log.info("Cancelling %d in-flight requests", len(self._in_flight))
        for task in list(self._in_flight):
            task.cancel()

    async def shutdown(self) -> int:
        """Close every live resource (cascading) and the transport."""
        self._state = LoopState.CLOSING
        tree = self._dispatcher.tree
        live = len(tree)
        if live:
            log.info("Closing %d live resources", live)
        result = await tree.close_all()
        for entry_id, message in result.failures.items():
            log.error("Failed to close %s: %s", entry_id, message)

        with suppress(ConnectionError, OSError):
            await self._transport.close()
        self._state = LoopState.CLOSED
        return 0 if result.ok else 1
