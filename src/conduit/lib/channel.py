"""Opaque duplex byte channel over a child's stdin/stdout.

The channel knows nothing about framing beyond offering line iteration as
a convenience; protocol layers decide what the bytes mean. Lines are split
here rather than by ``StreamReader.readline``, so their length is bounded
only by memory and not by the reader's buffer limit.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

from conduit.lib.process import ProcessHandle

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 16


class StdioChannel:
    """Reads from the child's stdout, writes to the child's stdin."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.closed = False
        self._pending = bytearray()

    @classmethod
    def for_process(cls, handle: ProcessHandle) -> "StdioChannel":
        return cls(handle.stdout, handle.stdin)

    async def receive(self, max_bytes: int = CHUNK_SIZE) -> bytes:
        """Read up to ``max_bytes``; ``b""`` means the child closed stdout."""
        if self._pending:
            data = bytes(self._pending[:max_bytes])
            del self._pending[:max_bytes]
            return data
        return await self.reader.read(max_bytes)

    async def receive_line(self) -> bytes:
        """Read one line including its terminator; ``b""`` at end-of-stream.

        A final line without a terminator is returned as-is.
        """
        scanned = 0
        while (end := self._pending.find(b"\n", scanned)) < 0:
            scanned = len(self._pending)
            chunk = await self.reader.read(CHUNK_SIZE)
            if not chunk:
                line = bytes(self._pending)
                self._pending.clear()
                return line
            self._pending += chunk
        line = bytes(self._pending[: end + 1])
        del self._pending[: end + 1]
        return line

    async def send(self, data: bytes) -> None:
        """Write ``data`` to the child's stdin and wait for the buffer to drain.

        Raises:
            BrokenPipeError: If the channel was closed or the child stopped reading.
        """
        if self.closed:
            raise BrokenPipeError("channel is closed")
        self.writer.write(data)
        await self.writer.drain()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while line := await self.receive_line():
            yield line

    async def aclose(self) -> None:
        """Close the child's stdin. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("stdin already closed by child: %s", e)
