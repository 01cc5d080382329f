"""
Transport interfaces for talking to a nesigner device.

The protocol needs only a reliable, in-order duplex byte stream. Opening and
configuring the physical link (serial port, USB CDC, TCP bridge) is left to
the caller.
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional
import asyncio
import logging

from .models import NesignerConfig
from .types import DEFAULT_READ_CHUNK_SIZE, TransportClosedError

logger = logging.getLogger(__name__)


class TransportWriter(ABC):
    """Exclusive handle for writing one buffer at a time."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write a complete buffer."""
        pass


class Transport(ABC):
    """Abstract duplex byte stream."""

    @abstractmethod
    async def read(self) -> Optional[bytes]:
        """Read the next chunk. Returns None or b"" at end-of-stream."""
        pass

    @abstractmethod
    def writer(self) -> AsyncContextManager[TransportWriter]:
        """
        Acquire the exclusive writer.

        Used as ``async with transport.writer() as w: await w.write(data)``.
        The writer is released when the block exits, on success or failure.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the stream."""
        pass


class _StreamWriterHandle(TransportWriter):
    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer

    async def write(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()


class StreamTransport(Transport):
    """Transport over an asyncio ``StreamReader``/``StreamWriter`` pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._read_chunk_size = read_chunk_size
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def open_connection(
        cls,
        host: str,
        port: int,
        config: Optional[NesignerConfig] = None,
    ) -> "StreamTransport":
        """
        Connect to a device exposed over TCP (e.g. a serial-to-network bridge).

        Reads use ``config.read_chunk_size``.
        """
        config = config or NesignerConfig()
        reader, writer = await asyncio.open_connection(host, port)
        logger.info("Connected to %s:%d", host, port)
        return cls(reader, writer, config.read_chunk_size)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def read_chunk_size(self) -> int:
        return self._read_chunk_size

    async def read(self) -> Optional[bytes]:
        if self._closed:
            return None
        return await self._reader.read(self._read_chunk_size)

    @asynccontextmanager
    async def writer(self) -> AsyncIterator[TransportWriter]:
        async with self._write_lock:
            if self._closed:
                raise TransportClosedError("Transport is closed")
            yield _StreamWriterHandle(self._writer)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.warning("Error closing transport: %s", e)
