"""
Request/response correlation and write serialization.

Many operations may be in flight on one transport. Each request carries a
random 16-byte correlation ID that the device echoes back; a single background
task decodes responses and resolves the matching waiter. Writes go through a
FIFO queue drained by one task so frames from concurrent callers never
interleave on the wire.
"""

from collections import deque
from contextlib import suppress
from typing import Optional
import asyncio
import logging
import os

from .frame import RequestFrame, ResponseFrame, ResponseDecoder, encode_request
from .models import NesignerConfig
from .transport import Transport
from .types import (
    CORRELATION_ID_SIZE,
    IV_SIZE,
    EMPTY_PUBKEY,
    NesignerError,
    IntegrityError,
    FrameTooLargeError,
    TransportClosedError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)


class RequestEngine:
    """Multiplexes concurrent requests over one transport."""

    def __init__(self, transport: Transport, config: Optional[NesignerConfig] = None) -> None:
        self._transport = transport
        self._config = config or NesignerConfig()
        self._decoder = ResponseDecoder(self._config.max_payload_size)
        self._pending: dict[bytes, asyncio.Future] = {}
        self._pending_lock = asyncio.Lock()
        self._write_queue: deque[tuple[bytes, asyncio.Future]] = deque()
        self._writing = False
        self._drain_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False
        self._shutdown = False
        self._failure: Optional[BaseException] = None

    @property
    def config(self) -> NesignerConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> bool:
        """True while the background reader is alive."""
        return self._reader_task is not None and not self._reader_task.done()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def failure(self) -> Optional[BaseException]:
        """The error that stopped the reader, if any."""
        return self._failure

    async def start(self) -> None:
        """Start the background response reader."""
        if self._closed:
            raise TransportClosedError("Session is closed")
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())

    async def __aenter__(self) -> "RequestEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def send_request(
        self,
        message_type: int,
        pubkey: bytes = EMPTY_PUBKEY,
        iv: Optional[bytes] = None,
        payload: bytes = b"",
    ) -> ResponseFrame:
        """
        Send a request and wait for its response.

        Args:
            message_type: MsgType of the request
            pubkey: 32-byte target pubkey (sentinel if omitted)
            iv: 16-byte IV (random if omitted)
            payload: Frame payload, already encrypted if required

        Returns:
            The response frame carrying the same correlation ID

        Raises:
            TransportClosedError: If the session ends before a response arrives
            IntegrityError: If the matching response failed its checksum
            RequestTimeoutError: If a request timeout is configured and expires
        """
        if self._closed:
            raise TransportClosedError("Session is closed")
        if self._reader_task is None:
            await self.start()

        correlation_id = os.urandom(CORRELATION_ID_SIZE)
        frame = RequestFrame(
            message_type=message_type,
            correlation_id=correlation_id,
            pubkey=pubkey,
            iv=iv if iv is not None else os.urandom(IV_SIZE),
            payload=payload,
        )
        data = encode_request(frame)

        future = asyncio.get_running_loop().create_future()
        async with self._pending_lock:
            self._pending[correlation_id] = future

        logger.debug(
            "Sending request %s type=%d payload=%d bytes",
            correlation_id.hex(), message_type, len(payload),
        )

        try:
            await self.enqueue_write(data)
            timeout = self._config.request_timeout
            if timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                raise RequestTimeoutError(correlation_id, timeout) from None
        finally:
            async with self._pending_lock:
                self._pending.pop(correlation_id, None)

    async def enqueue_write(self, data: bytes) -> None:
        """
        Queue a buffer for writing and wait until it has been written.

        Raises:
            TransportClosedError: If the session is closed or the write fails
        """
        if self._closed:
            raise TransportClosedError("Session is closed")

        future = asyncio.get_running_loop().create_future()
        self._write_queue.append((data, future))
        if not self._writing:
            self._writing = True
            self._drain_task = asyncio.get_running_loop().create_task(self._process_write_queue())
        await future

    async def _process_write_queue(self) -> None:
        try:
            while self._write_queue:
                data, future = self._write_queue.popleft()
                if future.done():
                    continue
                try:
                    async with self._transport.writer() as writer:
                        await writer.write(data)
                except asyncio.CancelledError:
                    if not future.done():
                        future.set_exception(TransportClosedError("Session closed during write"))
                    raise
                except NesignerError as e:
                    logger.warning("Write failed: %s", e)
                    if not future.done():
                        future.set_exception(e)
                except (OSError, RuntimeError) as e:
                    logger.warning("Write failed: %s", e)
                    error = TransportClosedError(f"Write failed: {e}")
                    error.__cause__ = e
                    if not future.done():
                        future.set_exception(error)
                except Exception as e:
                    logger.error("Unexpected write error: %s", e)
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(None)
        finally:
            self._writing = False

    async def _read_loop(self) -> None:
        logger.debug("Response reader started")
        try:
            while True:
                try:
                    frame = self._decoder.next_frame()
                except FrameTooLargeError:
                    raise
                except IntegrityError as e:
                    logger.warning("Discarding corrupt frame: %s", e)
                    await self._reject(e.correlation_id, e)
                    continue

                if frame is None:
                    chunk = await self._transport.read()
                    if not chunk:
                        self._decoder.close()
                        logger.info("Transport reached end of stream")
                        return
                    self._decoder.feed(chunk)
                    continue

                await self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except (NesignerError, OSError) as e:
            logger.error("Response reader stopped: %s", e)
            self._failure = e
        except Exception as e:
            logger.exception("Response reader failed unexpectedly")
            self._failure = e
        finally:
            self._closed = True
            self._fail_writes()
            await self._finish_pending()

    async def _dispatch(self, frame: ResponseFrame) -> None:
        async with self._pending_lock:
            future = self._pending.pop(frame.correlation_id, None)

        if future is None:
            logger.debug("Dropping response with unknown id %s", frame.correlation_id.hex())
            return

        logger.debug("Received response %s result=%d", frame.correlation_id.hex(), frame.result)
        if not future.done():
            future.set_result(frame)

    async def _reject(self, correlation_id: Optional[bytes], error: Exception) -> None:
        if correlation_id is None:
            return
        async with self._pending_lock:
            future = self._pending.pop(correlation_id, None)
        if future is not None and not future.done():
            future.set_exception(error)

    def _fail_writes(self) -> None:
        while self._write_queue:
            _, future = self._write_queue.popleft()
            if not future.done():
                future.set_exception(TransportClosedError("Session closed before write"))

    async def _finish_pending(self) -> None:
        async with self._pending_lock:
            if not self._pending:
                return
            if not self._config.fail_pending_on_close:
                logger.warning("Session ended with %d unanswered requests", len(self._pending))
                return
            pending = list(self._pending.values())
            self._pending.clear()

        error = TransportClosedError("Session closed before a response arrived")
        error.__cause__ = self._failure
        for future in pending:
            if not future.done():
                future.set_exception(error)

    async def close(self) -> None:
        """Close the transport and stop the reader."""
        if self._shutdown:
            return
        self._shutdown = True
        self._closed = True

        await self._transport.close()

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader_task
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._drain_task

        self._fail_writes()
        await self._finish_pending()
        logger.info("Session closed")
