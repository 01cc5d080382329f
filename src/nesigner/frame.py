"""Frame encoding and decoding for the nesigner wire protocol.

Requests and responses use different layouts and must never be treated as
symmetric. All multi-byte integers are big-endian.

Request (72-byte overhead)::

    [0..1]    messageType (u16)
    [2..17]   correlationId (16 bytes)
    [18..49]  targetPubkey (32 bytes, all-zero sentinel if none)
    [50..65]  iv (16 bytes)
    [66..69]  payloadLength (u32)
    [70..]    payload
    [-2..]    checksum (u16, CRC-16 over every preceding byte)

Response (74-byte overhead)::

    [0..1]    messageType (u16)
    [2..17]   correlationId (16 bytes, echoes the request)
    [18..19]  resultCode (u16)
    [20..51]  sourcePubkey (32 bytes)
    [52..67]  iv (16 bytes)
    [68..71]  payloadLength (u32)
    [72..]    payload
    [-2..]    checksum (u16, CRC-16 over header + payload)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from .crc import crc16
from .types import (
    MESSAGE_TYPE_SIZE,
    CORRELATION_ID_SIZE,
    PUBLIC_KEY_SIZE,
    IV_SIZE,
    LENGTH_SIZE,
    CHECKSUM_SIZE,
    REQUEST_HEADER_SIZE,
    RESPONSE_HEADER_SIZE,
    MAX_PAYLOAD_SIZE,
    IntegrityError,
    FrameTooLargeError,
    TransportClosedError,
)


@dataclass
class RequestFrame:
    """A host-to-device frame."""
    message_type: int
    correlation_id: bytes  # 16 bytes
    pubkey: bytes  # 32 bytes
    iv: bytes  # 16 bytes
    payload: bytes = b""


@dataclass
class ResponseFrame:
    """A device-to-host frame."""
    message_type: int
    correlation_id: bytes  # 16 bytes
    result: int
    pubkey: bytes  # 32 bytes
    iv: bytes  # 16 bytes
    payload: bytes = b""


def _check_size(name: str, value: bytes, size: int) -> None:
    if len(value) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(value)}")


def encode_request(frame: RequestFrame) -> bytes:
    """
    Encode a request frame to bytes.

    Args:
        frame: RequestFrame to encode

    Returns:
        Encoded bytes (72 + payload length)
    """
    _check_size("Correlation ID", frame.correlation_id, CORRELATION_ID_SIZE)
    _check_size("Pubkey", frame.pubkey, PUBLIC_KEY_SIZE)
    _check_size("IV", frame.iv, IV_SIZE)

    body = (
        frame.message_type.to_bytes(MESSAGE_TYPE_SIZE, byteorder="big")
        + frame.correlation_id
        + frame.pubkey
        + frame.iv
        + len(frame.payload).to_bytes(LENGTH_SIZE, byteorder="big")
        + frame.payload
    )
    return body + crc16(body).to_bytes(CHECKSUM_SIZE, byteorder="big")


def encode_response(frame: ResponseFrame) -> bytes:
    """
    Encode a response frame to bytes.

    Only the device produces responses; this exists for emulators and tests.

    Args:
        frame: ResponseFrame to encode

    Returns:
        Encoded bytes (74 + payload length)
    """
    _check_size("Correlation ID", frame.correlation_id, CORRELATION_ID_SIZE)
    _check_size("Pubkey", frame.pubkey, PUBLIC_KEY_SIZE)
    _check_size("IV", frame.iv, IV_SIZE)

    body = (
        frame.message_type.to_bytes(MESSAGE_TYPE_SIZE, byteorder="big")
        + frame.correlation_id
        + frame.result.to_bytes(2, byteorder="big")
        + frame.pubkey
        + frame.iv
        + len(frame.payload).to_bytes(LENGTH_SIZE, byteorder="big")
        + frame.payload
    )
    return body + crc16(body).to_bytes(CHECKSUM_SIZE, byteorder="big")


class DecoderState(Enum):
    """Where a streaming decoder is within the current frame."""
    AWAITING_HEADER = "awaiting_header"
    AWAITING_PAYLOAD = "awaiting_payload"
    FAILED = "failed"


class _StreamDecoder:
    """
    Incremental frame parser over an arbitrarily chunked byte stream.

    Chunk boundaries may fall anywhere. Bytes beyond the current frame stay
    buffered and seed the next header parse.
    """

    header_size: int = 0
    verify_empty_payload: bool = True

    def __init__(self, max_payload_size: int = MAX_PAYLOAD_SIZE) -> None:
        self._max_payload_size = max_payload_size
        self._buffer = bytearray()
        self._state = DecoderState.AWAITING_HEADER
        self._header = b""
        self._payload_length = 0

    @property
    def state(self) -> DecoderState:
        return self._state

    @property
    def buffered(self) -> int:
        """Number of received bytes not yet consumed by a complete frame."""
        return len(self._buffer) + len(self._header)

    def feed(self, chunk: bytes) -> None:
        """Append received bytes."""
        self._buffer += chunk

    def frames(self, chunk: bytes = b"") -> Iterator:
        """Feed ``chunk`` and yield every frame that is now complete."""
        self.feed(chunk)
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame

    def next_frame(self):
        """
        Parse the next complete frame from the buffer.

        Returns:
            The parsed frame, or None if more bytes are needed.

        Raises:
            IntegrityError: The frame's checksum did not match. The frame's
                bytes are consumed, so decoding may continue.
            FrameTooLargeError: The declared payload length exceeds the cap.
                The stream is desynchronized and the decoder is unusable.
        """
        if self._state is DecoderState.FAILED:
            raise FrameTooLargeError("Decoder is desynchronized")

        if self._state is DecoderState.AWAITING_HEADER:
            if len(self._buffer) < self.header_size:
                return None
            self._header = bytes(self._buffer[: self.header_size])
            del self._buffer[: self.header_size]
            self._payload_length = int.from_bytes(self._header[-LENGTH_SIZE:], byteorder="big")
            if self._payload_length > self._max_payload_size:
                self._state = DecoderState.FAILED
                raise FrameTooLargeError(
                    f"Payload too large: {self._payload_length} bytes "
                    f"(max {self._max_payload_size})",
                    correlation_id=self._header[2 : 2 + CORRELATION_ID_SIZE],
                )
            self._state = DecoderState.AWAITING_PAYLOAD

        needed = self._payload_length + CHECKSUM_SIZE
        if len(self._buffer) < needed:
            return None

        payload = bytes(self._buffer[: self._payload_length])
        checksum = int.from_bytes(self._buffer[self._payload_length : needed], byteorder="big")
        del self._buffer[:needed]

        header = self._header
        self._header = b""
        self._state = DecoderState.AWAITING_HEADER

        if payload or self.verify_empty_payload:
            expected = crc16(header + payload)
            if expected != checksum:
                raise IntegrityError(
                    f"CRC mismatch: expected 0x{expected:04X}, got 0x{checksum:04X}",
                    correlation_id=header[2 : 2 + CORRELATION_ID_SIZE],
                )

        return self._parse(header, payload)

    def close(self) -> None:
        """
        Signal end-of-stream.

        Raises:
            TransportClosedError: If a frame was partially received.
        """
        if self._buffer or self._state is DecoderState.AWAITING_PAYLOAD:
            raise TransportClosedError(
                f"Transport closed with {self.buffered} bytes of an incomplete frame"
            )

    def _parse(self, header: bytes, payload: bytes):
        raise NotImplementedError


class ResponseDecoder(_StreamDecoder):
    """Decodes device responses. Empty-payload frames skip the checksum."""

    header_size = RESPONSE_HEADER_SIZE
    verify_empty_payload = False

    def next_frame(self) -> Optional[ResponseFrame]:
        return super().next_frame()

    def _parse(self, header: bytes, payload: bytes) -> ResponseFrame:
        offset = MESSAGE_TYPE_SIZE
        correlation_id = header[offset : offset + CORRELATION_ID_SIZE]
        offset += CORRELATION_ID_SIZE
        result = int.from_bytes(header[offset : offset + 2], byteorder="big")
        offset += 2
        pubkey = header[offset : offset + PUBLIC_KEY_SIZE]
        offset += PUBLIC_KEY_SIZE
        iv = header[offset : offset + IV_SIZE]

        return ResponseFrame(
            message_type=int.from_bytes(header[:MESSAGE_TYPE_SIZE], byteorder="big"),
            correlation_id=correlation_id,
            result=result,
            pubkey=pubkey,
            iv=iv,
            payload=payload,
        )


class RequestDecoder(_StreamDecoder):
    """Decodes host requests, as a device would."""

    header_size = REQUEST_HEADER_SIZE

    def next_frame(self) -> Optional[RequestFrame]:
        return super().next_frame()

    def _parse(self, header: bytes, payload: bytes) -> RequestFrame:
        offset = MESSAGE_TYPE_SIZE
        correlation_id = header[offset : offset + CORRELATION_ID_SIZE]
        offset += CORRELATION_ID_SIZE
        pubkey = header[offset : offset + PUBLIC_KEY_SIZE]
        offset += PUBLIC_KEY_SIZE
        iv = header[offset : offset + IV_SIZE]

        return RequestFrame(
            message_type=int.from_bytes(header[:MESSAGE_TYPE_SIZE], byteorder="big"),
            correlation_id=correlation_id,
            pubkey=pubkey,
            iv=iv,
            payload=payload,
        )


def decode_response(data: bytes, max_payload_size: int = MAX_PAYLOAD_SIZE) -> ResponseFrame:
    """
    Decode exactly one response frame from a complete buffer.

    Raises:
        IntegrityError: On checksum mismatch.
        TransportClosedError: If the buffer holds an incomplete frame.
        ValueError: If bytes remain after the frame.
    """
    decoder = ResponseDecoder(max_payload_size)
    decoder.feed(data)
    frame = decoder.next_frame()
    if frame is None:
        raise TransportClosedError(f"Incomplete frame: {len(data)} bytes")
    if decoder.buffered:
        raise ValueError(f"{decoder.buffered} trailing bytes after frame")
    return frame


def decode_request(data: bytes, max_payload_size: int = MAX_PAYLOAD_SIZE) -> RequestFrame:
    """
    Decode exactly one request frame from a complete buffer.

    Raises:
        IntegrityError: On checksum mismatch.
        TransportClosedError: If the buffer holds an incomplete frame.
        ValueError: If bytes remain after the frame.
    """
    decoder = RequestDecoder(max_payload_size)
    decoder.feed(data)
    frame = decoder.next_frame()
    if frame is None:
        raise TransportClosedError(f"Incomplete frame: {len(data)} bytes")
    if decoder.buffered:
        raise ValueError(f"{decoder.buffered} trailing bytes after frame")
    return frame
