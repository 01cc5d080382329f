"""
nesigner - Client for hardware Nostr signing devices

Python implementation of the nesigner serial protocol: CRC-protected framing,
a PIN-derived AES session cipher, NIP-44 v2 provisioning envelopes, and
concurrent request correlation over a single byte stream.
"""

from .crc import crc16
from .frame import (
    RequestFrame,
    ResponseFrame,
    RequestDecoder,
    ResponseDecoder,
    DecoderState,
    encode_request,
    encode_response,
    decode_request,
    decode_response,
)
from .session_cipher import derive_session_key
from .keys import parse_private_key, x_only_public_key
from .types import (
    MsgType,
    MsgResult,
    EMPTY_PUBKEY,
    EMPTY_PUBKEY_HEX,
    MAX_PAYLOAD_SIZE,
    NesignerError,
    TransportClosedError,
    IntegrityError,
    FrameTooLargeError,
    PaddingError,
    EnvelopeError,
    InvalidKeyError,
    ResponseFormatError,
    RequestTimeoutError,
)
from .models import NesignerConfig, DeviceResult
from .transport import Transport, TransportWriter, StreamTransport
from .engine import RequestEngine
from .client import NesignerClient, create_nesigner
from . import nip44, session_cipher

__version__ = "0.1.0"

__all__ = [
    # CRC
    "crc16",
    # Frames
    "RequestFrame",
    "ResponseFrame",
    "RequestDecoder",
    "ResponseDecoder",
    "DecoderState",
    "encode_request",
    "encode_response",
    "decode_request",
    "decode_response",
    # Crypto
    "derive_session_key",
    "parse_private_key",
    "x_only_public_key",
    "nip44",
    "session_cipher",
    # Types
    "MsgType",
    "MsgResult",
    "EMPTY_PUBKEY",
    "EMPTY_PUBKEY_HEX",
    "MAX_PAYLOAD_SIZE",
    # Errors
    "NesignerError",
    "TransportClosedError",
    "IntegrityError",
    "FrameTooLargeError",
    "PaddingError",
    "EnvelopeError",
    "InvalidKeyError",
    "ResponseFormatError",
    "RequestTimeoutError",
    # Models
    "NesignerConfig",
    "DeviceResult",
    # Transport
    "Transport",
    "TransportWriter",
    "StreamTransport",
    # Engine
    "RequestEngine",
    # Client
    "NesignerClient",
    "create_nesigner",
]
