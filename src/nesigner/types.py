"""Type definitions for the nesigner protocol."""

from enum import IntEnum
from typing import Optional


class MsgType(IntEnum):
    """Message types understood by the signing device."""
    PING = 0
    NOSTR_GET_PUBLIC_KEY = 1
    NOSTR_SIGN_EVENT = 2
    NOSTR_GET_RELAYS = 3
    NOSTR_NIP04_ENCRYPT = 4
    NOSTR_NIP04_DECRYPT = 5
    NOSTR_NIP44_ENCRYPT = 6
    NOSTR_NIP44_DECRYPT = 7
    ECHO = 11
    UPDATE_KEY = 12
    REMOVE_KEY = 13
    GET_TEMP_PUBKEY = 14


class MsgResult(IntEnum):
    """Result codes reported by the signing device."""
    FAIL = 0
    OK = 1
    KEY_NOT_FOUND = 101
    CONTENT_NOT_ALLOW_EMPTY = 102
    CONTENT_ILLEGAL = 103


# Frame constants
MESSAGE_TYPE_SIZE = 2
CORRELATION_ID_SIZE = 16
RESULT_CODE_SIZE = 2
PUBLIC_KEY_SIZE = 32
IV_SIZE = 16
LENGTH_SIZE = 4
CHECKSUM_SIZE = 2
REQUEST_HEADER_SIZE = 70   # type + id + pubkey + iv + length
RESPONSE_HEADER_SIZE = 72  # type + id + result + pubkey + iv + length
REQUEST_OVERHEAD = REQUEST_HEADER_SIZE + CHECKSUM_SIZE
RESPONSE_OVERHEAD = RESPONSE_HEADER_SIZE + CHECKSUM_SIZE
MAX_PAYLOAD_SIZE = 128 * 1024

# All-zero pubkey: "no specific counterparty"
EMPTY_PUBKEY = bytes(PUBLIC_KEY_SIZE)
EMPTY_PUBKEY_HEX = EMPTY_PUBKEY.hex()

# Session cipher constants
SESSION_KEY_SIZE = 16
AES_BLOCK_SIZE = 16

# NIP-44 v2 constants
NIP44_VERSION = 2
NIP44_SALT = b"nip44-v2"
NIP44_NONCE_SIZE = 32
NIP44_MAC_SIZE = 32
NIP44_MIN_PLAINTEXT_SIZE = 0x0001
NIP44_MAX_PLAINTEXT_SIZE = 0xFFFF
NIP44_MIN_PAYLOAD_LENGTH = 132
NIP44_MAX_PAYLOAD_LENGTH = 87472
NIP44_MIN_DATA_LENGTH = 99
NIP44_MAX_DATA_LENGTH = 65603

# Transport constants
DEFAULT_READ_CHUNK_SIZE = 4096


# Exception types
class NesignerError(Exception):
    """Base exception for nesigner errors."""
    pass


class TransportClosedError(NesignerError):
    """The transport ended or failed while an operation was in progress."""
    pass


class IntegrityError(NesignerError):
    """A received frame failed its checksum."""

    def __init__(self, message: str, correlation_id: Optional[bytes] = None) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id


class FrameTooLargeError(IntegrityError):
    """Declared payload length exceeds the configured cap; the stream is unusable."""
    pass


class PaddingError(NesignerError):
    """Invalid PKCS7 padding on session decrypt."""
    pass


class EnvelopeError(NesignerError):
    """Malformed or unauthenticated NIP-44 payload."""
    pass


class InvalidKeyError(NesignerError):
    """Private or public key could not be parsed."""
    pass


class ResponseFormatError(NesignerError):
    """A device response could not be interpreted (e.g. text that is not UTF-8)."""
    pass


class RequestTimeoutError(NesignerError):
    """No response arrived within the configured request timeout."""

    def __init__(self, correlation_id: bytes, timeout: float) -> None:
        super().__init__(
            f"No response for request {correlation_id.hex()} within {timeout}s"
        )
        self.correlation_id = correlation_id
        self.timeout = timeout
