"""NIP-44 v2 encryption used for key provisioning.

Payload layout (base64-encoded)::

    [0]        version (0x02)
    [1..32]    nonce (32 bytes)
    [33..-33]  ciphertext (padded plaintext, chacha20)
    [-32..]    mac (HMAC-SHA256 over nonce || ciphertext)

Size bounds:
    plaintext: 1 to 65535 bytes
    padded plaintext: 32 to 65536 bytes (+2 length prefix)
    raw payload: 99 to 65603 bytes
    base64 payload: 132 to 87472 characters
"""

import base64
import binascii
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .keys import ecdh_shared_x
from .types import (
    NIP44_VERSION,
    NIP44_SALT,
    NIP44_NONCE_SIZE,
    NIP44_MAC_SIZE,
    NIP44_MIN_PLAINTEXT_SIZE,
    NIP44_MAX_PLAINTEXT_SIZE,
    NIP44_MIN_PAYLOAD_LENGTH,
    NIP44_MAX_PAYLOAD_LENGTH,
    NIP44_MIN_DATA_LENGTH,
    NIP44_MAX_DATA_LENGTH,
    EnvelopeError,
)


def get_conversation_key(private_key: bytes, public_key_hex: str) -> bytes:
    """
    Derive the NIP-44 conversation key.

    ECDH shared x-coordinate between our scalar and their x-only key, then
    HKDF-extract (SHA-256) with the salt ``nip44-v2``.

    Args:
        private_key: Our 32-byte secp256k1 private key
        public_key_hex: Their x-only public key as hex

    Returns:
        32-byte conversation key
    """
    shared_x = ecdh_shared_x(private_key, public_key_hex)
    h = hmac.HMAC(NIP44_SALT, SHA256())
    h.update(shared_x)
    return h.finalize()


def get_message_keys(conversation_key: bytes, nonce: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Expand per-message keys from the conversation key and nonce.

    Returns:
        Tuple of (chacha_key 32B, chacha_nonce 12B, hmac_key 32B)
    """
    if len(conversation_key) != 32:
        raise EnvelopeError(f"Conversation key must be 32 bytes, got {len(conversation_key)}")
    if len(nonce) != NIP44_NONCE_SIZE:
        raise EnvelopeError(f"Nonce must be {NIP44_NONCE_SIZE} bytes, got {len(nonce)}")

    keys = HKDFExpand(algorithm=SHA256(), length=76, info=nonce).derive(conversation_key)
    return keys[0:32], keys[32:44], keys[44:76]


def calc_padded_len(length: int) -> int:
    """Padded length for a plaintext of ``length`` bytes."""
    if length < 1:
        raise ValueError("Expected positive integer")
    if length <= 32:
        return 32

    next_power = 1 << (length - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((length - 1) // chunk + 1)


def pad(plaintext: str) -> bytes:
    """Prefix with the big-endian u16 length and zero-pad to the bucket size."""
    unpadded = plaintext.encode("utf-8")
    length = len(unpadded)

    if not NIP44_MIN_PLAINTEXT_SIZE <= length <= NIP44_MAX_PLAINTEXT_SIZE:
        raise EnvelopeError(
            f"Invalid plaintext size: {length} bytes (must be between "
            f"{NIP44_MIN_PLAINTEXT_SIZE} and {NIP44_MAX_PLAINTEXT_SIZE})"
        )

    suffix = bytes(calc_padded_len(length) - length)
    return length.to_bytes(2, byteorder="big") + unpadded + suffix


def unpad(padded: bytes) -> str:
    """Strip padding, rejecting lengths that disagree with the bucket size."""
    length = int.from_bytes(padded[0:2], byteorder="big")
    unpadded = padded[2 : 2 + length]

    if (
        not NIP44_MIN_PLAINTEXT_SIZE <= length <= NIP44_MAX_PLAINTEXT_SIZE
        or len(unpadded) != length
        or len(padded) != 2 + calc_padded_len(length)
    ):
        raise EnvelopeError("Invalid padding")

    try:
        return unpadded.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EnvelopeError(f"Plaintext is not valid UTF-8: {e}") from e


def _hmac_aad(key: bytes, message: bytes, aad: bytes) -> hmac.HMAC:
    if len(aad) != 32:
        raise EnvelopeError("AAD associated data must be 32 bytes")
    h = hmac.HMAC(key, SHA256())
    h.update(aad + message)
    return h


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography takes a 16-byte nonce: 4-byte LE counter (0) + 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, bytes(4) + nonce), mode=None)
    encryptor = cipher.encryptor()
    return encryptor.update(data) + encryptor.finalize()


def decode_payload(payload: str) -> Tuple[bytes, bytes, bytes]:
    """
    Split a base64 NIP-44 payload into its parts.

    Returns:
        Tuple of (nonce, ciphertext, mac)

    Raises:
        EnvelopeError: If the payload is malformed
    """
    if not isinstance(payload, str):
        raise EnvelopeError("Payload must be a string")

    plen = len(payload)
    if plen < NIP44_MIN_PAYLOAD_LENGTH or plen > NIP44_MAX_PAYLOAD_LENGTH:
        raise EnvelopeError(f"Invalid payload length: {plen}")
    if payload[0] == "#":
        raise EnvelopeError("Unknown encryption version")

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EnvelopeError(f"Invalid base64: {e}") from e

    dlen = len(data)
    if dlen < NIP44_MIN_DATA_LENGTH or dlen > NIP44_MAX_DATA_LENGTH:
        raise EnvelopeError(f"Invalid data length: {dlen}")

    version = data[0]
    if version != NIP44_VERSION:
        raise EnvelopeError(f"Unknown encryption version {version}")

    return (
        data[1 : 1 + NIP44_NONCE_SIZE],
        data[1 + NIP44_NONCE_SIZE : -NIP44_MAC_SIZE],
        data[-NIP44_MAC_SIZE:],
    )


def encrypt(plaintext: str, conversation_key: bytes, nonce: Optional[bytes] = None) -> str:
    """
    Encrypt a message with NIP-44 v2.

    Args:
        plaintext: Message to encrypt (1 to 65535 UTF-8 bytes)
        conversation_key: 32-byte conversation key
        nonce: 32-byte nonce (random if omitted)

    Returns:
        Base64 payload
    """
    if nonce is None:
        nonce = os.urandom(NIP44_NONCE_SIZE)

    chacha_key, chacha_nonce, hmac_key = get_message_keys(conversation_key, nonce)
    padded = pad(plaintext)
    ciphertext = _chacha20(chacha_key, chacha_nonce, padded)
    mac = _hmac_aad(hmac_key, ciphertext, nonce).finalize()

    payload = base64.b64encode(bytes([NIP44_VERSION]) + nonce + ciphertext + mac).decode("ascii")
    if not NIP44_MIN_PAYLOAD_LENGTH <= len(payload) <= NIP44_MAX_PAYLOAD_LENGTH:
        raise EnvelopeError(f"Invalid payload length: {len(payload)}")
    return payload


def decrypt(payload: str, conversation_key: bytes) -> str:
    """
    Decrypt a NIP-44 v2 payload.

    The MAC is verified (constant time) before any decryption happens.

    Args:
        payload: Base64 payload
        conversation_key: 32-byte conversation key

    Returns:
        Decrypted plaintext

    Raises:
        EnvelopeError: If the payload is malformed or fails authentication
    """
    nonce, ciphertext, mac = decode_payload(payload)
    chacha_key, chacha_nonce, hmac_key = get_message_keys(conversation_key, nonce)

    try:
        _hmac_aad(hmac_key, ciphertext, nonce).verify(mac)
    except InvalidSignature as e:
        raise EnvelopeError("Invalid MAC") from e

    padded = _chacha20(chacha_key, chacha_nonce, ciphertext)
    return unpad(padded)
