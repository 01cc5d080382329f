"""PIN-derived AES-128-CBC session cipher.

The session key is the raw MD5 digest of the UTF-8 PIN. This is not a slow
hash; brute-force resistance comes from the device's own rate limiting.
"""

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .types import AES_BLOCK_SIZE, IV_SIZE, SESSION_KEY_SIZE, PaddingError


def derive_session_key(pin: str) -> bytes:
    """
    Derive the 16-byte session key from a PIN.

    Args:
        pin: Device PIN

    Returns:
        16-byte AES key
    """
    digest = hashes.Hash(hashes.MD5())
    digest.update(pin.encode("utf-8"))
    return digest.finalize()


def _check_key_iv(key: bytes, iv: bytes) -> None:
    if len(key) != SESSION_KEY_SIZE:
        raise ValueError(f"Session key must be {SESSION_KEY_SIZE} bytes, got {len(key)}")
    if len(iv) != IV_SIZE:
        raise ValueError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")


def encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with AES-128-CBC and PKCS7 padding.

    Args:
        key: 16-byte session key
        iv: 16-byte IV
        plaintext: Data to encrypt (may be empty)

    Returns:
        Ciphertext, a positive multiple of 16 bytes
    """
    _check_key_iv(key, iv)

    padder = padding.PKCS7(AES_BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt AES-128-CBC ciphertext and strip PKCS7 padding.

    Args:
        key: 16-byte session key
        iv: 16-byte IV
        ciphertext: Data to decrypt

    Returns:
        Plaintext

    Raises:
        PaddingError: If the ciphertext length or padding is invalid
    """
    _check_key_iv(key, iv)

    if not ciphertext or len(ciphertext) % AES_BLOCK_SIZE:
        raise PaddingError(
            f"Ciphertext length must be a positive multiple of {AES_BLOCK_SIZE}, "
            f"got {len(ciphertext)}"
        )

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(AES_BLOCK_SIZE * 8).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise PaddingError(f"Invalid PKCS7 padding: {e}") from e
