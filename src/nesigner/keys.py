"""secp256k1 key handling for nesigner provisioning."""

from typing import List, Tuple

from cryptography.hazmat.primitives.asymmetric import ec

from .types import PUBLIC_KEY_SIZE, InvalidKeyError

# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
NSEC_PREFIX = "nsec"


def private_key_from_bytes(secret: bytes) -> ec.EllipticCurvePrivateKey:
    """
    Build a secp256k1 private key from a 32-byte scalar.

    Raises:
        InvalidKeyError: If the scalar is the wrong length or out of range
    """
    if len(secret) != 32:
        raise InvalidKeyError(f"Private key must be 32 bytes, got {len(secret)}")

    scalar = int.from_bytes(secret, byteorder="big")
    if not 0 < scalar < CURVE_ORDER:
        raise InvalidKeyError("Private key scalar out of range")

    return ec.derive_private_key(scalar, ec.SECP256K1())


def x_only_public_key(secret: bytes) -> bytes:
    """Return the 32-byte x-only (BIP-340 / Nostr) public key for a private key."""
    public_numbers = private_key_from_bytes(secret).public_key().public_numbers()
    return public_numbers.x.to_bytes(PUBLIC_KEY_SIZE, byteorder="big")


def public_key_from_hex(pubkey_hex: str) -> ec.EllipticCurvePublicKey:
    """
    Lift an x-only public key to a curve point with even y (``02`` prefix).

    Raises:
        InvalidKeyError: If the hex is malformed or not on the curve
    """
    try:
        x = bytes.fromhex(pubkey_hex)
    except ValueError as e:
        raise InvalidKeyError(f"Invalid public key hex: {e}") from e

    if len(x) != PUBLIC_KEY_SIZE:
        raise InvalidKeyError(f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(x)}")

    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), b"\x02" + x)
    except ValueError as e:
        raise InvalidKeyError(f"Public key is not on secp256k1: {e}") from e


def ecdh_shared_x(secret: bytes, pubkey_hex: str) -> bytes:
    """
    Perform secp256k1 ECDH.

    Args:
        secret: Our 32-byte private key
        pubkey_hex: Their x-only public key (hex)

    Returns:
        32-byte x-coordinate of the shared point
    """
    private_key = private_key_from_bytes(secret)
    return private_key.exchange(ec.ECDH(), public_key_from_hex(pubkey_hex))


def _bech32_polymod(values: List[int]) -> int:
    generator = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            chk ^= generator[i] if ((b >> i) & 1) else 0
    return chk


def _bech32_hrp_expand(hrp: str) -> List[int]:
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def _convertbits(data: List[int], frombits: int, tobits: int) -> bytes:
    """Regroup 5-bit words into bytes, rejecting non-zero padding."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    for value in data:
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)
    if bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise InvalidKeyError("Invalid bech32 padding")
    return bytes(ret)


def bech32_decode(value: str) -> Tuple[str, bytes]:
    """
    Decode a bech32 string.

    Returns:
        Tuple of (human-readable part, data bytes)

    Raises:
        InvalidKeyError: If the string or its checksum is invalid
    """
    if value.lower() != value and value.upper() != value:
        raise InvalidKeyError("Mixed-case bech32 string")
    value = value.lower()

    pos = value.rfind("1")
    if pos < 1 or pos + 7 > len(value):
        raise InvalidKeyError("Invalid bech32 separator position")

    hrp = value[:pos]
    try:
        data = [BECH32_CHARSET.index(c) for c in value[pos + 1 :]]
    except ValueError as e:
        raise InvalidKeyError("Invalid bech32 character") from e

    if _bech32_polymod(_bech32_hrp_expand(hrp) + data) != 1:
        raise InvalidKeyError("Invalid bech32 checksum")

    return hrp, _convertbits(data[:-6], 5, 8)


def parse_private_key(key: str) -> bytes:
    """
    Parse a private key given as 64-char hex or ``nsec1`` bech32.

    Returns:
        32-byte private key

    Raises:
        InvalidKeyError: If the key cannot be parsed
    """
    key = key.strip()

    if key.lower().startswith(NSEC_PREFIX + "1"):
        hrp, secret = bech32_decode(key)
        if hrp != NSEC_PREFIX:
            raise InvalidKeyError(f"Invalid prefix for nsec key: {hrp}")
    else:
        try:
            secret = bytes.fromhex(key)
        except ValueError as e:
            raise InvalidKeyError(f"Invalid private key hex: {e}") from e

    # validates length and range
    private_key_from_bytes(secret)
    return secret
