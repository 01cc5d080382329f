"""
Nesigner client for operating a hardware Nostr signer.

The NesignerClient provides a high-level API over a byte-stream transport:
public-key retrieval, NIP-04/NIP-44 encryption, event signing and PIN-gated
key provisioning. Private keys never leave the device, except for the one
provisioning call that installs a new key under a NIP-44 envelope.
"""

from typing import Optional
import logging
import os
import time

from . import nip44, session_cipher
from .engine import RequestEngine
from .frame import ResponseFrame
from .keys import parse_private_key, x_only_public_key
from .models import DeviceResult, NesignerConfig
from .transport import Transport
from .types import (
    EMPTY_PUBKEY,
    IV_SIZE,
    PUBLIC_KEY_SIZE,
    MsgResult,
    MsgType,
    ResponseFormatError,
)

logger = logging.getLogger(__name__)


class NesignerClient:
    """
    High-level client for a nesigner device.

    Example usage:
        ```python
        transport = await StreamTransport.open_connection("127.0.0.1", 9000)
        async with NesignerClient(transport, pin="12345678") as signer:
            result = await signer.get_public_key()
            if result.ok:
                print(result.value)

            sig = await signer.sign(event_id_hex)
        ```
    """

    def __init__(
        self,
        transport: Transport,
        pin: str,
        config: Optional[NesignerConfig] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            transport: Connected byte-stream transport.
            pin: Device PIN; the session key is derived from it.
            config: Optional session configuration.
        """
        self._engine = RequestEngine(transport, config)
        self._session_key = session_cipher.derive_session_key(pin)
        self._pubkey: Optional[str] = None
        self._key_missing = False

    @property
    def engine(self) -> RequestEngine:
        return self._engine

    @property
    def cached_public_key(self) -> Optional[str]:
        """The device public key if it has been fetched."""
        return self._pubkey

    async def start(self) -> None:
        """Start the background response reader."""
        await self._engine.start()

    async def close(self) -> None:
        """Close the transport."""
        await self._engine.close()

    async def __aenter__(self) -> "NesignerClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # MARK: - Request helpers

    async def _request(
        self,
        message_type: MsgType,
        pubkey: bytes,
        data: Optional[bytes],
        key: Optional[bytes] = None,
        iv: Optional[bytes] = None,
    ) -> ResponseFrame:
        """Send ``data``, session-encrypted under ``key`` when one is given."""
        if iv is None:
            iv = os.urandom(IV_SIZE)

        payload = b""
        if data is not None:
            payload = session_cipher.encrypt(key, iv, data) if key is not None else data

        return await self._engine.send_request(message_type, pubkey, iv, payload)

    def _open(self, response: ResponseFrame, key: Optional[bytes] = None) -> bytes:
        return session_cipher.decrypt(key or self._session_key, response.iv, response.payload)

    def _open_text(self, response: ResponseFrame, key: Optional[bytes] = None) -> str:
        data = self._open(response, key)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ResponseFormatError(
                f"Device returned {len(data)} bytes that are not UTF-8"
            ) from e

    async def _target_pubkey(self) -> bytes:
        # An unprovisioned device is asked once; update_key clears the flag.
        if self._pubkey is None and not self._key_missing:
            await self.get_public_key()
        if self._pubkey is None:
            return EMPTY_PUBKEY
        return bytes.fromhex(self._pubkey)

    # MARK: - Nostr operations

    async def get_public_key(self) -> DeviceResult:
        """
        Fetch the device's Nostr public key (memoized).

        Returns:
            DeviceResult with the hex public key on OK. KEY_NOT_FOUND means the
            device has not been provisioned yet.
        """
        if self._pubkey is not None:
            return DeviceResult(code=MsgResult.OK, value=self._pubkey)

        iv = os.urandom(IV_SIZE)
        response = await self._request(
            MsgType.NOSTR_GET_PUBLIC_KEY, EMPTY_PUBKEY, iv, key=self._session_key, iv=iv,
        )

        if response.result != MsgResult.OK:
            if response.result == MsgResult.KEY_NOT_FOUND:
                logger.info("Device has no key provisioned")
                self._key_missing = True
            return DeviceResult(code=response.result)

        self._key_missing = False
        self._pubkey = self._open(response).hex()
        return DeviceResult(code=response.result, value=self._pubkey)

    async def _encrypt_or_decrypt(self, message_type: MsgType, pubkey: str, text: str) -> DeviceResult:
        data = bytes.fromhex(pubkey) + text.encode("utf-8")
        response = await self._request(
            message_type, await self._target_pubkey(), data, key=self._session_key,
        )
        if response.result != MsgResult.OK:
            return DeviceResult(code=response.result)

        return DeviceResult(code=response.result, value=self._open_text(response))

    async def encrypt(self, pubkey: str, plaintext: str) -> DeviceResult:
        """NIP-04 encrypt ``plaintext`` for ``pubkey``."""
        return await self._encrypt_or_decrypt(MsgType.NOSTR_NIP04_ENCRYPT, pubkey, plaintext)

    async def decrypt(self, pubkey: str, ciphertext: str) -> DeviceResult:
        """NIP-04 decrypt ``ciphertext`` from ``pubkey``."""
        return await self._encrypt_or_decrypt(MsgType.NOSTR_NIP04_DECRYPT, pubkey, ciphertext)

    async def nip44_encrypt(self, pubkey: str, plaintext: str) -> DeviceResult:
        """NIP-44 encrypt ``plaintext`` for ``pubkey``."""
        return await self._encrypt_or_decrypt(MsgType.NOSTR_NIP44_ENCRYPT, pubkey, plaintext)

    async def nip44_decrypt(self, pubkey: str, ciphertext: str) -> DeviceResult:
        """NIP-44 decrypt ``ciphertext`` from ``pubkey``."""
        return await self._encrypt_or_decrypt(MsgType.NOSTR_NIP44_DECRYPT, pubkey, ciphertext)

    async def sign(self, event_id: str) -> DeviceResult:
        """
        Sign a Nostr event ID.

        Args:
            event_id: 32-byte event ID as hex.

        Returns:
            DeviceResult with the hex signature on OK.
        """
        response = await self._request(
            MsgType.NOSTR_SIGN_EVENT,
            await self._target_pubkey(),
            bytes.fromhex(event_id),
            key=self._session_key,
        )
        if response.result != MsgResult.OK:
            return DeviceResult(code=response.result)

        return DeviceResult(code=response.result, value=self._open(response).hex())

    # MARK: - Key management

    async def get_temp_pubkey(self) -> DeviceResult:
        """Ask the device for a temporary public key used to wrap provisioning data."""
        response = await self._request(MsgType.GET_TEMP_PUBKEY, EMPTY_PUBKEY, None)
        if response.result != MsgResult.OK:
            return DeviceResult(code=response.result)
        if len(response.payload) != PUBLIC_KEY_SIZE:
            logger.warning("Temporary pubkey has %d bytes", len(response.payload))
            return DeviceResult(code=MsgResult.FAIL)

        return DeviceResult(code=response.result, value=response.payload.hex())

    async def update_key(self, pin: str, key: str) -> int:
        """
        Install a private key on the device under a new PIN.

        The key and the new session key are wrapped in a NIP-44 envelope for a
        device-generated temporary key; the frame itself is not session-encrypted.

        Args:
            pin: The new PIN.
            key: Private key as 64-char hex or ``nsec1`` bech32.

        Returns:
            The device result code.

        Raises:
            InvalidKeyError: If the key cannot be parsed.
        """
        new_session_key = session_cipher.derive_session_key(pin)
        private_key = parse_private_key(key)
        pubkey = x_only_public_key(private_key)

        temp = await self.get_temp_pubkey()
        if not temp.ok:
            logger.warning("Could not get temporary pubkey (result=%d)", temp.code)
            return MsgResult.FAIL

        conversation_key = nip44.get_conversation_key(private_key, temp.value)
        envelope = nip44.encrypt(private_key.hex() + new_session_key.hex(), conversation_key)

        response = await self._request(
            MsgType.UPDATE_KEY, pubkey, envelope.encode("utf-8"),
        )
        if response.result == MsgResult.OK:
            self._session_key = new_session_key
            self._pubkey = pubkey.hex()
            self._key_missing = False
            logger.info("Device key updated")
        return response.result

    async def remove_key(self, pin: str) -> int:
        """
        Remove the private key from the device.

        Returns:
            The device result code.
        """
        key = session_cipher.derive_session_key(pin)
        iv = os.urandom(IV_SIZE)
        response = await self._request(MsgType.REMOVE_KEY, EMPTY_PUBKEY, iv, key=key, iv=iv)
        if response.result == MsgResult.OK:
            self._pubkey = None
            self._key_missing = True
            logger.info("Device key removed")
        return response.result

    # MARK: - Diagnostics

    async def ping(self) -> Optional[float]:
        """
        Measure the round trip to the device.

        Returns:
            Latency in milliseconds, or None if the device did not answer OK.
        """
        begin = time.monotonic()
        response = await self._request(MsgType.PING, EMPTY_PUBKEY, b"")
        if response.result != MsgResult.OK:
            return None
        return (time.monotonic() - begin) * 1000

    async def echo(self, pin: str, message: str) -> DeviceResult:
        """Round-trip ``message`` through the device, encrypted under the PIN-derived key."""
        key = session_cipher.derive_session_key(pin)
        response = await self._request(MsgType.ECHO, EMPTY_PUBKEY, message.encode("utf-8"), key=key)
        if response.result != MsgResult.OK:
            return DeviceResult(code=response.result)

        return DeviceResult(code=response.result, value=self._open_text(response, key))


async def create_nesigner(
    transport: Transport,
    pin: str,
    config: Optional[NesignerConfig] = None,
) -> NesignerClient:
    """Create a client and start its response reader."""
    client = NesignerClient(transport, pin, config)
    await client.start()
    return client
