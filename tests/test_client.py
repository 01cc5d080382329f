"""End-to-end tests for NesignerClient against the mock device."""

import asyncio

import pytest
from nesigner import nip44, session_cipher
from nesigner.client import NesignerClient, create_nesigner
from nesigner.keys import x_only_public_key
from nesigner.types import (
    EMPTY_PUBKEY,
    InvalidKeyError,
    MsgResult,
    MsgType,
    ResponseFormatError,
)
from .mock_device import MemoryTransport, MockDevice
from .test_keys import bech32_encode
from .test_vectors import (
    ALICE_SECRET_HEX,
    ALICE_PUBKEY_HEX,
    BOB_PUBKEY_HEX,
    TEST_PIN,
)


def run_with_device(scenario, secret=ALICE_SECRET_HEX, pin=TEST_PIN, **device_options):
    """Run ``scenario(client, device)`` against a fresh mock device."""
    async def main():
        transport = MemoryTransport()
        device = MockDevice(
            transport,
            pin=pin,
            secret=bytes.fromhex(secret) if secret else None,
            **device_options,
        )
        async with NesignerClient(transport, pin) as client:
            return await scenario(client, device)

    return asyncio.run(main())


class TestPublicKey:
    """Test public key retrieval."""

    def test_get_public_key(self) -> None:
        async def scenario(client, device):
            result = await client.get_public_key()
            assert result.ok
            assert result.value == ALICE_PUBKEY_HEX

            request = device.requests[0]
            assert request.message_type == MsgType.NOSTR_GET_PUBLIC_KEY
            assert request.pubkey == EMPTY_PUBKEY
            # payload is the IV, encrypted under the session key with that IV
            assert session_cipher.decrypt(device.session_key, request.iv, request.payload) == request.iv

        run_with_device(scenario)

    def test_public_key_is_memoized(self) -> None:
        async def scenario(client, device):
            await client.get_public_key()
            result = await client.get_public_key()
            assert result.value == ALICE_PUBKEY_HEX
            assert len(device.requests) == 1
            assert client.cached_public_key == ALICE_PUBKEY_HEX

        run_with_device(scenario)

    def test_key_not_found_is_an_outcome(self) -> None:
        async def scenario(client, device):
            result = await client.get_public_key()
            assert not result.ok
            assert result.result is MsgResult.KEY_NOT_FOUND
            assert result.value is None
            assert client.cached_public_key is None

        run_with_device(scenario, secret=None)

    def test_responses_in_small_chunks(self) -> None:
        async def scenario(client, device):
            result = await client.get_public_key()
            assert result.value == ALICE_PUBKEY_HEX

        run_with_device(scenario, chunk_size=3)

    def test_missing_key_is_remembered(self) -> None:
        """An unprovisioned device is asked for its key once, not before every call."""
        async def scenario(client, device):
            for _ in range(3):
                result = await client.nip44_encrypt(BOB_PUBKEY_HEX, "hi")
                assert result.code == MsgResult.KEY_NOT_FOUND
                assert device.requests[-1].pubkey == EMPTY_PUBKEY

            lookups = [r for r in device.requests if r.message_type == MsgType.NOSTR_GET_PUBLIC_KEY]
            assert len(lookups) == 1

            assert await client.update_key(TEST_PIN, ALICE_SECRET_HEX) == MsgResult.OK
            result = await client.nip44_encrypt(BOB_PUBKEY_HEX, "hi")
            assert result.ok
            assert device.requests[-1].pubkey.hex() == ALICE_PUBKEY_HEX

            lookups = [r for r in device.requests if r.message_type == MsgType.NOSTR_GET_PUBLIC_KEY]
            assert len(lookups) == 1

        run_with_device(scenario, secret=None)


class TestNostrOperations:
    """Test encrypt/decrypt/sign round trips."""

    @pytest.mark.parametrize("method,message_type", [
        ("encrypt", MsgType.NOSTR_NIP04_ENCRYPT),
        ("decrypt", MsgType.NOSTR_NIP04_DECRYPT),
        ("nip44_encrypt", MsgType.NOSTR_NIP44_ENCRYPT),
        ("nip44_decrypt", MsgType.NOSTR_NIP44_DECRYPT),
    ])
    def test_text_operations(self, method: str, message_type: MsgType) -> None:
        async def scenario(client, device):
            result = await getattr(client, method)(BOB_PUBKEY_HEX, "gm nostr")
            assert result.ok
            assert result.value == f"{int(message_type)}:{BOB_PUBKEY_HEX}:gm nostr"

            request = device.requests[-1]
            assert request.message_type == message_type
            assert request.pubkey.hex() == ALICE_PUBKEY_HEX
            plaintext = session_cipher.decrypt(device.session_key, request.iv, request.payload)
            assert plaintext == bytes.fromhex(BOB_PUBKEY_HEX) + b"gm nostr"

        run_with_device(scenario)

    def test_device_rejects_empty_content(self) -> None:
        async def scenario(client, device):
            result = await client.nip44_encrypt(BOB_PUBKEY_HEX, "")
            assert result.code == MsgResult.CONTENT_NOT_ALLOW_EMPTY
            assert result.value is None

        run_with_device(scenario)

    def test_non_utf8_output(self) -> None:
        async def scenario(client, device):
            device._transform = lambda request: device._sealed(request, b"\xff\xfe bad")
            with pytest.raises(ResponseFormatError) as excinfo:
                await client.nip44_encrypt(BOB_PUBKEY_HEX, "hi")
            assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)

            # the session is still usable
            assert await client.ping() is not None

        run_with_device(scenario)

    def test_sign(self) -> None:
        event_id = "ab" * 32

        async def scenario(client, device):
            result = await client.sign(event_id)
            assert result.ok
            assert result.value == event_id + event_id
            assert device.requests[-1].message_type == MsgType.NOSTR_SIGN_EVENT

        run_with_device(scenario)

    def test_concurrent_operations(self) -> None:
        async def scenario(client, device):
            await client.get_public_key()
            results = await asyncio.gather(*(
                client.nip44_encrypt(BOB_PUBKEY_HEX, f"message {i}") for i in range(10)
            ))
            for i, result in enumerate(results):
                assert result.value.endswith(f":message {i}")

        run_with_device(scenario)

    def test_wrong_pin_yields_fail(self) -> None:
        async def main():
            transport = MemoryTransport()
            MockDevice(transport, pin=TEST_PIN, secret=bytes.fromhex(ALICE_SECRET_HEX))
            async with NesignerClient(transport, "9999") as client:
                result = await client.get_public_key()
                assert result.code == MsgResult.FAIL

        asyncio.run(main())


class TestDiagnostics:
    """Test ping and echo."""

    def test_ping(self) -> None:
        async def scenario(client, device):
            latency = await client.ping()
            assert latency is not None
            assert latency >= 0
            request = device.requests[0]
            assert request.message_type == MsgType.PING
            assert request.payload == b""

        run_with_device(scenario)

    def test_echo(self) -> None:
        async def scenario(client, device):
            result = await client.echo(TEST_PIN, "hello device")
            assert result.ok
            assert result.value == "hello device"

        run_with_device(scenario)

    def test_echo_non_utf8(self) -> None:
        async def scenario(client, device):
            device._echo = lambda request: device._sealed(request, b"\xc3\x28")
            with pytest.raises(ResponseFormatError):
                await client.echo(TEST_PIN, "hello device")

        run_with_device(scenario)


class TestKeyManagement:
    """Test provisioning and removal."""

    def test_get_temp_pubkey(self) -> None:
        async def scenario(client, device):
            result = await client.get_temp_pubkey()
            assert result.ok
            assert result.value == x_only_public_key(device.temp_secret).hex()
            request = device.requests[0]
            assert request.message_type == MsgType.GET_TEMP_PUBKEY
            assert request.pubkey == EMPTY_PUBKEY
            assert request.payload == b""

        run_with_device(scenario, secret=None)

    def test_update_key_end_to_end(self) -> None:
        """The UPDATE_KEY payload is a NIP-44 envelope the device can open."""
        new_pin = "87654321"

        async def scenario(client, device):
            code = await client.update_key(new_pin, ALICE_SECRET_HEX)
            assert code == MsgResult.OK

            temp_request, update_request = device.requests
            assert temp_request.message_type == MsgType.GET_TEMP_PUBKEY
            assert update_request.message_type == MsgType.UPDATE_KEY
            assert update_request.pubkey.hex() == ALICE_PUBKEY_HEX

            # Verify independently: ECDH(temp pubkey, supplied private key)
            temp_pubkey = x_only_public_key(device.temp_secret).hex()
            conversation_key = nip44.get_conversation_key(bytes.fromhex(ALICE_SECRET_HEX), temp_pubkey)
            plaintext = nip44.decrypt(update_request.payload.decode("utf-8"), conversation_key)
            expected_session_key = session_cipher.derive_session_key(new_pin)
            assert plaintext == ALICE_SECRET_HEX + expected_session_key.hex()

            # The client now speaks under the new PIN
            assert client.cached_public_key == ALICE_PUBKEY_HEX
            result = await client.nip44_encrypt(BOB_PUBKEY_HEX, "after update")
            assert result.ok

        run_with_device(scenario, secret=None)

    def test_update_key_with_nsec(self) -> None:
        nsec = bech32_encode("nsec", bytes.fromhex(ALICE_SECRET_HEX))

        async def scenario(client, device):
            code = await client.update_key(TEST_PIN, nsec)
            assert code == MsgResult.OK
            assert device.secret == bytes.fromhex(ALICE_SECRET_HEX)

        run_with_device(scenario, secret=None)

    def test_update_key_invalid(self) -> None:
        async def scenario(client, device):
            with pytest.raises(InvalidKeyError):
                await client.update_key(TEST_PIN, "not a key")
            assert device.requests == []

        run_with_device(scenario, secret=None)

    def test_update_key_without_temp_pubkey(self) -> None:
        async def scenario(client, device):
            device._get_temp_pubkey = lambda request: device._reply(request, MsgResult.FAIL)
            code = await client.update_key(TEST_PIN, ALICE_SECRET_HEX)
            assert code == MsgResult.FAIL
            assert [r.message_type for r in device.requests] == [MsgType.GET_TEMP_PUBKEY]

        run_with_device(scenario, secret=None)

    def test_remove_key(self) -> None:
        async def scenario(client, device):
            await client.get_public_key()
            code = await client.remove_key(TEST_PIN)
            assert code == MsgResult.OK
            assert device.secret is None
            assert client.cached_public_key is None

            result = await client.get_public_key()
            assert result.code == MsgResult.KEY_NOT_FOUND

        run_with_device(scenario)

    def test_remove_key_wrong_pin(self) -> None:
        async def scenario(client, device):
            code = await client.remove_key("0000")
            assert code == MsgResult.FAIL
            assert device.secret is not None

        run_with_device(scenario)


class TestLifecycle:
    """Test session start and shutdown."""

    def test_create_nesigner(self) -> None:
        async def main():
            transport = MemoryTransport()
            MockDevice(transport)
            client = await create_nesigner(transport, TEST_PIN)
            assert client.engine.running
            assert await client.ping() is not None
            await client.close()
            assert client.engine.closed

        asyncio.run(main())
