"""Tests for CRC-16 calculation."""

from nesigner.crc import crc16
from .test_vectors import CRC16_CHECK_INPUT, CRC16_CHECK_VALUE


class TestCRC16:
    """Test the CRC-16/CCITT-FALSE implementation."""

    def test_check_value(self) -> None:
        """Standard check input produces the catalogued value."""
        assert crc16(CRC16_CHECK_INPUT) == CRC16_CHECK_VALUE

    def test_empty_is_initial_register(self) -> None:
        """No input leaves the register at its initial value."""
        assert crc16(b"") == 0xFFFF

    def test_range_arguments(self) -> None:
        """start/end select the covered slice."""
        data = b"xx" + CRC16_CHECK_INPUT + b"yy"
        assert crc16(data, 2, 2 + len(CRC16_CHECK_INPUT)) == CRC16_CHECK_VALUE
        assert crc16(data, 2, 2) == 0xFFFF

    def test_deterministic(self) -> None:
        """Same input always produces same output."""
        data = bytes(range(256))
        assert crc16(data) == crc16(data)

    def test_single_bit_flips_change_result(self) -> None:
        """Every single-bit flip in the covered range changes the checksum."""
        data = bytearray(b"nesigner frame header and payload")
        original = crc16(data)

        for i in range(len(data)):
            for bit in range(8):
                data[i] ^= 1 << bit
                assert crc16(data) != original, f"flip at byte {i} bit {bit} undetected"
                data[i] ^= 1 << bit

    def test_result_is_16_bit(self) -> None:
        """Result always fits in 16 bits."""
        for n in range(64):
            assert 0 <= crc16(bytes([n]) * n) <= 0xFFFF
