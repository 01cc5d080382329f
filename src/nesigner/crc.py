"""CRC-16 checksum used by the nesigner frame codec.

CRC-16/CCITT-FALSE: initial register 0xFFFF, polynomial 0x1021, MSB-first,
no reflection and no final XOR.
"""

from typing import Optional

CRC16_INIT = 0xFFFF
CRC16_POLY = 0x1021


def crc16(data: bytes, start: int = 0, end: Optional[int] = None) -> int:
    """Compute the CRC-16 of ``data[start:end]``.

    Args:
        data: Bytes to checksum.
        start: Index of the first covered byte.
        end: Index one past the last covered byte (default: end of data).

    Returns:
        16-bit checksum.
    """
    if end is None:
        end = len(data)

    crc = CRC16_INIT
    for i in range(start, end):
        crc ^= data[i] << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ CRC16_POLY) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc
