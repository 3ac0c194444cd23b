"""CRC-32 checksums over exact byte ranges."""

import zlib
from typing import Optional, Union

Buffer = Union[bytes, bytearray, memoryview]


def crc32(buffer: Buffer, offset: int = 0, length: Optional[int] = None) -> int:
    """Return the unsigned CRC-32 of ``buffer[offset:offset + length]``.

    Args:
        buffer: Bytes-like object holding the data
        offset: Start of the range
        length: Number of bytes; defaults to the rest of the buffer

    Returns:
        Checksum in ``[0, 2**32)``, matching the value the service echoes back
    """
    view = memoryview(buffer)
    if length is None:
        length = len(view) - offset
    if offset < 0 or length < 0 or offset + length > len(view):
        raise ValueError(
            f"Range [{offset}, {offset + length}) outside buffer of {len(view)} bytes"
        )
    return zlib.crc32(view[offset : offset + length]) & 0xFFFFFFFF

