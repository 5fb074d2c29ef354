"""Table-driven CRC32 and CRC32C routines used for on-disk metadata."""

from __future__ import annotations

import struct
from typing import Union

BytesLike = Union[bytes, bytearray, memoryview]

CRC32_INIT = 0xFFFFFFFF
"""Seed value used when checksumming filesystem metadata."""

_CRC32_POLY = 0xEDB88320
_CRC32C_POLY = 0x82F63B78
_U32_MAX = 0xFFFFFFFF


def _make_table(poly: int) -> tuple[int, ...]:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            crc = (crc >> 1) ^ poly if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC32_TABLE = _make_table(_CRC32_POLY)
_CRC32C_TABLE = _make_table(_CRC32C_POLY)


def _as_bytes(data: BytesLike) -> bytes:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return memoryview(data).tobytes()
    raise TypeError(f"expected a bytes-like object, got {type(data).__name__}")


def _check_crc(crc: int) -> int:
    if not isinstance(crc, int):
        raise TypeError(f"crc must be an int, got {type(crc).__name__}")
    if not 0 <= crc <= _U32_MAX:
        raise ValueError(f"crc out of 32-bit range: {crc}")
    return crc


def _update(crc: int, data: BytesLike, table: tuple[int, ...]) -> int:
    crc = _check_crc(crc)
    for byte in _as_bytes(data):
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc


def crc32(crc: int, data: BytesLike) -> int:
    """Feed *data* into a running CRC32 value and return the updated value.

    No initial or final inversion is applied; the caller supplies the seed.
    """
    return _update(crc, data, _CRC32_TABLE)


def crc32c(crc: int, data: BytesLike) -> int:
    """Feed *data* into a running CRC32C (Castagnoli) value.

    No initial or final inversion is applied; the caller supplies the seed.
    """
    return _update(crc, data, _CRC32C_TABLE)


def _le32(value: int, what: str) -> bytes:
    if not isinstance(value, int):
        raise TypeError(f"{what} must be an int, got {type(value).__name__}")
    if not 0 <= value <= _U32_MAX:
        raise ValueError(f"{what} out of 32-bit range: {value}")
    return struct.pack("<I", value)


def metadata_checksum(uuid: BytesLike, inode_index: int, generation: int,
                      *args: BytesLike) -> int:
    """CRC32C over fs uuid, inode number, inode generation and then *args*.

    This is the common prefix of every per-inode metadata checksum: the
    uuid, the little-endian inode number and generation, followed by the
    metadata bytes themselves.
    """
    csum = crc32c(CRC32_INIT, uuid)
    csum = crc32c(csum, _le32(inode_index, "inode_index"))
    csum = crc32c(csum, _le32(generation, "generation"))
    for chunk in args:
        csum = crc32c(csum, chunk)
    return csum