"""On-disk linear directory entries and the blocks that hold them."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from extkit.checksum import metadata_checksum

ENTRY_HEADER_SIZE = 8
"""Size of the fixed part of a directory entry (inode, rec_len, name_len, type)."""

TAIL_SIZE = 12
"""Size of the checksum tail record at the end of a leaf block."""

DIRENTRY_DIR_CSUM = 0xDE
"""File-type byte that marks the checksum tail record."""

_ENTRY = struct.Struct("<IHBB")
_TAIL = struct.Struct("<IHBBI")

NameLike = Union[str, bytes, bytearray, memoryview]


class FileType(enum.IntEnum):
    """File type codes stored in directory entries."""

    UNKNOWN = 0
    REG_FILE = 1
    DIR = 2
    CHRDEV = 3
    BLKDEV = 4
    FIFO = 5
    SOCK = 6
    SYMLINK = 7


@dataclass(frozen=True)
class FsGeometry:
    """The superblock properties that shape directory blocks."""

    block_size: int = 4096
    rev_level: int = 1
    minor_rev_level: int = 0
    metadata_csum: bool = False
    uuid: bytes = bytes(16)

    def __post_init__(self) -> None:
        size = self.block_size
        if size < 1024 or size & (size - 1):
            raise ValueError(f"invalid block size: {size}")
        if len(self.uuid) != 16:
            raise ValueError("uuid must be 16 bytes")
        object.__setattr__(self, "uuid", bytes(self.uuid))

    def has_file_type(self) -> bool:
        """True when entries carry a file-type byte instead of a high name-length byte."""
        return self.rev_level > 0 or self.minor_rev_level >= 5


@dataclass(frozen=True)
class DirEntry:
    """A decoded directory record."""

    offset: int
    inode: int
    entry_len: int
    name_len: int
    inode_type: int
    name: bytes

    @property
    def in_use(self) -> bool:
        return self.inode != 0


def _encode_name(name: NameLike) -> bytes:
    if isinstance(name, str):
        return name.encode("utf-8")
    if isinstance(name, (bytes, bytearray, memoryview)):
        return bytes(name)
    raise TypeError(f"name must be str or bytes, got {type(name).__name__}")


def _check_uint(value: int, bits: int, what: str) -> int:
    value = int(value)
    if not 0 <= value < (1 << bits):
        raise ValueError(f"{what} out of {bits}-bit range: {value}")
    return value


def _align4(value: int) -> int:
    return (value + 3) & ~3


class DirBlock:
    """A single linear directory leaf block.

    A ``bytearray`` passed in is used in place, so changes are visible to its
    owner. Checksums are not refreshed implicitly; callers that modify the
    block call :meth:`set_checksum` with the owning inode's number and
    generation.
    """

    def __init__(self, geometry: FsGeometry,
                 data: Optional[Union[bytes, bytearray]] = None) -> None:
        if data is None:
            data = bytearray(geometry.block_size)
        elif not isinstance(data, bytearray):
            data = bytearray(data)
        if len(data) != geometry.block_size:
            raise ValueError(
                f"block holds {len(data)} bytes, expected {geometry.block_size}")
        self.geometry = geometry
        self.data = data

    @property
    def block_size(self) -> int:
        return self.geometry.block_size

    def _check_header(self, offset: int) -> None:
        if offset < 0 or offset + ENTRY_HEADER_SIZE > self.block_size:
            raise ValueError(f"entry header at {offset} exceeds the block")

    def _old_format(self) -> bool:
        return not self.geometry.has_file_type()

    # --- field accessors -------------------------------------------------

    def entry_inode(self, offset: int) -> int:
        self._check_header(offset)
        return struct.unpack_from("<I", self.data, offset)[0]

    def set_entry_inode(self, offset: int, inode: int) -> None:
        self._check_header(offset)
        struct.pack_into("<I", self.data, offset, _check_uint(inode, 32, "inode"))

    def entry_len(self, offset: int) -> int:
        self._check_header(offset)
        return struct.unpack_from("<H", self.data, offset + 4)[0]

    def set_entry_len(self, offset: int, length: int) -> None:
        self._check_header(offset)
        struct.pack_into("<H", self.data, offset + 4,
                         _check_uint(length, 16, "entry length"))

    def name_len(self, offset: int) -> int:
        self._check_header(offset)
        value = self.data[offset + 6]
        if self._old_format():
            value |= self.data[offset + 7] << 8
        return value

    def set_name_len(self, offset: int, length: int) -> None:
        self._check_header(offset)
        bits = 16 if self._old_format() else 8
        length = _check_uint(length, bits, "name length")
        self.data[offset + 6] = length & 0xFF
        if self._old_format():
            self.data[offset + 7] = length >> 8

    def inode_type(self, offset: int) -> int:
        self._check_header(offset)
        if self.geometry.has_file_type():
            return self.data[offset + 7]
        return FileType.UNKNOWN

    def set_inode_type(self, offset: int, file_type: int) -> None:
        self._check_header(offset)
        if self.geometry.has_file_type():
            self.data[offset + 7] = _check_uint(file_type, 8, "file type")

    def entry_name(self, offset: int) -> bytes:
        start = offset + ENTRY_HEADER_SIZE
        length = self.name_len(offset)
        if start + length > self.block_size:
            raise ValueError(f"name of entry at {offset} exceeds the block")
        return bytes(self.data[start:start + length])

    # --- whole entries ---------------------------------------------------

    def _read(self, offset: int) -> DirEntry:
        return DirEntry(
            offset=offset,
            inode=self.entry_inode(offset),
            entry_len=self.entry_len(offset),
            name_len=self.name_len(offset),
            inode_type=self.inode_type(offset),
            name=self.entry_name(offset),
        )

    def entry(self, offset: int) -> DirEntry:
        """Decode the entry at *offset*, raising ValueError if it is malformed."""
        if offset < 0 or offset % 4:
            raise ValueError(f"misaligned entry offset: {offset}")
        if offset > self.block_size - ENTRY_HEADER_SIZE:
            raise ValueError(f"entry at {offset} overflows the block")
        length = self.entry_len(offset)
        if offset + length > self.block_size:
            raise ValueError(f"entry at {offset} overflows the block")
        if self.name_len(offset) > length - ENTRY_HEADER_SIZE:
            raise ValueError(f"name of entry at {offset} is too long")
        return self._read(offset)

    def entries(self) -> Iterator[DirEntry]:
        """Yield every record in the block in order, used or not."""
        offset = 0
        while offset < self.block_size:
            record = self.entry(offset)
            yield record
            offset += record.entry_len

    def write_entry(self, offset: int, entry_len: int, inode: int,
                    file_type: int, name: NameLike) -> None:
        """Write a complete entry of *entry_len* bytes at *offset*."""
        raw = _encode_name(name)
        if entry_len > self.block_size:
            raise ValueError(f"entry length {entry_len} exceeds the block size")
        if entry_len < ENTRY_HEADER_SIZE + len(raw):
            raise ValueError(f"entry length {entry_len} cannot hold the name")
        if offset < 0 or offset + ENTRY_HEADER_SIZE + len(raw) > self.block_size:
            raise ValueError(f"entry at {offset} does not fit in the block")
        self.set_inode_type(offset, file_type)
        self.set_entry_inode(offset, inode)
        self.set_entry_len(offset, entry_len)
        self.set_name_len(offset, len(raw))
        start = offset + ENTRY_HEADER_SIZE
        self.data[start:start + len(raw)] = raw

    def try_insert_entry(self, inode: int, file_type: int,
                         name: NameLike) -> Optional[int]:
        """Place a new entry in free space; return its offset, or None if full."""
        raw = _encode_name(name)
        required = _align4(ENTRY_HEADER_SIZE + len(raw))
        offset = 0
        while offset < self.block_size:
            current = self.entry_inode(offset)
            rec_len = self.entry_len(offset)
            itype = self.inode_type(offset)

            if current == 0 and itype != DIRENTRY_DIR_CSUM and rec_len >= required:
                self.write_entry(offset, rec_len, inode, file_type, raw)
                return offset

            if current != 0:
                used = _align4(ENTRY_HEADER_SIZE + self.name_len(offset))
                free_space = rec_len - used
                if free_space >= required:
                    new_offset = offset + used
                    self.set_entry_len(offset, used)
                    self.write_entry(new_offset, free_space, inode, file_type, raw)
                    return new_offset

            if rec_len == 0:
                raise ValueError(f"corrupted entry at {offset}: zero length")
            offset += rec_len
        return None

    def find_entry(self, name: NameLike) -> Optional[DirEntry]:
        """Return the used entry called *name*, or None if the block has none."""
        raw = _encode_name(name)
        limit = self.block_size
        offset = 0
        while offset < limit:
            if offset + len(raw) > limit or offset + ENTRY_HEADER_SIZE > limit:
                break
            if self.entry_inode(offset) != 0 and self.name_len(offset) == len(raw):
                start = offset + ENTRY_HEADER_SIZE
                if bytes(self.data[start:start + len(raw)]) == raw:
                    return self._read(offset)
            rec_len = self.entry_len(offset)
            if rec_len == 0:
                raise ValueError(f"corrupted entry at {offset}: zero length")
            offset += rec_len
        return None

    # --- checksum tail ---------------------------------------------------

    def tail_offset(self) -> Optional[int]:
        """Offset of a well-formed checksum tail, or None if there is none."""
        offset = self.block_size - TAIL_SIZE
        zero1, rec_len, zero2, ft, _ = _TAIL.unpack_from(self.data, offset)
        if zero1 or zero2:
            return None
        if rec_len != TAIL_SIZE:
            return None
        if ft != DIRENTRY_DIR_CSUM:
            return None
        return offset

    def init_tail(self) -> None:
        """Write an empty checksum tail at the end of the block."""
        _TAIL.pack_into(self.data, self.block_size - TAIL_SIZE,
                        0, TAIL_SIZE, 0, DIRENTRY_DIR_CSUM, 0)

    def compute_checksum(self, inode_index: int, generation: int) -> int:
        """Checksum of the entries preceding the tail."""
        offset = self.tail_offset()
        if offset is None:
            raise ValueError("block has no checksum tail")
        return metadata_checksum(self.geometry.uuid, inode_index, generation,
                                 self.data[:offset])

    def verify_checksum(self, inode_index: int, generation: int) -> bool:
        """True if checksums are disabled or the stored one matches."""
        if not self.geometry.metadata_csum:
            return True
        offset = self.tail_offset()
        if offset is None:
            return False
        stored = struct.unpack_from("<I", self.data, offset + 8)[0]
        return stored == self.compute_checksum(inode_index, generation)

    def set_checksum(self, inode_index: int, generation: int) -> None:
        """Store a fresh checksum in the tail, if checksums are enabled."""
        if not self.geometry.metadata_csum:
            return
        offset = self.tail_offset()
        if offset is None:
            return
        struct.pack_into("<I", self.data, offset + 8,
                         self.compute_checksum(inode_index, generation))