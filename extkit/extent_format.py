"""On-disk layout of extent tree nodes and a simple in-memory block store."""

from __future__ import annotations

import errno
import struct
from dataclasses import dataclass
from typing import Union

from extkit.checksum import metadata_checksum
from extkit.debug import DBG_WARN, DebugFlag, dbg
from extkit.dirent import FsGeometry

BytesLike = Union[bytes, bytearray, memoryview]

EXTENT_MAGIC = 0xF30A
"""Magic number at the start of every extent node."""

HEADER_SIZE = 12
ENTRY_SIZE = 12
"""Both leaf extents and index entries occupy 12 bytes."""

TAIL_SIZE = 4
INODE_BLOCKS_SIZE = 60
"""Bytes of the i-node's block map area that holds the tree root."""

EXT_INIT_MAX_LEN = 1 << 15
EXT_UNWRITTEN_MAX_LEN = EXT_INIT_MAX_LEN - 1
EXT_MAX_BLOCKS = 0xFFFFFFFF

# Flags used when splitting and inserting extents.
EXT_MARK_UNWRIT1 = 0x02
EXT_MARK_UNWRIT2 = 0x04
EXT_DATA_VALID1 = 0x08
EXT_DATA_VALID2 = 0x10
EXT_NO_COMBINE = 0x20

_HEADER = struct.Struct("<HHHHI")
_EXTENT = struct.Struct("<IHHI")
_INDEX = struct.Struct("<IIH")
_TAIL = struct.Struct("<I")


def _check_uint(value: int, bits: int, what: str) -> int:
    value = int(value)
    if not 0 <= value < (1 << bits):
        raise ValueError(f"{what} out of {bits}-bit range: {value}")
    return value


@dataclass
class ExtentHeader:
    """Header present at the start of every node, including the root."""

    magic: int = EXTENT_MAGIC
    entries_count: int = 0
    max_entries_count: int = 0
    depth: int = 0
    generation: int = 0


@dataclass
class Extent:
    """A leaf record mapping logical blocks to a run of physical blocks.

    ``block_count`` is the raw on-disk length field: values above 0x8000
    mark an unwritten extent whose real length is ``block_count - 0x8000``.
    """

    first_block: int = 0
    block_count: int = 0
    start: int = 0

    def actual_len(self) -> int:
        """Number of blocks covered, regardless of the unwritten mark."""
        if self.block_count <= EXT_INIT_MAX_LEN:
            return self.block_count
        return self.block_count - EXT_INIT_MAX_LEN

    def is_unwritten(self) -> bool:
        """True for preallocated extents; a raw length of 0x8000 is written."""
        return self.block_count > EXT_INIT_MAX_LEN

    def mark_unwritten(self) -> None:
        self.block_count = (self.block_count | EXT_INIT_MAX_LEN) & 0xFFFF

    def mark_initialized(self) -> None:
        self.block_count = self.actual_len()


@dataclass
class ExtentIndex:
    """An interior record pointing at the child node covering ``first_block``."""

    first_block: int = 0
    leaf: int = 0


def _entry_offset(data: BytesLike, position: int) -> int:
    if position < 0:
        raise ValueError(f"negative entry position: {position}")
    offset = HEADER_SIZE + ENTRY_SIZE * position
    if offset + ENTRY_SIZE > len(data):
        raise ValueError(f"entry {position} lies outside the node")
    return offset


def read_header(data: BytesLike) -> ExtentHeader:
    """Decode the node header at the start of *data*."""
    if len(data) < HEADER_SIZE:
        raise ValueError("node too small for an extent header")
    return ExtentHeader(*_HEADER.unpack_from(data, 0))


def write_header(data: bytearray, header: ExtentHeader) -> None:
    """Encode *header* into the start of *data*."""
    if len(data) < HEADER_SIZE:
        raise ValueError("node too small for an extent header")
    _HEADER.pack_into(
        data, 0,
        _check_uint(header.magic, 16, "magic"),
        _check_uint(header.entries_count, 16, "entries count"),
        _check_uint(header.max_entries_count, 16, "max entries count"),
        _check_uint(header.depth, 16, "depth"),
        _check_uint(header.generation, 32, "generation"),
    )


def read_extent(data: BytesLike, position: int) -> Extent:
    """Decode the leaf extent in slot *position* of a node."""
    first, count, hi, lo = _EXTENT.unpack_from(data, _entry_offset(data, position))
    return Extent(first, count, (hi << 32) | lo)


def write_extent(data: bytearray, position: int, extent: Extent) -> None:
    """Encode *extent* into slot *position* of a node."""
    offset = _entry_offset(data, position)
    start = _check_uint(extent.start, 48, "physical block")
    _EXTENT.pack_into(
        data, offset,
        _check_uint(extent.first_block, 32, "logical block"),
        _check_uint(extent.block_count, 16, "block count"),
        start >> 32,
        start & 0xFFFFFFFF,
    )


def read_index(data: BytesLike, position: int) -> ExtentIndex:
    """Decode the index entry in slot *position* of a node."""
    first, lo, hi = _INDEX.unpack_from(data, _entry_offset(data, position))
    return ExtentIndex(first, (hi << 32) | lo)


def write_index(data: bytearray, position: int, index: ExtentIndex) -> None:
    """Encode *index* into slot *position*; the padding field is left as is."""
    offset = _entry_offset(data, position)
    leaf = _check_uint(index.leaf, 48, "leaf block")
    _INDEX.pack_into(
        data, offset,
        _check_uint(index.first_block, 32, "logical block"),
        leaf & 0xFFFFFFFF,
        leaf >> 32,
    )


def space_block(block_size: int) -> int:
    """Leaf extents that fit in a tree block of *block_size* bytes."""
    return (block_size - HEADER_SIZE) // ENTRY_SIZE


def space_block_idx(block_size: int) -> int:
    """Index entries that fit in a tree block of *block_size* bytes."""
    return (block_size - HEADER_SIZE) // ENTRY_SIZE


def space_root() -> int:
    """Leaf extents that fit in the i-node's root."""
    return (INODE_BLOCKS_SIZE - HEADER_SIZE) // ENTRY_SIZE


def space_root_idx() -> int:
    """Index entries that fit in the i-node's root."""
    return (INODE_BLOCKS_SIZE - HEADER_SIZE) // ENTRY_SIZE


def tail_offset(header: ExtentHeader) -> int:
    """Offset of the checksum tail, right after the last possible entry."""
    return HEADER_SIZE + ENTRY_SIZE * header.max_entries_count


def block_checksum(geometry: FsGeometry, inode_index: int, generation: int,
                   data: BytesLike) -> int:
    """Checksum of a tree block up to its tail; 0 when checksums are off."""
    if not geometry.metadata_csum:
        return 0
    offset = tail_offset(read_header(data))
    if offset + TAIL_SIZE > len(data):
        raise ValueError("node has no room for a checksum tail")
    return metadata_checksum(geometry.uuid, inode_index, generation,
                             bytes(data[:offset]))


def check_node(data: BytesLike, depth: int, geometry: FsGeometry,
               inode_index: int, generation: int) -> ExtentHeader:
    """Validate a node read from disk and return its header.

    Raises OSError with EIO when the header is corrupted. A checksum
    mismatch is only reported through the debug channel.
    """
    header = read_header(data)
    if header.magic != EXTENT_MAGIC:
        problem = "invalid magic"
    elif header.depth != depth:
        problem = "unexpected eh_depth"
    elif header.max_entries_count == 0:
        problem = "invalid eh_max"
    elif header.entries_count > header.max_entries_count:
        problem = "invalid eh_entries"
    else:
        problem = None
    if problem is not None:
        dbg(DebugFlag.EXTENT, f"Bad extents B+ tree block: {problem}.\n")
        raise OSError(errno.EIO, f"bad extent tree node: {problem}")

    offset = tail_offset(header)
    if geometry.metadata_csum and offset + TAIL_SIZE <= len(data):
        stored = _TAIL.unpack_from(data, offset)[0]
        if stored != block_checksum(geometry, inode_index, generation, data):
            dbg(DebugFlag.EXTENT,
                f"{DBG_WARN}Extent block checksum failed. Inode: {inode_index}\n")
    return header


class BlockStore:
    """Fixed-size pool of physical blocks with a first-fit allocator.

    Block 0 is never handed out, so 0 can stand for "no block".
    """

    def __init__(self, block_size: int = 4096, block_count: int = 1024) -> None:
        if block_size <= 0:
            raise ValueError(f"invalid block size: {block_size}")
        if block_count < 2:
            raise ValueError("store needs at least two blocks")
        self.block_size = block_size
        self.block_count = block_count
        self._allocated: set[int] = set()
        self._data: dict[int, bytearray] = {}

    @property
    def free_count(self) -> int:
        return self.block_count - 1 - len(self._allocated)

    def _check_range(self, block: int) -> None:
        if not 1 <= block < self.block_count:
            raise ValueError(f"block {block} outside the store")

    def allocate(self, goal: int = 0) -> int:
        """Allocate the first free block at or after *goal*, wrapping around."""
        if not 1 <= goal < self.block_count:
            goal = 1
        for block in (*range(goal, self.block_count), *range(1, goal)):
            if block not in self._allocated:
                self._allocated.add(block)
                self._data[block] = bytearray(self.block_size)
                return block
        raise OSError(errno.ENOSPC, "no free blocks")

    def free(self, block: int, count: int = 1) -> None:
        """Release *count* consecutive blocks starting at *block*."""
        blocks = range(block, block + count)
        for number in blocks:
            self._check_range(number)
            if number not in self._allocated:
                raise ValueError(f"block {number} is not allocated")
        for number in blocks:
            self._allocated.discard(number)
            self._data.pop(number, None)

    def get(self, block: int) -> bytearray:
        """The contents of an allocated block, shared and mutable."""
        self._check_range(block)
        if block not in self._allocated:
            raise ValueError(f"block {block} is not allocated")
        return self._data[block]

    def zero(self, block: int) -> None:
        """Clear an allocated block."""
        data = self.get(block)
        data[:] = bytes(self.block_size)

    def is_allocated(self, block: int) -> bool:
        return block in self._allocated