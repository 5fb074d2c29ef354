"""Linear (unindexed) directories made of directory leaf blocks."""

from __future__ import annotations

import errno
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Union

from extkit.debug import DBG_WARN, DebugFlag, dbg
from extkit.dirent import (
    TAIL_SIZE,
    DirBlock,
    DirEntry,
    FileType,
    FsGeometry,
    NameLike,
)


@dataclass(frozen=True)
class SearchResult:
    """Where a named entry was found: the logical block and the entry itself."""

    iblock: int
    block: DirBlock
    entry: DirEntry


class Directory:
    """A directory whose data is a sequence of linear leaf blocks.

    Blocks are held in memory as ``bytearray`` objects. Every block that is
    modified gets a fresh checksum when the geometry enables metadata
    checksums.
    """

    def __init__(self, geometry: FsGeometry, inode_index: int = 2,
                 generation: int = 0,
                 blocks: Optional[Iterable[Union[bytes, bytearray]]] = None,
                 is_directory: bool = True) -> None:
        self.geometry = geometry
        self.inode_index = inode_index
        self.generation = generation
        self.is_directory = is_directory
        self._blocks: list[bytearray] = []
        for raw in blocks or ():
            data = bytearray(raw)
            if len(data) != geometry.block_size:
                raise ValueError(
                    f"block holds {len(data)} bytes, expected {geometry.block_size}")
            self._blocks.append(data)

    @property
    def block_count(self) -> int:
        return len(self._blocks)

    def size(self) -> int:
        """Size of the directory in bytes."""
        return len(self._blocks) * self.geometry.block_size

    def block(self, iblock: int) -> DirBlock:
        """Leaf block number *iblock*, viewing the stored bytes in place."""
        if not 0 <= iblock < len(self._blocks):
            raise IndexError(f"directory has no block {iblock}")
        return DirBlock(self.geometry, self._blocks[iblock])

    def append_block(self) -> tuple[int, DirBlock]:
        """Add a zero-filled block; return its number and a view of it."""
        self._blocks.append(bytearray(self.geometry.block_size))
        iblock = len(self._blocks) - 1
        return iblock, self.block(iblock)

    def _verify(self, iblock: int, block: DirBlock) -> None:
        if not block.verify_checksum(self.inode_index, self.generation):
            dbg(DebugFlag.DIR,
                f"{DBG_WARN}Leaf block checksum failed."
                f"Inode: {self.inode_index}, Block: {iblock}\n")

    def _seal(self, block: DirBlock) -> None:
        block.set_checksum(self.inode_index, self.generation)

    def iter_entries(self, pos: int = 0) -> Iterator[tuple[int, DirEntry]]:
        """Yield ``(position, entry)`` for every used entry from byte *pos* on.

        Raises OSError with EIO when a record is misaligned or overflows
        its block.
        """
        block_size = self.geometry.block_size
        size = self.size()
        while pos < size:
            block = self.block(pos // block_size)
            try:
                entry = block.entry(pos % block_size)
            except ValueError as exc:
                raise OSError(errno.EIO, f"corrupted directory entry at {pos}") from exc
            if entry.inode != 0:
                yield pos, entry
            pos += entry.entry_len

    def add_entry(self, name: NameLike, inode: int,
                  file_type: int = FileType.UNKNOWN) -> tuple[int, int]:
        """Add an entry; return the logical block and offset it was written to."""
        for iblock in range(len(self._blocks)):
            block = self.block(iblock)
            self._verify(iblock, block)
            offset = block.try_insert_entry(inode, file_type, name)
            if offset is not None:
                self._seal(block)
                return iblock, offset

        iblock, block = self.append_block()
        block_size = self.geometry.block_size
        if self.geometry.metadata_csum:
            block.write_entry(0, block_size - TAIL_SIZE, inode, file_type, name)
            block.init_tail()
        else:
            block.write_entry(0, block_size, inode, file_type, name)
        self._seal(block)
        return iblock, 0

    def find_entry(self, name: NameLike) -> SearchResult:
        """Locate the used entry called *name*; raise FileNotFoundError if absent."""
        for iblock in range(len(self._blocks)):
            block = self.block(iblock)
            self._verify(iblock, block)
            try:
                found = block.find_entry(name)
            except ValueError:
                # A corrupted block is passed over like one without the name.
                found = None
            if found is not None:
                return SearchResult(iblock, block, found)
        raise FileNotFoundError(errno.ENOENT, "no such directory entry", _display(name))

    def remove_entry(self, name: NameLike) -> None:
        """Remove the entry called *name*, merging its space into its predecessor."""
        if not self.is_directory:
            raise NotADirectoryError(errno.ENOTDIR, "not a directory")
        result = self.find_entry(name)
        block = result.block
        pos = result.entry.offset
        block.set_entry_inode(pos, 0)

        if pos != 0:
            offset = 0
            de_len = block.entry_len(offset)
            while offset + de_len < pos:
                if de_len == 0:
                    raise OSError(errno.EIO, f"corrupted directory entry at {offset}")
                offset += de_len
                de_len = block.entry_len(offset)
            if offset + de_len != pos:
                raise OSError(errno.EIO, "directory entry chain does not reach the entry")
            block.set_entry_len(offset, de_len + block.entry_len(pos))

        self._seal(block)


def _display(name: NameLike) -> str:
    if isinstance(name, str):
        return name
    return bytes(name).decode("utf-8", errors="replace")