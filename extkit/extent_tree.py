"""Extent tree lookup, growth and insertion over an in-memory block store."""

from __future__ import annotations

import errno
import struct
from dataclasses import dataclass
from typing import Optional, Union

from extkit.dirent import FsGeometry
from extkit.extent_format import (
    ENTRY_SIZE,
    EXT_INIT_MAX_LEN,
    EXT_NO_COMBINE,
    EXT_UNWRITTEN_MAX_LEN,
    EXTENT_MAGIC,
    HEADER_SIZE,
    INODE_BLOCKS_SIZE,
    TAIL_SIZE,
    BlockStore,
    Extent,
    ExtentHeader,
    ExtentIndex,
    block_checksum,
    check_node,
    read_extent,
    read_header,
    read_index,
    space_block,
    space_block_idx,
    space_root,
    space_root_idx,
    tail_offset,
    write_extent,
    write_header,
    write_index,
)

_TAIL = struct.Struct("<I")


def _eio(message: str) -> OSError:
    return OSError(errno.EIO, message)


@dataclass
class PathLevel:
    """One node on the way from the root to a leaf.

    ``block`` is the physical block holding the node, 0 for the root kept in
    the i-node. ``index`` and ``extent`` are slot positions inside the node.
    """

    data: bytearray
    block: int = 0
    depth: int = 0
    p_block: int = 0
    index: Optional[int] = None
    extent: Optional[int] = None

    @property
    def header(self) -> ExtentHeader:
        return read_header(self.data)

    def has_free_slot(self) -> bool:
        header = self.header
        return header.entries_count < header.max_entries_count


def _set_entries(data: bytearray, count: int) -> None:
    header = read_header(data)
    header.entries_count = count
    write_header(data, header)


def _move_entries(data: bytearray, dst: int, src: int, count: int) -> None:
    if count <= 0:
        return
    size = ENTRY_SIZE * count
    source = HEADER_SIZE + ENTRY_SIZE * src
    target = HEADER_SIZE + ENTRY_SIZE * dst
    if max(source, target) + size > len(data):
        raise _eio("entry move overflows the node")
    data[target:target + size] = data[source:source + size]


def _can_append(ex1: Extent, ex2: Extent) -> bool:
    if ex1.start + ex1.actual_len() != ex2.start:
        return False
    limit = EXT_UNWRITTEN_MAX_LEN if ex1.is_unwritten() else EXT_INIT_MAX_LEN
    if ex1.actual_len() + ex2.actual_len() > limit:
        return False
    return ex1.first_block + ex1.actual_len() == ex2.first_block


def _can_prepend(ex1: Extent, ex2: Extent) -> bool:
    if ex2.start + ex2.actual_len() != ex1.start:
        return False
    limit = EXT_UNWRITTEN_MAX_LEN if ex1.is_unwritten() else EXT_INIT_MAX_LEN
    if ex1.actual_len() + ex2.actual_len() > limit:
        return False
    return ex2.first_block + ex2.actual_len() == ex1.first_block


class ExtentTree:
    """The extent tree of one i-node, rooted in its 60-byte block map area."""

    def __init__(self, store: BlockStore, geometry: Optional[FsGeometry] = None,
                 inode_index: int = 0, generation: int = 0,
                 root: Optional[Union[bytes, bytearray]] = None,
                 default_goal: int = 0) -> None:
        if geometry is None:
            geometry = FsGeometry(block_size=store.block_size)
        if geometry.block_size != store.block_size:
            raise ValueError("geometry and store disagree on the block size")
        self.store = store
        self.geometry = geometry
        self.inode_index = inode_index
        self.generation = generation
        self.default_goal = default_goal
        self.dirty = False
        if root is None:
            self.root = bytearray(INODE_BLOCKS_SIZE)
            self.init()
        else:
            if not isinstance(root, bytearray):
                root = bytearray(root)
            if len(root) != INODE_BLOCKS_SIZE:
                raise ValueError(f"root holds {len(root)} bytes, expected {INODE_BLOCKS_SIZE}")
            self.root = root

    # --- basics ----------------------------------------------------------

    def init(self) -> None:
        """Make the root an empty leaf."""
        write_header(self.root, ExtentHeader(
            magic=EXTENT_MAGIC, entries_count=0,
            max_entries_count=space_root(), depth=0, generation=0))
        self.dirty = True

    def depth(self) -> int:
        """Depth of the tree; 0 when the root is itself a leaf."""
        return read_header(self.root).depth

    def _max_entries(self, depth: int) -> int:
        if depth == self.depth():
            return space_root() if depth == 0 else space_root_idx()
        block_size = self.geometry.block_size
        return space_block(block_size) if depth == 0 else space_block_idx(block_size)

    def _set_checksum(self, data: bytearray) -> None:
        if not self.geometry.metadata_csum:
            return
        offset = tail_offset(read_header(data))
        if offset + TAIL_SIZE > len(data):
            return
        _TAIL.pack_into(data, offset, block_checksum(
            self.geometry, self.inode_index, self.generation, data))

    def _dirty(self, level: PathLevel) -> None:
        if level.block:
            self._set_checksum(level.data)
        else:
            self.dirty = True

    def _read_node(self, block: int, depth: int) -> bytearray:
        try:
            data = self.store.get(block)
        except ValueError as exc:
            raise _eio(f"extent node block {block} is not readable") from exc
        check_node(data, depth, self.geometry, self.inode_index, self.generation)
        return data

    # --- lookup ----------------------------------------------------------

    @staticmethod
    def _search_index(data: bytearray, block: int) -> int:
        count = read_header(data).entries_count
        low, high = 1, count - 1
        while low <= high:
            mid = low + (high - low) // 2
            if block < read_index(data, mid).first_block:
                high = mid - 1
            else:
                low = mid + 1
        return low - 1

    @staticmethod
    def _search_leaf(data: bytearray, block: int) -> Optional[int]:
        count = read_header(data).entries_count
        if count == 0:
            return None
        low, high = 1, count - 1
        while low <= high:
            mid = low + (high - low) // 2
            if block < read_extent(data, mid).first_block:
                high = mid - 1
            else:
                low = mid + 1
        return low - 1

    def find_extent(self, block: int) -> list[PathLevel]:
        """Walk from the root to the leaf whose range is closest to *block*."""
        depth = self.depth()
        level = PathLevel(self.root, 0, depth)
        path = [level]
        for node_depth in range(depth, 0, -1):
            level.index = self._search_index(level.data, block)
            level.p_block = read_index(level.data, level.index).leaf
            level.depth = node_depth
            level.extent = None
            child = level.p_block
            level = PathLevel(self._read_node(child, node_depth - 1), child, node_depth - 1)
            path.append(level)
        level.depth = 0
        level.index = None
        level.extent = self._search_leaf(level.data, block)
        if level.extent is not None:
            level.p_block = read_extent(level.data, level.extent).start
        return path

    def find_goal(self, path: Optional[list[PathLevel]], block: int) -> int:
        """Preferred physical block for logical *block*, near existing data."""
        if path:
            leaf = path[-1]
            if leaf.extent is not None:
                ex = read_extent(leaf.data, leaf.extent)
                if block > ex.first_block:
                    return ex.start + (block - ex.first_block)
                return max(ex.start - (ex.first_block - block), 0)
            if leaf.block:
                return leaf.block
        return self.default_goal

    # --- modification ----------------------------------------------------

    def _correct_indexes(self, path: list[PathLevel]) -> None:
        depth = self.depth()
        leaf = path[depth]
        if leaf.extent is None:
            raise _eio("leaf has no current extent")
        if depth == 0 or leaf.extent != 0:
            return
        border = read_extent(leaf.data, 0).first_block
        k = depth - 1
        self._set_index_first(path[k], border)
        while k > 0:
            k -= 1
            if path[k + 1].index != 0:
                break
            self._set_index_first(path[k], border)

    def _set_index_first(self, level: PathLevel, first_block: int) -> None:
        idx = read_index(level.data, level.index)
        idx.first_block = first_block
        write_index(level.data, level.index, idx)
        self._dirty(level)

    def _insert_index(self, path: list[PathLevel], at: int, insert_index: int,
                      insert_block: int, set_to_ix: bool) -> None:
        curp = path[at]
        header = curp.header
        if curp.index is not None:
            current = read_index(curp.data, curp.index).first_block
            if insert_index == current:
                raise _eio("index for this block already exists")
        if header.entries_count == header.max_entries_count:
            raise _eio("index node is full")
        if curp.index is None:
            pos = 0
            curp.index = 0
        elif insert_index > current:
            pos = curp.index + 1
        else:
            pos = curp.index
        if pos > header.max_entries_count - 1:
            raise _eio("index position beyond the node")
        _move_entries(curp.data, pos + 1, pos, header.entries_count - pos)
        write_index(curp.data, pos, ExtentIndex(insert_index, insert_block))
        _set_entries(curp.data, header.entries_count + 1)
        self._dirty(curp)
        if set_to_ix:
            curp.index = pos
            curp.p_block = insert_block

    def _insert_leaf(self, path: list[PathLevel], at: int, newext: Extent,
                     flags: int) -> bool:
        """Insert into the leaf; return True when the leaf must be split first."""
        curp = path[at]
        current: Optional[Extent] = None
        if curp.extent is not None:
            current = read_extent(curp.data, curp.extent)
            if newext.first_block == current.first_block:
                raise _eio("extent for this block already exists")

        if current is not None and not flags & EXT_NO_COMBINE:
            merged: Optional[Extent] = None
            if _can_append(current, newext):
                merged = Extent(current.first_block,
                                current.actual_len() + newext.actual_len(),
                                current.start)
            elif _can_prepend(current, newext):
                merged = Extent(newext.first_block,
                                current.actual_len() + newext.actual_len(),
                                newext.start)
            if merged is not None:
                if current.is_unwritten():
                    merged.mark_unwritten()
                write_extent(curp.data, curp.extent, merged)
                if merged.first_block != current.first_block:
                    self._correct_indexes(path)
                self._dirty(curp)
                curp.p_block = merged.start
                return False

        header = curp.header
        if header.entries_count == header.max_entries_count:
            return True
        if current is None:
            pos = 0
        elif newext.first_block > current.first_block:
            pos = curp.extent + 1
        else:
            pos = curp.extent
        if pos > header.max_entries_count - 1:
            raise _eio("extent position beyond the node")
        _move_entries(curp.data, pos + 1, pos, header.entries_count - pos)
        write_extent(curp.data, pos, Extent(newext.first_block,
                                            newext.block_count, newext.start))
        _set_entries(curp.data, header.entries_count + 1)
        curp.extent = pos
        self._correct_indexes(path)
        self._dirty(curp)
        curp.p_block = newext.start
        return False

    def _grow_indepth(self) -> None:
        root_header = read_header(self.root)
        if root_header.depth:
            goal = read_index(self.root, 0).leaf
        else:
            goal = self.default_goal
        newblock = self.store.allocate(goal)
        data = self.store.get(newblock)
        data[:INODE_BLOCKS_SIZE] = self.root

        header = read_header(data)
        block_size = self.geometry.block_size
        header.max_entries_count = (space_block_idx(block_size) if root_header.depth
                                    else space_block(block_size))
        header.magic = EXTENT_MAGIC
        write_header(data, header)
        self._set_checksum(data)

        first_block = struct.unpack_from("<I", self.root, HEADER_SIZE)[0]
        write_index(self.root, 0, ExtentIndex(first_block, newblock))
        root_header.entries_count = 1
        if root_header.depth == 0:
            root_header.max_entries_count = space_root_idx()
        root_header.depth += 1
        write_header(self.root, root_header)
        self.dirty = True

    def _split_node(self, path: list[PathLevel], at: int,
                    newext: Extent) -> tuple[list[PathLevel], bool]:
        depth = self.depth()
        if at <= 0:
            raise _eio("cannot split at the root")
        leaf = path[depth]
        leaf_header = leaf.header
        if leaf.extent is not None and leaf.extent != leaf_header.max_entries_count - 1:
            insert_index = read_extent(leaf.data, leaf.extent + 1).first_block
        else:
            insert_index = newext.first_block

        npath: list[Optional[PathLevel]] = [None] * (depth - at + 1)
        allocated: list[int] = []
        try:
            for i in range(depth, at - 1, -1):
                k = i - at
                newblock = self.store.allocate(self.find_goal(path, newext.first_block))
                allocated.append(newblock)
                data = self.store.get(newblock)
                data[:] = bytes(len(data))
                level = path[i]
                if i == depth:
                    start = -1 if level.extent is None else level.extent
                    moved = level.header.max_entries_count - 1 - start
                    write_header(data, ExtentHeader(
                        EXTENT_MAGIC, moved, self._max_entries(0), 0, 0))
                    if moved:
                        size = ENTRY_SIZE * moved
                        src = HEADER_SIZE + ENTRY_SIZE * (start + 1)
                        data[HEADER_SIZE:HEADER_SIZE + size] = level.data[src:src + size]
                        _set_entries(level.data, level.header.entries_count - moved)
                        self._dirty(level)
                        node = PathLevel(data, newblock, 0,
                                         read_extent(data, 0).start, None, 0)
                    else:
                        node = PathLevel(data, newblock, 0, 0, None, None)
                else:
                    moved = level.header.max_entries_count - 1 - level.index
                    node_depth = depth - i
                    write_header(data, ExtentHeader(
                        EXTENT_MAGIC, 1 + moved, self._max_entries(node_depth),
                        node_depth, 0))
                    write_index(data, 0, ExtentIndex(insert_index, npath[k + 1].block))
                    if moved:
                        size = ENTRY_SIZE * moved
                        src = HEADER_SIZE + ENTRY_SIZE * (level.index + 1)
                        dst = HEADER_SIZE + ENTRY_SIZE
                        data[dst:dst + size] = level.data[src:src + size]
                        _set_entries(level.data, level.header.entries_count - moved)
                        self._dirty(level)
                    node = PathLevel(data, newblock, node_depth,
                                     npath[k + 1].block, 0, None)
                npath[k] = node
                self._set_checksum(data)

            right = newext.first_block >= insert_index
            self._insert_index(path, at - 1, insert_index, npath[0].block, right)
        except Exception:
            for block in allocated:
                self.store.free(block)
            raise
        return [level for level in npath if level is not None], right

    def insert_extent(self, path: Optional[list[PathLevel]], newext: Extent,
                      flags: int = 0) -> list[PathLevel]:
        """Insert *newext*, splitting or growing the tree as needed.

        Returns the path to the leaf now holding the extent.
        """
        if path is None:
            path = self.find_extent(newext.first_block)
        while True:
            depth = self.depth()
            if not self._insert_leaf(path, depth, newext, flags):
                return path

            level = 0
            i = depth
            while i >= 0 and not path[i].has_free_slot():
                i -= 1
                level += 1

            if i < 0:
                self._grow_indepth()
                path = self.find_extent(newext.first_block)
                level -= 1
                depth += 1

            at = depth - (level - 1)
            if level > 0:
                npath, right = self._split_node(path, at, newext)
                if right:
                    for k in reversed(range(level)):
                        path[at + k] = npath[k]

    # --- inspection ------------------------------------------------------

    def mapped_extents(self) -> list[Extent]:
        """Every leaf extent of the tree in logical order."""
        out: list[Extent] = []
        self._collect(self.root, self.depth(), out)
        return out

    def _collect(self, data: bytearray, depth: int, out: list[Extent]) -> None:
        count = read_header(data).entries_count
        if depth == 0:
            out.extend(read_extent(data, pos) for pos in range(count))
            return
        for pos in range(count):
            child = read_index(data, pos).leaf
            self._collect(self._read_node(child, depth - 1), depth - 1, out)