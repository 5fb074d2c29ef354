"""Block mapping, hole punching and extent splitting on an extent tree."""

from __future__ import annotations

import errno

from extkit.debug import DebugFlag, dbg
from extkit.extent_format import (
    ENTRY_SIZE,
    EXT_MARK_UNWRIT1,
    EXT_MARK_UNWRIT2,
    EXT_MAX_BLOCKS,
    EXT_NO_COMBINE,
    HEADER_SIZE,
    Extent,
    read_extent,
    read_header,
    read_index,
    space_root,
    write_extent,
    write_header,
)
from extkit.extent_tree import ExtentTree, PathLevel


def _eio(message: str) -> OSError:
    return OSError(errno.EIO, message)


def _in_range(block: int, first: int, length: int) -> bool:
    return first <= block <= first + length - 1


def _shift_entries(data: bytearray, dst: int, src: int, count: int) -> None:
    if count <= 0 or dst == src:
        return
    size = ENTRY_SIZE * count
    source = HEADER_SIZE + ENTRY_SIZE * src
    target = HEADER_SIZE + ENTRY_SIZE * dst
    data[target:target + size] = data[source:source + size]


def _current_extent(path: list[PathLevel]) -> tuple[PathLevel, Extent]:
    leaf = path[-1]
    if leaf.extent is None:
        raise _eio("path does not point at an extent")
    return leaf, read_extent(leaf.data, leaf.extent)


def next_allocated_block(path: list[PathLevel]) -> int:
    """First logical block mapped after the path's position, or EXT_MAX_BLOCKS."""
    last = len(path) - 1
    if last == 0 and path[0].extent is None:
        return EXT_MAX_BLOCKS
    for pos in range(last, -1, -1):
        level = path[pos]
        count = level.header.entries_count
        if pos == last:
            if level.extent is not None and level.extent != count - 1:
                return read_extent(level.data, level.extent + 1).first_block
        elif level.index is not None and level.index != count - 1:
            return read_index(level.data, level.index + 1).first_block
    return EXT_MAX_BLOCKS


def split_extent_at(tree: ExtentTree, path: list[PathLevel], split: int,
                    split_flag: int) -> list[PathLevel]:
    """Split the path's current extent at logical block *split*.

    EXT_MARK_UNWRIT1 / EXT_MARK_UNWRIT2 decide whether the left and right
    halves are marked unwritten. Returns the path after the split.
    """
    leaf, ex = _current_extent(path)
    ee_block = ex.first_block
    ee_len = ex.actual_len()
    if not ee_block <= split < ee_block + ee_len:
        raise ValueError(f"split point {split} lies outside the extent")
    newblock = split - ee_block + ex.start

    if split == ee_block:
        if split_flag & EXT_MARK_UNWRIT2:
            ex.mark_unwritten()
        else:
            ex.mark_initialized()
        write_extent(leaf.data, leaf.extent, ex)
        tree._dirty(leaf)
        return path

    original = ex.block_count
    position = leaf.extent
    ex.block_count = split - ee_block
    if split_flag & EXT_MARK_UNWRIT1:
        ex.mark_unwritten()
    write_extent(leaf.data, position, ex)
    tree._dirty(leaf)

    newex = Extent(split, ee_len - (split - ee_block), newblock)
    if split_flag & EXT_MARK_UNWRIT2:
        newex.mark_unwritten()
    try:
        return tree.insert_extent(path, newex, EXT_NO_COMBINE)
    except Exception:
        ex.block_count = original
        write_extent(leaf.data, position, ex)
        tree._dirty(leaf)
        raise


def convert_to_initialized(tree: ExtentTree, path: list[PathLevel], split: int,
                           blocks: int) -> list[PathLevel]:
    """Mark *blocks* blocks from *split* of an unwritten extent as written."""
    _, ex = _current_extent(path)
    if ex.first_block > split:
        raise ValueError(f"block {split} precedes the extent")
    end = ex.first_block + ex.actual_len()
    if split + blocks == end:
        return split_extent_at(tree, path, split, EXT_MARK_UNWRIT1)
    if ex.first_block == split:
        return split_extent_at(tree, path, split + blocks, EXT_MARK_UNWRIT2)
    path = split_extent_at(tree, path, split + blocks,
                           EXT_MARK_UNWRIT1 | EXT_MARK_UNWRIT2)
    path = tree.find_extent(split)
    return split_extent_at(tree, path, split, EXT_MARK_UNWRIT1)


def get_blocks(tree: ExtentTree, iblock: int, max_blocks: int,
               create: bool = False) -> tuple[int, int]:
    """Map logical *iblock*; return ``(physical block, contiguous count)``.

    Returns ``(0, 0)`` for a hole when *create* is false. With *create*,
    holes get a freshly allocated block and unwritten blocks are zeroed and
    marked written.
    """
    path = tree.find_extent(iblock)
    leaf = path[-1]
    if leaf.extent is not None:
        ex = read_extent(leaf.data, leaf.extent)
        ee_block, ee_len = ex.first_block, ex.actual_len()
        if _in_range(iblock, ee_block, ee_len):
            allocated = ee_len - (iblock - ee_block)
            if not ex.is_unwritten():
                return iblock - ee_block + ex.start, min(allocated, max_blocks)
            if not create:
                return 0, min(allocated, max_blocks)
            zero_range = min(allocated, max_blocks)
            newblock = iblock - ee_block + ex.start
            for block in range(newblock, newblock + zero_range):
                tree.store.zero(block)
            convert_to_initialized(tree, path, iblock, zero_range)
            return newblock, min(allocated, max_blocks)

    if not create:
        return 0, 0

    allocated = min(next_allocated_block(path) - iblock, max_blocks)
    goal = tree.find_goal(path, iblock)
    newblock = tree.store.allocate(goal)
    allocated = 1

    newex = Extent(iblock, allocated, newblock)
    try:
        tree.insert_extent(path, newex, 0)
    except Exception:
        tree.store.free(newex.start, newex.block_count)
        raise
    return newex.start, min(allocated, max_blocks)


def _remove_blocks(tree: ExtentTree, ex: Extent, first: int, last: int) -> None:
    length = last - first + 1
    start = ex.start + (first - ex.first_block)
    dbg(DebugFlag.EXTENT, f"Freeing {first} at {start}, {length}\n")
    tree.store.free(start, length)


def _remove_idx(tree: ExtentTree, path: list[PathLevel], i: int) -> None:
    level = path[i]
    leaf_block = read_index(level.data, level.index).leaf
    header = level.header
    last = header.entries_count - 1
    if level.index != last:
        _shift_entries(level.data, level.index, level.index + 1, last - level.index)
    header.entries_count -= 1
    write_header(level.data, header)
    tree._dirty(level)

    dbg(DebugFlag.EXTENT, f"IDX: Freeing at {leaf_block}, 1\n")
    tree.store.free(leaf_block)

    while i > 0:
        if path[i].index != 0:
            break
        first = read_index(path[i].data, path[i].index).first_block
        tree._set_index_first(path[i - 1], first)
        i -= 1


def _remove_leaf(tree: ExtentTree, path: list[PathLevel], start: int, end: int) -> None:
    depth = tree.depth()
    leaf = path[depth]
    data = leaf.data
    header = leaf.header
    last = header.entries_count - 1
    pos = leaf.extent if leaf.extent is not None else 0
    start_pos = pos
    tail_pos = None
    new_entries = header.entries_count

    while pos <= last:
        ex = read_extent(data, pos)
        if ex.first_block > end:
            break
        new_len = 0
        first = new_start = ex.first_block
        length = ex.actual_len()
        newblock = ex.start
        if first < start:
            length -= start - first
            new_len = start - first
            first = start
            start_pos += 1
        elif first + length - 1 > end:
            new_len = first + length - 1 - end
            length -= new_len
            new_start = end + 1
            newblock += end + 1 - first
            tail_pos = pos

        _remove_blocks(tree, ex, first, first + length - 1)
        unwritten = ex.is_unwritten()
        ex.first_block = new_start
        if not new_len:
            new_entries -= 1
        else:
            ex.block_count = new_len
            ex.start = newblock
            if unwritten:
                ex.mark_unwritten()
        write_extent(data, pos, ex)
        pos += 1

    if tail_pos is None:
        tail_pos = pos
    if tail_pos <= last:
        _shift_entries(data, start_pos, tail_pos, last - tail_pos + 1)

    header = read_header(data)
    header.entries_count = new_entries
    write_header(data, header)
    tree._dirty(leaf)

    if leaf.extent == 0 and new_entries:
        tree._correct_indexes(path)

    if new_entries == 0 and leaf.block:
        _remove_idx(tree, path, depth - 1)
    elif depth > 0:
        path[depth - 1].index += 1


def _more_to_remove(level: PathLevel, end: int) -> bool:
    count = level.header.entries_count
    if not count:
        return False
    if level.index is None or level.index > count - 1:
        return False
    return read_index(level.data, level.index).first_block <= end


def remove_space(tree: ExtentTree, start: int, end: int) -> None:
    """Unmap logical blocks *start* through *end* (inclusive), freeing them.

    Nothing is removed unless *start* falls inside a mapped extent.
    """
    if start > end:
        raise ValueError(f"empty range: {start}..{end}")
    depth = tree.depth()
    path = tree.find_extent(start)
    leaf = path[depth]
    if leaf.extent is None:
        return
    ex = read_extent(leaf.data, leaf.extent)
    if not _in_range(start, ex.first_block, ex.actual_len()):
        return

    ee_block, ee_len = ex.first_block, ex.actual_len()
    if ee_block < start and end < ee_block + ee_len - 1:
        unwritten = ex.is_unwritten()
        newblock = end + 1 - ee_block + ex.start
        original = Extent(ex.first_block, ex.block_count, ex.start)
        ex.block_count = start - ee_block
        if unwritten:
            ex.mark_unwritten()
        write_extent(leaf.data, leaf.extent, ex)
        tree._dirty(leaf)

        newex = Extent(end + 1, ee_block + ee_len - 1 - end, newblock)
        if unwritten:
            newex.mark_unwritten()
        tree.insert_extent(path, newex, 0)
        _remove_blocks(tree, original, start, end)
        return

    i = depth
    while i >= 0:
        level = path[i]
        if i == depth:
            header = level.header
            if header.entries_count <= 0:
                raise _eio("empty extent leaf")
            first_ex = read_extent(level.data, 0)
            last_ex = read_extent(level.data, header.entries_count - 1)
            leaf_from = max(first_ex.first_block, start)
            leaf_to = min(last_ex.first_block + last_ex.actual_len() - 1, end)
            _remove_leaf(tree, path, leaf_from, leaf_to)
            i -= 1
            continue

        if _more_to_remove(level, end):
            child = read_index(level.data, level.index).leaf
            child_depth = depth - i - 1
            data = tree._read_node(child, child_depth)
            level.p_block = child
            if i + 1 == depth:
                path[i + 1] = PathLevel(data, child, child_depth, 0, None, 0)
            else:
                path[i + 1] = PathLevel(data, child, child_depth, 0, 0, None)
            i += 1
        else:
            if i > 0:
                if not level.header.entries_count:
                    _remove_idx(tree, path, i - 1)
                else:
                    path[i - 1].index += 1
            i -= 1

    root_header = read_header(tree.root)
    if root_header.entries_count == 0:
        root_header.depth = 0
        root_header.max_entries_count = space_root()
        write_header(tree.root, root_header)
        tree.dirty = True