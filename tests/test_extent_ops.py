import errno

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from extkit.extent_format import (
    EXT_MARK_UNWRIT1,
    EXT_MARK_UNWRIT2,
    EXT_MAX_BLOCKS,
    BlockStore,
    Extent,
)
from extkit.extent_ops import (
    convert_to_initialized,
    get_blocks,
    next_allocated_block,
    remove_space,
    split_extent_at,
)
from extkit.extent_tree import ExtentTree


def make_tree(blocks=512):
    store = BlockStore(block_size=1024, block_count=blocks)
    return ExtentTree(store)


def fill(tree, logical_blocks):
    return {lb: get_blocks(tree, lb, 1, True)[0] for lb in logical_blocks}


def unwritten_tree(length=4):
    tree = make_tree()
    first = tree.store.allocate()
    for _ in range(length - 1):
        tree.store.allocate()
    ex = Extent(0, length, first)
    ex.mark_unwritten()
    tree.insert_extent(None, ex)
    return tree, first


def layout(tree):
    return [(e.first_block, e.actual_len(), e.is_unwritten())
            for e in tree.mapped_extents()]


def test_hole_without_create_is_unmapped():
    tree = make_tree()
    assert get_blocks(tree, 7, 4, False) == (0, 0)


def test_create_allocates_and_maps():
    tree = make_tree()
    pblock, count = get_blocks(tree, 5, 8, True)
    assert count == 1
    assert tree.store.is_allocated(pblock)
    assert get_blocks(tree, 5, 1, False) == (pblock, 1)
    assert [(e.first_block, e.start) for e in tree.mapped_extents()] == [(5, pblock)]


def test_sequential_blocks_merge_into_one_extent():
    tree = make_tree()
    mapping = fill(tree, range(10))
    extents = tree.mapped_extents()
    assert len(extents) == 1
    assert extents[0].actual_len() == 10
    first = mapping[0]
    assert [mapping[i] for i in range(10)] == list(range(first, first + 10))
    assert get_blocks(tree, 3, 100, False) == (first + 3, 7)
    assert get_blocks(tree, 3, 2, False) == (first + 3, 2)


def test_next_allocated_block():
    tree = make_tree()
    assert next_allocated_block(tree.find_extent(0)) == EXT_MAX_BLOCKS
    fill(tree, [0, 10])
    assert next_allocated_block(tree.find_extent(0)) == 10
    assert next_allocated_block(tree.find_extent(10)) == EXT_MAX_BLOCKS


def test_out_of_space_raises():
    tree = make_tree(blocks=2)
    get_blocks(tree, 0, 1, True)
    before = layout(tree)
    with pytest.raises(OSError) as info:
        get_blocks(tree, 5, 1, True)
    assert info.value.errno == errno.ENOSPC
    assert layout(tree) == before


def test_many_extents_grow_the_tree():
    tree = make_tree(blocks=1024)
    logical = list(range(0, 400, 2))
    mapping = fill(tree, logical)
    assert tree.depth() >= 1
    assert len(tree.mapped_extents()) == len(logical)
    for lb, pb in mapping.items():
        assert get_blocks(tree, lb, 1, False) == (pb, 1)
        assert get_blocks(tree, lb + 1, 1, False) == (0, 0)


def test_remove_everything_frees_all_blocks():
    tree = make_tree(blocks=1024)
    initial_free = tree.store.free_count
    fill(tree, range(0, 400, 2))
    remove_space(tree, 0, EXT_MAX_BLOCKS)
    assert tree.mapped_extents() == []
    assert tree.depth() == 0
    assert tree.store.free_count == initial_free


def test_remove_middle_of_extent():
    tree = make_tree()
    mapping = fill(tree, range(10))
    p = mapping[0]
    remove_space(tree, 3, 5)
    assert [(e.first_block, e.actual_len(), e.start) for e in tree.mapped_extents()] == [
        (0, 3, p), (6, 4, p + 6)]
    assert get_blocks(tree, 4, 1, False) == (0, 0)
    assert not any(tree.store.is_allocated(p + k) for k in (3, 4, 5))
    assert all(tree.store.is_allocated(p + k) for k in (0, 2, 6, 9))


def test_remove_tail():
    tree = make_tree()
    mapping = fill(tree, range(10))
    p = mapping[0]
    remove_space(tree, 5, EXT_MAX_BLOCKS)
    assert [(e.first_block, e.actual_len(), e.start) for e in tree.mapped_extents()] == [(0, 5, p)]
    assert not tree.store.is_allocated(p + 5)
    assert tree.store.is_allocated(p + 4)


def test_remove_head():
    tree = make_tree()
    mapping = fill(tree, range(10))
    p = mapping[0]
    remove_space(tree, 0, 2)
    assert [(e.first_block, e.actual_len(), e.start) for e in tree.mapped_extents()] == [
        (3, 7, p + 3)]
    assert get_blocks(tree, 3, 1, False) == (p + 3, 1)
    assert not tree.store.is_allocated(p)


def test_remove_starting_in_hole_leaves_tree_alone():
    tree = make_tree()
    fill(tree, [10])
    before = layout(tree)
    remove_space(tree, 0, 20)
    assert layout(tree) == before


def test_remove_rejects_empty_range():
    tree = make_tree()
    with pytest.raises(ValueError):
        remove_space(tree, 5, 4)


def test_unwritten_lookup_without_create():
    tree, _ = unwritten_tree()
    assert get_blocks(tree, 1, 10, False) == (0, 3)


def test_unwritten_create_zeroes_and_splits_in_three():
    tree, first = unwritten_tree()
    tree.store.get(first + 1)[:4] = b"\xff\xff\xff\xff"
    assert get_blocks(tree, 1, 1, True) == (first + 1, 1)
    assert tree.store.get(first + 1) == bytearray(1024)
    assert layout(tree) == [(0, 1, True), (1, 1, False), (2, 2, True)]
    assert get_blocks(tree, 1, 1, False) == (first + 1, 1)


def test_convert_whole_extent():
    tree, _ = unwritten_tree()
    path = tree.find_extent(0)
    convert_to_initialized(tree, path, 0, 4)
    assert layout(tree) == [(0, 4, False)]


def test_convert_left_part():
    tree, first = unwritten_tree()
    path = tree.find_extent(0)
    convert_to_initialized(tree, path, 0, 2)
    assert layout(tree) == [(0, 2, False), (2, 2, True)]
    assert [e.start for e in tree.mapped_extents()] == [first, first + 2]


def test_convert_right_part():
    tree, _ = unwritten_tree()
    path = tree.find_extent(0)
    convert_to_initialized(tree, path, 3, 1)
    assert layout(tree) == [(0, 3, True), (3, 1, False)]


def test_split_at_start_only_changes_state():
    tree, _ = unwritten_tree()
    split_extent_at(tree, tree.find_extent(0), 0, 0)
    assert layout(tree) == [(0, 4, False)]
    split_extent_at(tree, tree.find_extent(0), 0, EXT_MARK_UNWRIT2)
    assert layout(tree) == [(0, 4, True)]


def test_split_in_middle_keeps_mapping():
    tree = make_tree()
    mapping = fill(tree, range(6))
    split_extent_at(tree, tree.find_extent(0), 2, EXT_MARK_UNWRIT1)
    assert layout(tree) == [(0, 2, True), (2, 4, False)]
    assert get_blocks(tree, 4, 1, False) == (mapping[4], 1)


def test_split_outside_extent_rejected():
    tree = make_tree()
    fill(tree, range(3))
    with pytest.raises(ValueError):
        split_extent_at(tree, tree.find_extent(0), 3, EXT_MARK_UNWRIT2)


@settings(max_examples=30, deadline=None)
@given(st.sets(st.integers(min_value=0, max_value=300), min_size=1, max_size=40))
def test_mapping_is_consistent(logical):
    tree = make_tree(blocks=1024)
    mapping = fill(tree, sorted(logical, reverse=True))
    assert len(set(mapping.values())) == len(mapping)
    for lb, pb in mapping.items():
        assert get_blocks(tree, lb, 1, False) == (pb, 1)
    extents = tree.mapped_extents()
    for left, right in zip(extents, extents[1:]):
        assert left.first_block + left.actual_len() <= right.first_block
    assert sum(e.actual_len() for e in extents) == len(logical)