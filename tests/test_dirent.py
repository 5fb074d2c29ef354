import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from extkit.checksum import metadata_checksum
from extkit.dirent import (
    DIRENTRY_DIR_CSUM,
    TAIL_SIZE,
    DirBlock,
    FileType,
    FsGeometry,
)

BS = 1024


def empty_block(csum=False, rev_level=1):
    geo = FsGeometry(block_size=BS, rev_level=rev_level, metadata_csum=csum,
                     uuid=bytes(range(16)))
    block = DirBlock(geo)
    if csum:
        block.set_entry_len(0, BS - TAIL_SIZE)
        block.init_tail()
    else:
        block.set_entry_len(0, BS)
    return block


def test_geometry_rejects_bad_block_size():
    with pytest.raises(ValueError):
        FsGeometry(block_size=1000)


def test_has_file_type_depends_on_revision():
    assert FsGeometry(rev_level=0, minor_rev_level=0).has_file_type() is False
    assert FsGeometry(rev_level=0, minor_rev_level=5).has_file_type() is True
    assert FsGeometry(rev_level=1).has_file_type() is True


def test_block_length_must_match():
    with pytest.raises(ValueError):
        DirBlock(FsGeometry(block_size=BS), bytes(10))


def test_write_entry_wire_layout():
    block = empty_block()
    block.write_entry(0, BS, 2, FileType.DIR, "ab")
    assert bytes(block.data[0:4]) == (2).to_bytes(4, "little")
    assert bytes(block.data[4:6]) == BS.to_bytes(2, "little")
    assert block.data[6] == 2
    assert block.data[7] == FileType.DIR
    assert bytes(block.data[8:10]) == b"ab"


def test_entry_round_trip():
    block = empty_block()
    block.write_entry(0, BS, 11, FileType.REG_FILE, "hello")
    e = block.entry(0)
    assert (e.inode, e.entry_len, e.name_len, e.inode_type, e.name) == (
        11, BS, 5, FileType.REG_FILE, b"hello")
    assert e.in_use


def test_old_revision_uses_high_name_byte():
    block = empty_block(rev_level=0)
    block.set_name_len(0, 300)
    assert block.name_len(0) == 300
    block.set_inode_type(0, FileType.DIR)
    assert block.inode_type(0) == FileType.UNKNOWN


def test_new_revision_rejects_long_name_len():
    block = empty_block()
    with pytest.raises(ValueError):
        block.set_name_len(0, 256)


def test_write_entry_rejects_oversized_length():
    block = empty_block()
    with pytest.raises(ValueError):
        block.write_entry(0, BS + 4, 1, FileType.REG_FILE, "x")


def test_entry_rejects_misaligned_offset():
    block = empty_block()
    with pytest.raises(ValueError):
        block.entry(2)


def test_entry_rejects_overflow():
    block = empty_block()
    block.set_entry_len(0, BS + 4)
    with pytest.raises(ValueError):
        block.entry(0)


def test_insert_into_empty_block_uses_first_record():
    block = empty_block()
    offset = block.try_insert_entry(5, FileType.REG_FILE, "file")
    assert offset == 0
    assert block.entry(0).entry_len == BS


def test_insert_splits_existing_entry():
    block = empty_block()
    block.try_insert_entry(5, FileType.REG_FILE, "a")
    second = block.try_insert_entry(6, FileType.DIR, "bb")
    assert second > 0
    records = list(block.entries())
    assert [r.name for r in records] == [b"a", b"bb"]
    assert sum(r.entry_len for r in records) == BS
    assert block.find_entry("bb").inode == 6


def test_insert_returns_none_when_full():
    block = empty_block()
    name = "n" * 200
    inserted = 0
    while block.try_insert_entry(inserted + 1, FileType.REG_FILE,
                                 f"{inserted:03d}{name}") is not None:
        inserted += 1
    assert inserted >= 1
    assert block.try_insert_entry(99, FileType.REG_FILE, name) is None


def test_insert_zero_length_entry_is_corruption():
    block = DirBlock(FsGeometry(block_size=BS))
    with pytest.raises(ValueError):
        block.try_insert_entry(1, FileType.REG_FILE, "x")


def test_find_missing_returns_none():
    block = empty_block()
    block.try_insert_entry(5, FileType.REG_FILE, "present")
    assert block.find_entry("absent") is None


def test_find_skips_unused_entries():
    block = empty_block()
    block.try_insert_entry(5, FileType.REG_FILE, "gone")
    block.set_entry_inode(0, 0)
    assert block.find_entry("gone") is None


def test_find_zero_length_raises():
    block = DirBlock(FsGeometry(block_size=BS))
    with pytest.raises(ValueError):
        block.find_entry("x")


def test_tail_wire_layout():
    block = empty_block(csum=True)
    assert block.tail_offset() == BS - TAIL_SIZE
    expected = bytes(4) + b"\x0c\x00" + b"\x00" + bytes([DIRENTRY_DIR_CSUM]) + bytes(4)
    assert bytes(block.data[-TAIL_SIZE:]) == expected


def test_corrupt_tail_is_not_recognised():
    block = empty_block(csum=True)
    block.data[BS - TAIL_SIZE] = 1
    assert block.tail_offset() is None


def test_tail_not_used_for_insert():
    block = empty_block(csum=True)
    block.try_insert_entry(3, FileType.REG_FILE, "abc")
    assert block.tail_offset() == BS - TAIL_SIZE
    assert block.inode_type(BS - TAIL_SIZE) == DIRENTRY_DIR_CSUM


def test_checksum_round_trip_and_tamper():
    block = empty_block(csum=True)
    block.try_insert_entry(3, FileType.REG_FILE, "abc")
    block.set_checksum(12, 7)
    assert block.verify_checksum(12, 7)
    assert not block.verify_checksum(13, 7)
    block.data[8] ^= 0xFF
    assert not block.verify_checksum(12, 7)


def test_checksum_covers_data_before_tail():
    block = empty_block(csum=True)
    block.try_insert_entry(3, FileType.REG_FILE, "abc")
    expected = metadata_checksum(block.geometry.uuid, 12, 7,
                                 bytes(block.data[:BS - TAIL_SIZE]))
    assert block.compute_checksum(12, 7) == expected


def test_verify_without_tail_fails_when_enabled():
    geo = FsGeometry(block_size=BS, metadata_csum=True)
    block = DirBlock(geo)
    block.set_entry_len(0, BS)
    assert block.verify_checksum(1, 0) is False
    with pytest.raises(ValueError):
        block.compute_checksum(1, 0)


def test_verify_passes_when_disabled():
    block = empty_block()
    assert block.verify_checksum(1, 0) is True


@settings(max_examples=40, deadline=None)
@given(st.lists(st.text(alphabet="abcdefghij", min_size=1, max_size=30),
                unique=True, max_size=40))
def test_inserted_names_are_found(names):
    block = empty_block(csum=True)
    placed = {}
    for ino, name in enumerate(names, start=1):
        if block.try_insert_entry(ino, FileType.REG_FILE, name) is not None:
            placed[name] = ino
    for name, ino in placed.items():
        assert block.find_entry(name).inode == ino
    records = list(block.entries())
    assert sum(r.entry_len for r in records) == BS
    assert {r.name.decode() for r in records if r.in_use} == set(placed)