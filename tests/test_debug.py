import inspect
import io

import pytest

from extkit.debug import (
    DBG_WARN,
    DEBUG_ALL,
    DebugFlag,
    dbg,
    dmask_clr,
    dmask_get,
    dmask_id2str,
    dmask_set,
)


@pytest.fixture(autouse=True)
def clean_mask():
    dmask_clr(DEBUG_ALL)
    yield
    dmask_clr(DEBUG_ALL)


def test_mask_starts_cleared():
    assert dmask_get() == 0


def test_set_accumulates_bits():
    dmask_set(DebugFlag.DIR)
    dmask_set(DebugFlag.EXTENT)
    assert dmask_get() == DebugFlag.DIR | DebugFlag.EXTENT


def test_clear_removes_only_given_bits():
    dmask_set(DebugFlag.DIR | DebugFlag.FS)
    dmask_clr(DebugFlag.DIR)
    assert dmask_get() == DebugFlag.FS


def test_set_all_then_clear_all():
    dmask_set(DEBUG_ALL)
    assert dmask_get() == 0xFFFFFFFF
    dmask_clr(DEBUG_ALL)
    assert dmask_get() == 0


def test_out_of_range_mask_rejected():
    with pytest.raises(ValueError):
        dmask_set(1 << 32)
    with pytest.raises(ValueError):
        dmask_clr(-1)


@pytest.mark.parametrize(
    "flag, prefix",
    [
        (DebugFlag.BALLOC, "ext4_balloc: "),
        (DebugFlag.DIR, "ext4_dir: "),
        (DebugFlag.DIR_IDX, "ext4_dir_idx: "),
        (DebugFlag.EXTENT, "ext4_extent: "),
        (DebugFlag.MBR, "ext4_mbr: "),
        (DebugFlag.EXT4, "ext4: "),
    ],
)
def test_id2str_known(flag, prefix):
    assert dmask_id2str(flag) == prefix


def test_id2str_combined_or_unknown_is_empty():
    assert dmask_id2str(DebugFlag.DIR | DebugFlag.FS) == ""
    assert dmask_id2str(DebugFlag.NOPREFIX) == ""
    assert dmask_id2str(0) == ""


def test_dbg_suppressed_when_disabled():
    out = io.StringIO()
    assert dbg(DebugFlag.DIR, "hello\n", out) is False
    assert out.getvalue() == ""


def test_dbg_prefix_and_line():
    dmask_set(DebugFlag.DIR)
    out = io.StringIO()
    line = inspect.currentframe().f_lineno + 1
    written = dbg(DebugFlag.DIR, DBG_WARN + "msg\n", out)
    assert written is True
    assert out.getvalue() == f"ext4_dir: l: {line}   [warn]  msg\n"


def test_dbg_noprefix():
    dmask_set(DebugFlag.EXTENT)
    out = io.StringIO()
    assert dbg(DebugFlag.EXTENT | DebugFlag.NOPREFIX, "raw", out) is True
    assert out.getvalue() == "raw"


def test_dbg_other_subsystem_not_printed():
    dmask_set(DebugFlag.FS)
    out = io.StringIO()
    assert dbg(DebugFlag.DIR, "x", out) is False
    assert out.getvalue() == ""


def test_dbg_defaults_to_stdout(capsys):
    dmask_set(DebugFlag.INODE)
    dbg(DebugFlag.INODE | DebugFlag.NOPREFIX, "to stdout")
    assert capsys.readouterr().out == "to stdout"