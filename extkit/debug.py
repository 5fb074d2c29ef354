"""Global debug mask and mask-filtered diagnostic output."""

from __future__ import annotations

import enum
import inspect
import sys
from typing import Optional, TextIO

_U32_MAX = 0xFFFFFFFF


class DebugFlag(enum.IntFlag):
    """Subsystem bits of the debug mask."""

    BALLOC = 1 << 0
    BCACHE = 1 << 1
    BITMAP = 1 << 2
    BLOCK_GROUP = 1 << 3
    BLOCKDEV = 1 << 4
    DIR_IDX = 1 << 5
    DIR = 1 << 6
    EXTENT = 1 << 7
    FS = 1 << 8
    HASH = 1 << 9
    IALLOC = 1 << 10
    INODE = 1 << 11
    SUPER = 1 << 12
    XATTR = 1 << 13
    MKFS = 1 << 14
    EXT4 = 1 << 15
    JBD = 1 << 16
    MBR = 1 << 17
    NOPREFIX = 1 << 31


DEBUG_ALL = _U32_MAX

DBG_NONE = ""
DBG_INFO = "[info]  "
DBG_WARN = "[warn]  "
DBG_ERROR = "[error] "

_PREFIXES = {
    DebugFlag.BALLOC: "ext4_balloc: ",
    DebugFlag.BCACHE: "ext4_bcache: ",
    DebugFlag.BITMAP: "ext4_bitmap: ",
    DebugFlag.BLOCK_GROUP: "ext4_block_group: ",
    DebugFlag.BLOCKDEV: "ext4_blockdev: ",
    DebugFlag.DIR_IDX: "ext4_dir_idx: ",
    DebugFlag.DIR: "ext4_dir: ",
    DebugFlag.EXTENT: "ext4_extent: ",
    DebugFlag.FS: "ext4_fs: ",
    DebugFlag.HASH: "ext4_hash: ",
    DebugFlag.IALLOC: "ext4_ialloc: ",
    DebugFlag.INODE: "ext4_inode: ",
    DebugFlag.SUPER: "ext4_super: ",
    DebugFlag.XATTR: "ext4_xattr: ",
    DebugFlag.MKFS: "ext4_mkfs: ",
    DebugFlag.JBD: "ext4_jbd: ",
    DebugFlag.MBR: "ext4_mbr: ",
    DebugFlag.EXT4: "ext4: ",
}

_debug_mask = 0


def _check_mask(mask: int) -> int:
    value = int(mask)
    if not 0 <= value <= _U32_MAX:
        raise ValueError(f"debug mask out of 32-bit range: {mask}")
    return value


def dmask_set(mask: int) -> None:
    """Enable the bits of *mask* in the global debug mask."""
    global _debug_mask
    _debug_mask |= _check_mask(mask)


def dmask_clr(mask: int) -> None:
    """Disable the bits of *mask* in the global debug mask."""
    global _debug_mask
    _debug_mask &= ~_check_mask(mask) & _U32_MAX


def dmask_get() -> int:
    """Return the current global debug mask."""
    return _debug_mask


def dmask_id2str(mask: int) -> str:
    """Return the output prefix for a single subsystem bit, or ''."""
    return _PREFIXES.get(int(mask), "")


def dbg(mask: int, message: str, stream: Optional[TextIO] = None) -> bool:
    """Write *message* if any bit of *mask* is enabled; return whether it was.

    Unless NOPREFIX is set in *mask*, the subsystem prefix and the caller's
    line number precede the message.
    """
    mask = _check_mask(mask)
    if not mask & dmask_get():
        return False
    out = sys.stdout if stream is None else stream
    if not mask & DebugFlag.NOPREFIX:
        frame = inspect.currentframe()
        caller = frame.f_back if frame is not None else None
        line = caller.f_lineno if caller is not None else 0
        del frame, caller
        out.write(dmask_id2str(mask))
        out.write(f"l: {line}   ")
    out.write(message)
    out.flush()
    return True