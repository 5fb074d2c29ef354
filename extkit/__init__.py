"""Pure-Python ext4 metadata toolkit: checksums, debug mask, directory blocks and extent trees."""

__version__ = "0.1.0"
__all__ = [
    "checksum",
    "debug",
    "dirent",
    "directory",
    "extent_format",
    "extent_tree",
    "extent_ops",
]