# extkit

extkit is a small pure-Python toolkit for ext4 on-disk metadata. Everything is held in memory as `bytearray` objects. It has no third-party runtime dependencies.

## What it covers

### `extkit.checksum`

- `crc32(crc, data)` and `crc32c(crc, data)` are table-driven CRCs. The caller supplies the seed, and no final inversion is applied.
- `CRC32_INIT` is `0xFFFFFFFF`.
- `metadata_checksum(uuid, inode_index, generation, *chunks)` chains three things and then the given byte chunks into one CRC32C:
  - the filesystem UUID,
  - the little-endian inode number,
  - the little-endian inode generation.

### `extkit.debug`

- A global debug mask built from `DebugFlag` bits.
- `dmask_set`, `dmask_clr` and `dmask_get` change and read the mask.
- `dmask_id2str` returns the subsystem prefix for a single bit.
- `dbg(mask, message, stream=None)` writes the message only when a bit of `mask` is enabled, and returns whether it wrote. The message goes to stdout unless a stream is given. Unless `NOPREFIX` is set, the message is preceded by the subsystem prefix and the caller's line number.

### `extkit.dirent`

- `FsGeometry` holds the filesystem parameters that shape directory blocks: block size, revision levels, whether metadata checksums are on, and the UUID.
- `FileType` lists the file type codes stored in entries.
- `DirBlock` is a view of one linear directory leaf block:
  - field accessors for each entry,
  - `entry` and `entries` decode records and raise `ValueError` on a malformed one,
  - `write_entry` writes a whole entry,
  - `try_insert_entry` uses an unused record or splits a used one, and returns the offset or `None` when the block is full,
  - `find_entry` looks up an entry by name,
  - `init_tail`, `tail_offset`, `compute_checksum`, `verify_checksum` and `set_checksum` manage the checksum tail.
- `DirEntry` is a decoded record.

### `extkit.directory`

- `Directory` is a linear directory kept as a list of blocks:
  - `add_entry` tries each block in turn and appends a new block when none has room,
  - `find_entry` returns a `SearchResult` or raises `FileNotFoundError`,
  - `remove_entry` clears the entry and merges its space into the preceding record,
  - `iter_entries` yields `(position, entry)` for used entries and raises `OSError(EIO)` on a corrupted record.
- Modified blocks get a fresh checksum when the geometry enables metadata checksums.

### `extkit.extent_format`

- The on-disk records: `ExtentHeader`, `Extent` and `ExtentIndex`.
- `read_*` and `write_*` functions encode and decode them.
- Node capacities: `space_block`, `space_block_idx`, `space_root` and `space_root_idx`.
- Tail checksums: `tail_offset` and `block_checksum`.
- `check_node` validates a node header.
- `BlockStore` is a fixed-size in-memory pool of physical blocks with a first-fit allocator. Block 0 is never handed out.

### `extkit.extent_tree`

- `ExtentTree` is the extent tree of one inode, rooted in a 60-byte root area. It provides:
  - lookup (`find_extent`, which returns a list of `PathLevel`),
  - `find_goal`,
  - insertion with merging of adjacent extents, node splitting and growing the tree in depth (`insert_extent`),
  - `mapped_extents`, which lists every leaf extent in logical order.

### `extkit.extent_ops`

- `get_blocks(tree, iblock, max_blocks, create=False)` maps a logical block. With `create` set:
  - a hole gets one newly allocated block,
  - unwritten blocks are zeroed and marked written.
- `remove_space(tree, start, end)` unmaps and frees an inclusive range. Nothing is removed unless `start` lies inside a mapped extent.
- `split_extent_at`, `convert_to_initialized` and `next_allocated_block` are the lower-level pieces.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

```python
from extkit.checksum import CRC32_INIT, crc32c

value = crc32c(CRC32_INIT, b"hello")
```

```python
from extkit.dirent import FileType, FsGeometry
from extkit.directory import Directory

directory = Directory(FsGeometry(block_size=1024))
directory.add_entry("hello.txt", 12, FileType.REG_FILE)   # -> (0, 0)
directory.find_entry("hello.txt").entry.inode             # -> 12
directory.remove_entry("hello.txt")
```

```python
from extkit.extent_format import BlockStore
from extkit.extent_tree import ExtentTree
from extkit.extent_ops import get_blocks, remove_space

store = BlockStore(block_size=4096, block_count=256)
tree = ExtentTree(store)
physical, count = get_blocks(tree, 0, 8, create=True)
tree.mapped_extents()
remove_space(tree, 0, 0)
```

## What it does not do

extkit works on blocks and trees you hand it in memory. It does not:

- open or mount filesystem images or block devices,
- parse superblocks, group descriptors or inodes,
- read or build hashed (indexed) directories,
- provide a journal.

Block allocation for extent trees comes only from the in-memory `BlockStore`. There is no command-line tool.