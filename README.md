# lrzpack

`lrzpack` is a library that compresses data in two stages:

1. **Match search.** Each chunk of the input is scanned for repeated runs
   of 31 bytes or more, however far apart they are inside the chunk. Those
   runs are replaced with back-references. Literal bytes go into one stream
   and the literal and match records go into another.
2. **Block compression.** Each stream is cut into blocks, and every block is
   compressed on its own with LZMA, bzip2 or zlib. A block that does not get
   smaller is stored as it is. For LZMA and bzip2, an optional quick LZ4 test
   first skips blocks that LZ4 cannot shrink at all.

Decompression reads the streams back, rebuilds each chunk from its literals
and matches, and checks either the CRC32 of each chunk or the MD5 of the
whole output.

## Installation

```
pip install lrzpack
```

To run the test suite:

```
pip install "lrzpack[test]"
pytest
```

## Modules

| Module | Purpose |
| --- | --- |
| `lrzpack.backends` | Compresses and decompresses single blocks: `compress_block`, `decompress_block`, `CompressionType`, `CompressionMethod`, `CompressedBlock` and `BackendError`. Also holds the LZ4 test `lz4_compresses` and `crc_update`, which keeps a running CRC32. |
| `lrzpack.streamout` | `StreamWriter` buffers writes to numbered streams and writes them to a seekable file as compressed blocks chained by header offsets. With `threads` greater than 1 it compresses blocks on a thread pool. `CompressionOptions` holds the method, level (1–9), LZ4 test, thread count, page size, usable RAM and per-thread overhead. |
| `lrzpack.streamin` | `StreamReader` follows those block headers, decompresses blocks as they are needed and serves reads per stream. Damaged or inconsistent data raises `CorruptArchiveError`. |
| `lrzpack.hashsearch` | The tag hash table (`HashTable`, `Level` and the `LEVELS` table), rolling tags (`make_hash_index`, `full_tag`) and match extension (`match_len`). |
| `lrzpack.rzip` | `RzipCompressor` and `rzip_fd` compress a whole input chunk by chunk and append the MD5 of the input. `chunk_byte_width` gives the offset width for a chunk size. `RzipStats` counts matches, literals, inserts and tag hits. |
| `lrzpack.runzip` | `runzip_chunk` and `runzip_fd` decompress. A CRC or MD5 mismatch raises `ChecksumError`. `ArchiveVersion` selects the header layout of older format versions. |

## Usage

Compress a file:

```python
from lrzpack.rzip import rzip_fd
from lrzpack.streamout import CompressionOptions

with open("data.bin", "rb") as infile, open("data.bin.rz", "wb") as outfile:
    digest = rzip_fd(infile, outfile, CompressionOptions(), None)
```

`rzip_fd` returns the MD5 of the input. The output file must be seekable,
because block headers are patched after the blocks are written.

To decompress you need the original size (or `0`, which lets the chunks'
end-of-archive flag decide when to stop), the format version (default
`(0, 6)`), and, for LZMA, the properties recorded while compressing. These
are available as `RzipCompressor.lzma_properties`:

```python
import io

from lrzpack.rzip import RzipCompressor
from lrzpack.runzip import runzip_fd
from lrzpack.streamout import CompressionOptions

data = b"some repeated text " * 5000
compressor = RzipCompressor(CompressionOptions(level=7), seed=1)
archive = io.BytesIO()
compressor.compress(io.BytesIO(data), archive)

archive.seek(0)
restored = io.BytesIO()
size = runzip_fd(archive, restored, len(data), (0, 6), compressor.lzma_properties)
assert restored.getvalue() == data
```

The output of `runzip_fd` must be readable and seekable, because matches
copy bytes that were already written. With `has_md5=True` (the default) the
MD5 at the end of the input is compared with the MD5 of the output. With
`has_md5=False` the CRC32 stored with each chunk is checked instead.

Setting `window` (in units of 100 MiB) or `CompressionOptions.usable_ram`
limits the chunk size. Without either, the whole input is one chunk.

The block helpers also work on their own:

```python
from lrzpack.backends import crc_update, lz4_compresses

payload = b"abc" * 10_000
assert lz4_compresses(payload)
checksum = crc_update(0, payload)
```

## What it does not do

- There is no command-line program. The package is a library only.
- No file header, magic number or stored original size is written. The
  caller keeps the size, version and LZMA properties needed to decompress.
- The LZO and ZPAQ methods are named in `CompressionMethod` and
  `CompressionType`, but they raise `BackendError` for both compression
  and decompression.
- There is no encryption and no reading from pipes. Both input and output
  must be seekable files.

## Notes

- Offsets inside a chunk are stored with the fewest whole bytes that can
  hold the chunk size (see `chunk_byte_width`).
- Blocks shorter than 64 bytes are never handed to a back end.
- The hash table spills into neighbouring buckets. When it is two thirds
  full, it evicts the tags with the fewest low bits set, so the whole chunk
  stays sparsely covered.