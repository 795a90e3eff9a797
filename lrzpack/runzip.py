"""Decompression of rzip chunks: replay literals and matches back into a file."""

from __future__ import annotations

import hashlib
import logging
import time
from typing import BinaryIO, Iterator, NamedTuple, Sequence

from lrzpack.backends import crc_update
from lrzpack.streamin import CorruptArchiveError, StreamReader

logger = logging.getLogger(__name__)

NUM_STREAMS = 2
MD5_DIGEST_SIZE = 16
CRC_SIZE = 4


class ChecksumError(Exception):
    """The decompressed data does not match the stored CRC or MD5."""


class ArchiveVersion(NamedTuple):
    """Format version of the archive being decompressed."""

    major: int = 0
    minor: int = 6

    @property
    def fixed_chunk_bytes(self) -> int | None:
        """Offset width for old archives, or None when it is stored per chunk."""
        if self.major == 0 and self.minor < 4:
            return 4
        if self.major == 0 and self.minor == 4:
            return 8
        return None

    @property
    def header_width(self) -> int:
        """Width of the length field in every literal or match header."""
        return 8 if self.major == 0 and self.minor == 4 else 2


def _as_version(version: Sequence[int] | None) -> ArchiveVersion:
    if version is None:
        return ArchiveVersion()
    major, minor = (int(part) for part in tuple(version)[:2])
    return ArchiveVersion(major, minor)


def _read_value(reader: StreamReader, width: int) -> int:
    raw = reader.read(0, width)
    if len(raw) != width:
        raise CorruptArchiveError(f"Stream read of {width} bytes failed")
    return int.from_bytes(raw, "little", signed=width == 8)


def _read_header(reader: StreamReader, width: int) -> tuple[int, int]:
    head = reader.read(0, 1)
    if len(head) != 1:
        raise CorruptArchiveError("Stream read u8 failed")
    return head[0], _read_value(reader, width)


def _unzip_literal(reader: StreamReader, length: int) -> Iterator[bytes]:
    if length < 0:
        raise CorruptArchiveError(f"len {length} is negative in unzip_literal")
    yield reader.read(1, length)


def _unzip_match(
    reader: StreamReader, outfile: BinaryIO, length: int, chunk_bytes: int
) -> Iterator[bytes]:
    if length < 0:
        raise CorruptArchiveError(f"len {length} is negative in unzip_match")
    cur_pos = outfile.tell()
    offset = _read_value(reader, chunk_bytes)
    start = cur_pos - offset
    if start < 0 or start > cur_pos:
        raise CorruptArchiveError(
            f"Seek failed by {offset} from {cur_pos} on history file in unzip_match"
        )
    n = min(length, offset)
    if n < 1:
        raise CorruptArchiveError(
            "Failed fd history in unzip_match due to corrupt archive"
        )
    outfile.seek(start)
    history = outfile.read(n)
    outfile.seek(cur_pos)
    if len(history) != n:
        raise CorruptArchiveError(f"Failed to read {n} bytes in unzip_match")
    while length:
        n = min(length, offset)
        yield history[:n]
        length -= n


def runzip_chunk(
    infile: BinaryIO,
    outfile: BinaryIO,
    version: Sequence[int] | None = None,
    lzma_properties: bytes | None = None,
    md5=None,
    has_md5: bool = True,
) -> tuple[int, bool]:
    """Decompress one chunk from infile into outfile.

    outfile must be readable and seekable: matches copy from what was already
    written. md5, when given, is a hash object updated with the output. Returns
    the number of bytes produced and whether the chunk was marked as the last.
    """
    version = _as_version(version)
    chunk_bytes = version.fixed_chunk_bytes
    if chunk_bytes is None:
        raw = infile.read(1)
        if len(raw) != 1:
            raise CorruptArchiveError("Failed to read chunk_bytes size in runzip_chunk")
        chunk_bytes = raw[0]
        if not 1 <= chunk_bytes <= 8:
            raise CorruptArchiveError(
                f"chunk_bytes {chunk_bytes} is invalid in runzip_chunk"
            )
    logger.debug("Chunk byte width: %d", chunk_bytes)

    ofs = infile.tell()
    end = infile.seek(0, 2)
    infile.seek(ofs)
    if end == ofs:
        return 0, True

    width = version.header_width
    crc = 0
    total = 0
    with StreamReader(
        infile, NUM_STREAMS, chunk_bytes, version, lzma_properties
    ) as reader:
        while True:
            head, length = _read_header(reader, width)
            if not length and not head:
                break
            if head == 0:
                pieces = _unzip_literal(reader, length)
            else:
                pieces = _unzip_match(reader, outfile, length, chunk_bytes)
            for piece in pieces:
                outfile.write(piece)
                if not has_md5:
                    crc = crc_update(crc, piece)
                if md5 is not None:
                    md5.update(piece)
                total += len(piece)

        if not has_md5:
            raw = reader.read(0, CRC_SIZE)
            if len(raw) != CRC_SIZE:
                raise CorruptArchiveError("Stream read u32 failed")
            good = int.from_bytes(raw, "little")
            if good != crc:
                raise ChecksumError(
                    f"Bad checksum: 0x{crc:08x} - expected: 0x{good:08x}"
                )
            logger.debug("Checksum for block: 0x%08x", crc)
        eof = reader.eof
    return total, eof


def runzip_fd(
    infile: BinaryIO,
    outfile: BinaryIO,
    expected_size: int = 0,
    version: Sequence[int] | None = None,
    lzma_properties: bytes | None = None,
    has_md5: bool = True,
) -> int:
    """Decompress every chunk of infile into outfile and verify the MD5.

    With expected_size 0 the chunks' end-of-archive flag decides when to stop.
    Returns the number of bytes written.
    """
    version = _as_version(version)
    md5 = hashlib.md5()
    total = 0
    last_tenth = -1
    start = time.monotonic()

    while True:
        size, eof = runzip_chunk(
            infile, outfile, version, lzma_properties, md5, has_md5
        )
        if size < 1 and total < expected_size:
            raise CorruptArchiveError("Failed to runzip_chunk in runzip_fd")
        total += size
        if expected_size:
            pct = int(100 * total / expected_size)
            if pct // 10 != last_tenth:
                logger.debug("%3d%%  %d / %d bytes", pct, total, expected_size)
                last_tenth = pct // 10
        if not (total < expected_size or (not expected_size and not eof)):
            break

    elapsed = max(time.monotonic() - start, 1.0)
    logger.info(
        "Average decompression speed: %6.3fMB/s", total / 1024 / 1024 / elapsed
    )

    digest = md5.digest()
    if has_md5:
        end = infile.seek(0, 2)
        if end < MD5_DIGEST_SIZE:
            raise CorruptArchiveError("Failed to read md5 data in runzip_fd")
        infile.seek(end - MD5_DIGEST_SIZE)
        stored = infile.read(MD5_DIGEST_SIZE)
        if len(stored) != MD5_DIGEST_SIZE:
            raise CorruptArchiveError("Failed to read md5 data in runzip_fd")
        if stored != digest:
            raise ChecksumError(
                f"MD5 CHECK FAILED.\nStored:{stored.hex()}\n"
                f"Output file:{digest.hex()}"
            )
    logger.info("MD5: %s", digest.hex())
    return total