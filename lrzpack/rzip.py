"""Long-range match compression: turn a chunk into literal and match streams."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import BinaryIO

from lrzpack.backends import crc_update
from lrzpack.hashsearch import (
    GREAT_MATCH,
    LEVELS,
    MINIMUM_MATCH,
    HashTable,
    full_tag,
    make_hash_index,
)
from lrzpack.streamout import CompressionOptions, StreamWriter

logger = logging.getLogger(__name__)

CHUNK_MULTIPLE = 100 * 1024 * 1024
NUM_STREAMS = 2
MAX_BLOCK_LEN = 0xFFFF
MD5_DIGEST_SIZE = 16


@dataclass
class RzipStats:
    """Counters gathered while searching for matches."""

    matches: int = 0
    match_bytes: int = 0
    literals: int = 0
    literal_bytes: int = 0
    inserts: int = 0
    tag_hits: int = 0
    tag_misses: int = 0


def chunk_byte_width(chunk_size: int) -> int:
    """Number of bytes needed to store any offset within a chunk of this size."""
    if chunk_size < 0:
        raise ValueError("Chunk size cannot be negative")
    bits = 8
    while chunk_size >> bits > 0:
        bits += 1
    return -(-bits // 8)


def _header(head: int, length: int) -> bytes:
    return bytes([head]) + length.to_bytes(2, "little")


class RzipCompressor:
    """Split input into chunks and encode each as literals and back-references."""

    def __init__(
        self,
        options: CompressionOptions | None = None,
        window: int | None = None,
        seed: int | None = None,
    ) -> None:
        if options is None:
            options = CompressionOptions()
        if window is not None and window < 0:
            raise ValueError("Window cannot be negative")
        self.options = options
        self.level = LEVELS[options.level]
        self.hash_index = make_hash_index(seed)
        if window:
            self.max_chunk: int | None = window * CHUNK_MULTIPLE
        elif options.usable_ram:
            self.max_chunk = options.usable_ram * 2
        else:
            self.max_chunk = None
        self.stats = RzipStats()
        self.lzma_properties: bytes | None = None
        self._table: HashTable | None = None
        self._md5 = hashlib.md5()

    def _put_literal(self, writer: StreamWriter, data: bytes, last: int, p: int) -> None:
        while True:
            length = min(p - last, MAX_BLOCK_LEN)
            self.stats.literals += 1
            self.stats.literal_bytes += length
            writer.write(0, _header(0, length))
            if length:
                writer.write(1, data[last:last + length])
            last += length
            if p <= last:
                break

    def _put_match(
        self, writer: StreamWriter, width: int, p: int, offset: int, length: int
    ) -> None:
        while True:
            n = min(length, MAX_BLOCK_LEN)
            writer.write(0, _header(1, n) + (p - offset).to_bytes(width, "little"))
            self.stats.matches += 1
            self.stats.match_bytes += n
            length -= n
            p += n
            offset += n
            if not length:
                break

    def _hash_search(self, data: bytes, writer: StreamWriter, width: int) -> None:
        if self._table is None:
            self._table = HashTable(self.level)
        else:
            self._table.reset()
        table = self._table
        hash_index = self.hash_index
        tag_mask = table.initial_mask
        chunk_size = len(data)
        end = chunk_size - MINIMUM_MATCH
        p = 0
        last_match = 0
        cur_p, cur_len, cur_ofs = 0, 0, 0
        t = full_tag(data, p, hash_index) if end > 0 else 0

        while p < end:
            p += 1
            t ^= hash_index[data[p - 1]] ^ hash_index[data[p + MINIMUM_MATCH - 1]]
            if (t & table.minimum_tag_mask) != table.minimum_tag_mask:
                continue
            mlen, offset, reverse = table.find_best_match(data, t, p, end, last_match)
            if (t & tag_mask) == tag_mask:
                self.stats.inserts += 1
                table.insert(t, p)
                if table.hash_count > table.hash_limit:
                    tag_mask = table.clean_one()
            if mlen > cur_len:
                cur_p, cur_len, cur_ofs = p - reverse, mlen, offset
            if (
                cur_len >= GREAT_MATCH or p >= cur_p + MINIMUM_MATCH
            ) and cur_len >= MINIMUM_MATCH:
                if last_match < cur_p:
                    self._put_literal(writer, data, last_match, cur_p)
                self._put_match(writer, width, cur_p, cur_ofs, cur_len)
                last_match = cur_p + cur_len
                cur_p = p = last_match
                cur_len = 0
                t = full_tag(data, p, hash_index)

        self.stats.tag_hits = table.tag_hits
        self.stats.tag_misses = table.tag_misses
        if last_match < chunk_size:
            self._put_literal(writer, data, last_match, chunk_size)

    def compress_chunk(self, data: bytes, outfile: BinaryIO, eof: bool = False) -> int:
        """Encode one chunk into outfile at its current position; return the chunk CRC."""
        data = bytes(data)
        width = chunk_byte_width(len(data))
        logger.debug("Chunk size: %d, byte width: %d", len(data), width)
        with StreamWriter(
            outfile, NUM_STREAMS, len(data), width, self.options, eof
        ) as writer:
            self._hash_search(data, writer, width)
            crc = crc_update(0, data)
            self._md5.update(data)
            self._put_literal(writer, data, 0, 0)
            writer.write(0, crc.to_bytes(4, "little"))
        if self.lzma_properties is None and writer.lzma_properties is not None:
            self.lzma_properties = writer.lzma_properties
        return crc

    def _chunk_limit(self) -> int | None:
        if self.max_chunk is None:
            return None
        page = self.options.page_size
        return max(page, self.max_chunk - self.max_chunk % page)

    def compress(self, infile: BinaryIO, outfile: BinaryIO) -> bytes:
        """Encode all of infile chunk by chunk, then append the MD5; return the MD5."""
        self._md5 = hashlib.md5()
        limit = self._chunk_limit()

        def read_chunk() -> bytes:
            return infile.read() if limit is None else infile.read(limit)

        data = read_chunk()
        total = 0
        passes = 0
        while True:
            full = limit is not None and len(data) == limit
            following = read_chunk() if full else b""
            eof = not following
            self.compress_chunk(data, outfile, eof)
            total += len(data)
            passes += 1
            if eof:
                break
            data = following

        digest = self._md5.digest()
        outfile.write(digest)
        logger.info(
            "Compressed %d bytes in %d pass(es); matches=%d literals=%d",
            total, passes, self.stats.matches, self.stats.literals,
        )
        return digest


def rzip_fd(
    infile: BinaryIO,
    outfile: BinaryIO,
    options: CompressionOptions | None = None,
    window: int | None = None,
) -> bytes:
    """Compress infile into outfile and return the MD5 of the input."""
    return RzipCompressor(options, window).compress(infile, outfile)