"""Back-end block compressors and the checksum used by the stream layer."""

from __future__ import annotations

import bz2
import lzma
import zlib
from dataclasses import dataclass
from enum import Enum, IntEnum

import lz4.block

STREAM_BUFSIZE = 1024 * 1024 * 10
MIN_COMPRESS_LEN = 64
LZMA_PROPS_SIZE = 5
_ALONE_HEADER_SIZE = 13
_CRC_MASK = 0xFFFFFFFF


class BackendError(Exception):
    """A back-end failed to compress or decompress a block."""


class CompressionType(IntEnum):
    """Block type tag stored in every stream block header."""

    NONE = 3
    BZIP2 = 4
    LZO = 5
    LZMA = 6
    GZIP = 7
    ZPAQ = 8


class CompressionMethod(Enum):
    """Back-end chosen for compressing blocks."""

    NONE = "rzip"
    LZMA = "lzma"
    LZO = "lzo"
    BZIP2 = "bzip2"
    GZIP = "gzip"
    ZPAQ = "zpaq"


@dataclass
class CompressedBlock:
    """Result of compressing one stream buffer."""

    ctype: CompressionType
    payload: bytes
    u_len: int
    lzma_properties: bytes | None = None

    @property
    def c_len(self) -> int:
        return len(self.payload)


def crc_update(crc: int, data: bytes) -> int:
    """Update a raw CRC-32 register (no pre- or post-inversion) with data."""
    return zlib.crc32(data, (crc ^ _CRC_MASK) & _CRC_MASK) ^ _CRC_MASK


def lz4_compresses(data: bytes) -> bool:
    """Quick test whether lz4 can shave anything off the start of data."""
    if not data:
        return False
    dlen = min(len(data), STREAM_BUFSIZE)
    test_len = min(dlen, STREAM_BUFSIZE >> 8)
    while test_len <= dlen:
        out = lz4.block.compress(data[:test_len], mode="default", store_size=False)
        size = len(out) if len(out) <= dlen else test_len
        if size < test_len:
            return True
        test_len <<= 1
    return False


def _none(data: bytes) -> CompressedBlock:
    return CompressedBlock(CompressionType.NONE, bytes(data), len(data))


def _bzip2(data: bytes, level: int) -> CompressedBlock:
    try:
        out = bz2.compress(data, max(1, min(9, level)))
    except (ValueError, OSError) as exc:
        raise BackendError(f"BZ2 compress failed: {exc}") from exc
    if len(out) >= len(data):
        return _none(data)
    return CompressedBlock(CompressionType.BZIP2, out, len(data))


def _gzip(data: bytes, level: int) -> CompressedBlock:
    try:
        out = zlib.compress(data, level)
    except zlib.error as exc:
        raise BackendError(f"compress2 failed: {exc}") from exc
    if len(out) >= len(data):
        return _none(data)
    return CompressedBlock(CompressionType.GZIP, out, len(data))


def _lzma(data: bytes, level: int) -> CompressedBlock:
    lzma_level = max(1, level * 7 // 9)
    while True:
        try:
            out = lzma.compress(data, format=lzma.FORMAT_ALONE, preset=lzma_level)
            break
        except MemoryError:
            if lzma_level > 1:
                lzma_level -= 1
                continue
            return _bzip2(data, level)
        except lzma.LZMAError as exc:
            raise BackendError(f"LZMA compress failed: {exc}") from exc
    props = out[:LZMA_PROPS_SIZE]
    payload = out[_ALONE_HEADER_SIZE:]
    if len(payload) >= len(data):
        return _none(data)
    return CompressedBlock(CompressionType.LZMA, payload, len(data), props)


def compress_block(
    data: bytes,
    method: CompressionMethod,
    level: int = 7,
    lz4_test: bool = True,
) -> CompressedBlock:
    """Compress one buffer, falling back to an uncompressed block when it does not shrink."""
    data = bytes(data)
    if method is CompressionMethod.NONE or len(data) < MIN_COMPRESS_LEN:
        return _none(data)
    if method is CompressionMethod.GZIP:
        return _gzip(data, level)
    if method is CompressionMethod.LZO:
        raise BackendError("LZO compression is not available")
    if lz4_test and not lz4_compresses(data):
        return _none(data)
    if method is CompressionMethod.LZMA:
        return _lzma(data, level)
    if method is CompressionMethod.BZIP2:
        return _bzip2(data, level)
    if method is CompressionMethod.ZPAQ:
        raise BackendError("ZPAQ compression is not available")
    raise BackendError(f"Unknown compression method {method!r}")


def _lzma_filters(props: bytes) -> list[dict]:
    if props is None or len(props) < LZMA_PROPS_SIZE:
        raise BackendError("Missing lzma properties")
    d = props[0]
    if d >= 9 * 5 * 5:
        raise BackendError(f"Invalid lzma properties byte {d}")
    lc, d = d % 9, d // 9
    lp, pb = d % 5, d // 5
    dict_size = max(int.from_bytes(props[1:5], "little"), 4096)
    return [{"id": lzma.FILTER_LZMA1, "dict_size": dict_size,
             "lc": lc, "lp": lp, "pb": pb}]


def decompress_block(
    ctype: int,
    payload: bytes,
    u_len: int,
    lzma_properties: bytes | None = None,
) -> bytes:
    """Decompress one block and check it yields exactly u_len bytes."""
    try:
        kind = CompressionType(ctype)
    except ValueError as exc:
        raise BackendError(f"Unknown decompression type {ctype}") from exc
    payload = bytes(payload)
    if kind is CompressionType.NONE:
        return payload
    try:
        if kind is CompressionType.BZIP2:
            out = bz2.decompress(payload)
        elif kind is CompressionType.GZIP:
            out = zlib.decompress(payload)
        elif kind is CompressionType.LZMA:
            decoder = lzma.LZMADecompressor(
                format=lzma.FORMAT_RAW, filters=_lzma_filters(lzma_properties)
            )
            out = decoder.decompress(payload, max_length=u_len)
        else:
            raise BackendError(f"{kind.name} decompression is not available")
    except (OSError, ValueError, EOFError, zlib.error, lzma.LZMAError) as exc:
        raise BackendError(f"Failed to decompress buffer: {exc}") from exc
    if len(out) != u_len:
        raise BackendError(
            f"Inconsistent length after decompression. "
            f"Got {len(out)} bytes, expected {u_len}"
        )
    return out