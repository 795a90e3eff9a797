"""Multiplexed input streams: follow chained blocks and decompress them on demand."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Sequence

from lrzpack.backends import BackendError, CompressionType, decompress_block

logger = logging.getLogger(__name__)

_LEGACY_HEADER = struct.Struct("<BIII")


class CorruptArchiveError(Exception):
    """The stream data is truncated, inconsistent or cannot be decoded."""


@dataclass
class _Stream:
    last_head: int = 0
    buf: bytes = b""
    pos: int = 0
    eos: bool = False

    @property
    def available(self) -> int:
        return len(self.buf) - self.pos


class StreamReader:
    """Read several logical streams back out of one chunk of an archive.

    The caller has already consumed the chunk-width byte that precedes the
    chunk; the reader starts at the end-of-archive flag (or directly at the
    stream headers for archives older than version 0.6).
    """

    def __init__(
        self,
        fileobj: BinaryIO,
        num_streams: int,
        chunk_bytes: int,
        version: Sequence[int] = (0, 6),
        lzma_properties: bytes | None = None,
    ) -> None:
        if num_streams < 1:
            raise ValueError("At least one stream is required")
        self.major, self.minor = (int(part) for part in tuple(version)[:2])
        self.chunk_bytes = chunk_bytes
        self.lzma_properties = lzma_properties
        self.eof = False
        self.size = 0
        self.total_read = 0
        self._file = fileobj
        self._streams = [_Stream() for _ in range(num_streams)]
        self._closed = False

        if self.major == 0 and self.minor > 5:
            self.eof = bool(self._read_exact(1)[0])
            self.size = int.from_bytes(self._read_exact(chunk_bytes), "little")
            if not 1 <= chunk_bytes <= 8 or self.size < 0:
                raise CorruptArchiveError(
                    f"Invalid chunk data size {self.size} bytes {chunk_bytes}"
                )
        self.initial_pos = self._file.tell()
        self._read_initial_headers()

    @property
    def num_streams(self) -> int:
        return len(self._streams)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> StreamReader:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _read_exact(self, length: int) -> bytes:
        data = self._file.read(length)
        if len(data) != length:
            raise CorruptArchiveError(
                f"Partial read: asked for {length} bytes but got {len(data)}"
            )
        return data

    def _legacy(self) -> bool:
        return self.major == 0 and self.minor < 4

    def _read_header(self) -> tuple[int, int, int, int, int]:
        """Read one block header: (ctype, c_len, u_len, last_head, header length)."""
        if self._legacy():
            raw = self._read_exact(_LEGACY_HEADER.size)
            ctype, c_len, u_len, last_head = _LEGACY_HEADER.unpack(raw)
            return ctype, c_len, u_len, last_head, _LEGACY_HEADER.size
        width = 8 if self.major == 0 and self.minor < 6 else self.chunk_bytes
        ctype = self._read_exact(1)[0]
        c_len, u_len, last_head = (
            int.from_bytes(self._read_exact(width), "little", signed=width == 8)
            for _ in range(3)
        )
        return ctype, c_len, u_len, last_head, 1 + width * 3

    def _read_initial_headers(self) -> None:
        for index, stream in enumerate(self._streams):
            while True:
                ctype, c_len, u_len, last_head, length = self._read_header()
                self.total_read += length
                if (
                    index == 0
                    and ctype == CompressionType.NONE
                    and c_len == 0
                    and u_len == 0
                    and last_head == 0
                ):
                    logger.warning("Enabling stream close workaround")
                    self.initial_pos += length
                    continue
                break
            if ctype != CompressionType.NONE:
                raise CorruptArchiveError(f"Unexpected initial tag {ctype} in streams")
            if c_len:
                raise CorruptArchiveError(
                    f"Unexpected initial c_len {c_len} in streams {u_len}"
                )
            if u_len:
                raise CorruptArchiveError(f"Unexpected initial u_len {u_len} in streams")
            stream.last_head = last_head

    def _fill(self, streamno: int) -> None:
        stream = self._streams[streamno]
        stream.buf = b""
        stream.pos = 0
        if stream.eos:
            return
        self._file.seek(self.initial_pos + stream.last_head)
        ctype, c_len, u_len, last_head, length = self._read_header()
        self.total_read += length
        logger.debug(
            "Fill stream %d c_len %d u_len %d last_head %d",
            streamno, c_len, u_len, last_head,
        )
        if c_len == 0 and u_len == 0 and streamno == 1 and last_head == 0:
            logger.debug("Skipping empty match block")
            stream.eos = True
            return
        if (
            c_len < 1
            or u_len < 1
            or last_head < 0
            or (last_head and last_head <= stream.last_head)
        ):
            raise CorruptArchiveError(
                f"Invalid data compressed len {c_len} uncompressed {u_len} "
                f"last_head {last_head}"
            )
        self.total_read += c_len
        payload = self._read_exact(c_len)
        try:
            data = decompress_block(ctype, payload, u_len, self.lzma_properties)
        except BackendError as exc:
            raise CorruptArchiveError(str(exc)) from exc
        stream.buf = data
        stream.last_head = last_head
        if not last_head:
            stream.eos = True

    def read(self, streamno: int, length: int) -> bytes:
        """Read up to length bytes from a stream; fewer only at its end."""
        if self._closed:
            raise ValueError("Stream reader is closed")
        if not 0 <= streamno < len(self._streams):
            raise ValueError(f"No stream number {streamno}")
        if length < 0:
            raise ValueError("Length cannot be negative")
        stream = self._streams[streamno]
        pieces: list[bytes] = []
        remaining = length
        while remaining:
            n = min(stream.available, remaining)
            if n > 0:
                pieces.append(stream.buf[stream.pos:stream.pos + n])
                stream.pos += n
                remaining -= n
            if remaining and not stream.available:
                self._fill(streamno)
                if not stream.available:
                    break
        return b"".join(pieces)

    def close(self) -> None:
        """Leave the file just past everything this chunk's streams consumed."""
        if self._closed:
            return
        self._file.seek(self.initial_pos + self.total_read)
        for stream in self._streams:
            stream.buf = b""
            stream.pos = 0
        self._closed = True