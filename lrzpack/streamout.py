"""Multiplexed output streams: buffer, compress and chain blocks into a file."""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import BinaryIO

from lrzpack.backends import (
    STREAM_BUFSIZE,
    BackendError,
    CompressedBlock,
    CompressionMethod,
    CompressionType,
    compress_block,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 4096


@dataclass
class CompressionOptions:
    """Settings shared by every stream writer of one compression run."""

    method: CompressionMethod = CompressionMethod.LZMA
    level: int = 7
    lz4_test: bool = True
    threads: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    usable_ram: int | None = None
    overhead: int = 0

    def __post_init__(self) -> None:
        if not 1 <= self.level <= 9:
            raise ValueError("Compression level must be between 1 and 9")
        if self.threads < 1:
            raise ValueError("At least one thread is required")
        if self.page_size < 1:
            raise ValueError("Page size must be positive")
        if self.overhead < 0:
            raise ValueError("Overhead cannot be negative")


def _pack(value: int, width: int) -> bytes:
    return (value & ((1 << (8 * width)) - 1)).to_bytes(width, "little")


def _plan_buffers(options: CompressionOptions, chunk_limit: int) -> tuple[int, int]:
    """Work out the thread count and the per-stream buffer limit."""
    no_compress = options.method is CompressionMethod.NONE
    threads = 1 if no_compress else options.threads
    testbufs = 1 if no_compress else 2
    limit = chunk_limit
    ram = options.usable_ram
    if ram is not None:
        overhead = options.overhead
        if limit * testbufs + overhead * threads > ram:
            limit = (ram - overhead * threads) // testbufs
        reduced = False
        while limit < STREAM_BUFSIZE and limit < chunk_limit and threads > 1:
            threads -= 1
            reduced = True
            limit = min((ram - overhead * threads) // testbufs, chunk_limit)
        if reduced:
            logger.warning(
                "Minimising number of threads to %d to limit memory usage", threads
            )
    if limit < STREAM_BUFSIZE:
        logger.info("Low memory for chosen compression settings")
        limit = STREAM_BUFSIZE
    return threads, min(limit, chunk_limit)


class StreamWriter:
    """Write several logical streams into one seekable file as chained blocks."""

    def __init__(
        self,
        fileobj: BinaryIO,
        num_streams: int,
        chunk_limit: int,
        chunk_bytes: int,
        options: CompressionOptions | None = None,
        eof: bool = False,
    ) -> None:
        if options is None:
            options = CompressionOptions()
        if num_streams < 1:
            raise ValueError("At least one stream is required")
        if not 1 <= chunk_bytes <= 8:
            raise ValueError(f"chunk_bytes {chunk_bytes} is invalid")
        self.options = options
        self.chunk_bytes = chunk_bytes
        self.eof = bool(eof)
        self.size = max(chunk_limit, options.page_size)
        self.threads, limit = _plan_buffers(options, self.size)
        self.bufsize = min(limit, max(-(-limit // self.threads), STREAM_BUFSIZE))
        self.lzma_properties: bytes | None = None
        self._file = fileobj
        self._buffers = [bytearray() for _ in range(num_streams)]
        self._last_head = [0] * num_streams
        self._cur_pos = 0
        self._initial_pos: int | None = None
        self._pending: deque[tuple[int, bytes, Future]] = deque()
        self._executor = (
            ThreadPoolExecutor(max_workers=self.threads) if self.threads > 1 else None
        )
        self._closed = False

    @property
    def num_streams(self) -> int:
        return len(self._buffers)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> StreamWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self._shutdown(cancel=True)
            self._closed = True

    def _check_stream(self, streamno: int) -> None:
        if self._closed:
            raise ValueError("Stream writer is closed")
        if not 0 <= streamno < len(self._buffers):
            raise ValueError(f"No stream number {streamno}")

    def write(self, streamno: int, data: bytes) -> None:
        """Append data to a stream, flushing each time its buffer fills."""
        self._check_stream(streamno)
        view = memoryview(bytes(data))
        buf = self._buffers[streamno]
        while view:
            n = min(self.bufsize - len(buf), len(view))
            buf += view[:n]
            view = view[n:]
            if len(buf) == self.bufsize:
                self.flush(streamno)
                buf = self._buffers[streamno]

    def flush(self, streamno: int) -> None:
        """Hand the current buffer of a stream to the compressor as one block."""
        self._check_stream(streamno)
        data = bytes(self._buffers[streamno])
        self._buffers[streamno] = bytearray()
        self._submit(streamno, data)

    def close(self) -> None:
        """Flush every stream, write all pending blocks and leave the file at the end."""
        if self._closed:
            return
        try:
            for streamno in range(len(self._buffers)):
                self.flush(streamno)
            while self._pending:
                self._retire()
            if self._initial_pos is not None:
                self._file.seek(self._initial_pos + self._cur_pos)
        finally:
            self._shutdown(cancel=False)
            self._closed = True

    def _shutdown(self, cancel: bool) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=cancel)
            self._executor = None
        self._pending.clear()

    def _compress(self, data: bytes) -> CompressedBlock:
        opts = self.options
        return compress_block(data, opts.method, opts.level, opts.lz4_test)

    def _submit(self, streamno: int, data: bytes) -> None:
        if self._executor is None:
            try:
                block = self._compress(data)
            except BackendError:
                block = self._compress(data)
            self._write_block(streamno, block)
            return
        while len(self._pending) >= self.threads:
            self._retire()
        future = self._executor.submit(self._compress, data)
        self._pending.append((streamno, data, future))

    def _retire(self) -> None:
        streamno, data, future = self._pending.popleft()
        try:
            block = future.result()
        except BackendError:
            logger.debug("Unable to compress in parallel, retrying serially")
            block = self._compress(data)
        self._write_block(streamno, block)

    def _write_initial_headers(self) -> None:
        width = self.chunk_bytes
        out = self._file
        out.write(bytes([self.chunk_bytes, int(self.eof)]))
        out.write(_pack(self.size, width))
        self._initial_pos = out.tell()
        for streamno in range(len(self._buffers)):
            self._last_head[streamno] = self._cur_pos + 1 + width * 2
            out.write(bytes([CompressionType.NONE]) + _pack(0, width) * 3)
            self._cur_pos += 1 + width * 3

    def _write_block(self, streamno: int, block: CompressedBlock) -> None:
        width = self.chunk_bytes
        out = self._file
        if self._initial_pos is None:
            self._write_initial_headers()
        if block.lzma_properties is not None and self.lzma_properties is None:
            self.lzma_properties = bytes(block.lzma_properties)
        base = self._initial_pos
        out.seek(base + self._last_head[streamno])
        out.write(_pack(self._cur_pos, width))
        self._last_head[streamno] = self._cur_pos + 1 + width * 2
        out.seek(base + self._cur_pos)
        header = (
            bytes([block.ctype])
            + _pack(block.c_len, width)
            + _pack(block.u_len, width)
            + _pack(0, width)
        )
        out.write(header)
        self._cur_pos += len(header)
        out.write(block.payload)
        self._cur_pos += block.c_len