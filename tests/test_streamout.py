import io

import pytest

from lrzpack.backends import (
    STREAM_BUFSIZE,
    CompressionMethod,
    CompressionType,
    decompress_block,
)
from lrzpack.streamout import CompressionOptions, StreamWriter


def _read_header(raw, pos, cb):
    ctype = raw[pos]
    fields = [
        int.from_bytes(raw[pos + 1 + k * cb: pos + 1 + (k + 1) * cb], "little")
        for k in range(3)
    ]
    return (ctype, *fields)


def parse(raw, num_streams, start=0):
    cb = raw[start]
    eof = raw[start + 1]
    size = int.from_bytes(raw[start + 2: start + 2 + cb], "little")
    init = start + 2 + cb
    streams = []
    for i in range(num_streams):
        ctype, c_len, u_len, last = _read_header(raw, init + i * (1 + 3 * cb), cb)
        assert (ctype, c_len, u_len) == (CompressionType.NONE, 0, 0)
        blocks = []
        while last:
            pos = init + last
            ctype, c_len, u_len, nxt = _read_header(raw, pos, cb)
            body = pos + 1 + 3 * cb
            blocks.append((ctype, c_len, u_len, raw[body: body + c_len]))
            last = nxt
        streams.append(blocks)
    return cb, eof, size, streams


def joined(blocks, props=None):
    return b"".join(decompress_block(c, p, u, props) for c, _, u, p in blocks)


def rzip_opts(**kw):
    return CompressionOptions(method=CompressionMethod.NONE, **kw)


def test_round_trip_uncompressed_two_streams():
    out = io.BytesIO()
    writer = StreamWriter(out, 2, 4096, 2, rzip_opts(), eof=True)
    writer.write(0, b"abc")
    writer.write(1, b"hello world")
    writer.close()
    raw = out.getvalue()
    cb, eof, _, streams = parse(raw, 2)
    assert cb == 2
    assert eof == 1
    assert joined(streams[0]) == b"abc"
    assert joined(streams[1]) == b"hello world"
    assert out.tell() == len(raw)


def test_header_prefix_bytes():
    out = io.BytesIO()
    with StreamWriter(out, 2, 4096, 2, rzip_opts(), eof=True) as writer:
        writer.write(0, b"x")
    raw = out.getvalue()
    assert raw[:4] == bytes([2, 1]) + (4096).to_bytes(2, "little")
    assert raw[4] == CompressionType.NONE
    assert raw[5:9] == b"\x00\x00\x00\x00"


def test_chunk_limit_raised_to_page_size():
    out = io.BytesIO()
    opts = rzip_opts()
    writer = StreamWriter(out, 2, 100, 4, opts)
    assert writer.size == opts.page_size
    writer.close()
    _, eof, size, _ = parse(out.getvalue(), 2)
    assert size == opts.page_size
    assert eof == 0


def test_buffer_fills_produce_several_blocks():
    out = io.BytesIO()
    writer = StreamWriter(out, 2, 4096, 2, rzip_opts())
    assert writer.bufsize == 4096
    data = bytes(i % 256 for i in range(10000))
    writer.write(1, data)
    writer.close()
    _, _, _, streams = parse(out.getvalue(), 2)
    lengths = [u for _, _, u, _ in streams[1]]
    assert all(u <= writer.bufsize for u in lengths)
    assert sum(lengths) == len(data)
    assert len(lengths) == 3
    assert joined(streams[1]) == data


def test_empty_close_writes_empty_blocks():
    out = io.BytesIO()
    StreamWriter(out, 2, 4096, 2, rzip_opts()).close()
    _, _, _, streams = parse(out.getvalue(), 2)
    for blocks in streams:
        assert [(c, u) for _, c, u, _ in blocks] == [(0, 0)]


def test_writer_at_nonzero_offset():
    out = io.BytesIO()
    out.write(b"XYZ")
    writer = StreamWriter(out, 2, 4096, 2, rzip_opts())
    writer.write(0, b"payload")
    writer.close()
    raw = out.getvalue()
    assert raw[:3] == b"XYZ"
    _, _, _, streams = parse(raw, 2, start=3)
    assert joined(streams[0]) == b"payload"


def test_gzip_blocks_compress_and_round_trip():
    out = io.BytesIO()
    opts = CompressionOptions(method=CompressionMethod.GZIP, level=6)
    data = b"".join(f"line {i % 50}\n".encode() for i in range(3000))
    writer = StreamWriter(out, 2, len(data) + 10, 4, opts)
    writer.write(1, data)
    writer.close()
    _, _, _, streams = parse(out.getvalue(), 2)
    types = {c for c, _, u, _ in streams[1] if u}
    assert types == {CompressionType.GZIP}
    assert sum(c for _, c, _, _ in streams[1]) < len(data)
    assert joined(streams[1]) == data


def test_lzma_records_properties():
    out = io.BytesIO()
    opts = CompressionOptions(method=CompressionMethod.LZMA, level=7)
    data = b"abcdefgh" * 2000
    writer = StreamWriter(out, 2, 1 << 20, 4, opts)
    writer.write(0, data)
    writer.close()
    assert writer.lzma_properties is not None
    assert len(writer.lzma_properties) == 5
    _, _, _, streams = parse(out.getvalue(), 2)
    assert streams[0][0][0] == CompressionType.LZMA
    assert joined(streams[0], writer.lzma_properties) == data


def test_threaded_writes_keep_order():
    out = io.BytesIO()
    opts = CompressionOptions(method=CompressionMethod.GZIP, threads=3)
    data = b"".join(f"record {i}\n".encode() for i in range(4000))
    writer = StreamWriter(out, 2, 4096, 4, opts)
    writer.write(1, data)
    writer.write(0, b"tail")
    writer.close()
    _, _, _, streams = parse(out.getvalue(), 2)
    assert len(streams[1]) > 3
    assert joined(streams[1]) == data
    assert joined(streams[0]) == b"tail"


def test_thread_count_reduced_for_small_ram():
    mb = 1024 * 1024
    opts = CompressionOptions(
        method=CompressionMethod.GZIP, threads=4, usable_ram=40 * mb, overhead=8 * mb
    )
    writer = StreamWriter(io.BytesIO(), 2, 50 * mb, 4, opts)
    assert writer.threads == 2
    assert writer.bufsize >= STREAM_BUFSIZE
    writer.close()


def test_rzip_method_uses_one_thread():
    writer = StreamWriter(io.BytesIO(), 2, 4096, 2, rzip_opts(threads=4))
    assert writer.threads == 1
    writer.close()


def test_invalid_stream_number():
    writer = StreamWriter(io.BytesIO(), 2, 4096, 2, rzip_opts())
    with pytest.raises(ValueError):
        writer.write(2, b"a")
    writer.close()


def test_write_after_close_fails():
    writer = StreamWriter(io.BytesIO(), 2, 4096, 2, rzip_opts())
    writer.close()
    assert writer.closed
    with pytest.raises(ValueError):
        writer.write(0, b"a")


@pytest.mark.parametrize("width", [0, 9])
def test_invalid_chunk_bytes(width):
    with pytest.raises(ValueError):
        StreamWriter(io.BytesIO(), 2, 4096, width, rzip_opts())


def test_invalid_level_rejected():
    with pytest.raises(ValueError):
        CompressionOptions(level=10)