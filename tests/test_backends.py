import random

import pytest

from lrzpack.backends import (
    BackendError,
    CompressedBlock,
    CompressionMethod,
    CompressionType,
    compress_block,
    crc_update,
    decompress_block,
    lz4_compresses,
)

TEXT = b"the quick brown fox jumps over the lazy dog. " * 400


def _noise(n):
    return random.Random(1234).randbytes(n)


def test_crc_check_value():
    assert crc_update(0xFFFFFFFF, b"123456789") ^ 0xFFFFFFFF == 0xCBF43926


def test_crc_empty_keeps_register():
    assert crc_update(0, b"") == 0
    assert crc_update(0x1234, b"") == 0x1234


def test_crc_incremental_matches_one_shot():
    whole = crc_update(0, TEXT)
    parts = crc_update(crc_update(0, TEXT[:777]), TEXT[777:])
    assert whole == parts


@pytest.mark.parametrize(
    "method, ctype",
    [
        (CompressionMethod.BZIP2, CompressionType.BZIP2),
        (CompressionMethod.GZIP, CompressionType.GZIP),
        (CompressionMethod.LZMA, CompressionType.LZMA),
    ],
)
def test_round_trip(method, ctype):
    block = compress_block(TEXT, method, 7)
    assert block.ctype == ctype
    assert block.c_len < len(TEXT)
    assert block.u_len == len(TEXT)
    out = decompress_block(block.ctype, block.payload, block.u_len, block.lzma_properties)
    assert out == TEXT


def test_lzma_properties_shape():
    block = compress_block(TEXT, CompressionMethod.LZMA, 9)
    assert len(block.lzma_properties) == 5
    assert block.lzma_properties[0] == 93


def test_short_block_left_uncompressed():
    data = b"a" * 63
    block = compress_block(data, CompressionMethod.BZIP2, 7)
    assert block.ctype == CompressionType.NONE
    assert block.payload == data


def test_rzip_method_leaves_data():
    block = compress_block(TEXT, CompressionMethod.NONE, 7)
    assert block.ctype == CompressionType.NONE
    assert block.c_len == len(TEXT)


@pytest.mark.parametrize(
    "method", [CompressionMethod.BZIP2, CompressionMethod.GZIP, CompressionMethod.LZMA]
)
def test_incompressible_left_uncompressed(method):
    data = _noise(5000)
    block = compress_block(data, method, 7)
    assert block.ctype == CompressionType.NONE
    assert block.payload == data


def test_lz4_detects_compressible_and_not():
    assert lz4_compresses(TEXT) is True
    assert lz4_compresses(_noise(4096)) is False
    assert lz4_compresses(b"") is False


def test_lz4_test_can_be_disabled():
    data = _noise(5000)
    block = compress_block(data, CompressionMethod.BZIP2, 7, lz4_test=False)
    assert block.ctype == CompressionType.NONE
    assert block.u_len == 5000


def test_decompress_none_returns_payload():
    assert decompress_block(CompressionType.NONE, b"abc", 3) == b"abc"


def test_decompress_length_mismatch():
    block = compress_block(TEXT, CompressionMethod.GZIP, 6)
    with pytest.raises(BackendError, match="Inconsistent length"):
        decompress_block(block.ctype, block.payload, block.u_len + 1)


def test_decompress_corrupt_data():
    with pytest.raises(BackendError):
        decompress_block(CompressionType.BZIP2, b"not bzip2 data", 10)


def test_unknown_type_rejected():
    with pytest.raises(BackendError):
        decompress_block(99, b"x", 1)


def test_lzma_requires_properties():
    block = compress_block(TEXT, CompressionMethod.LZMA, 5)
    with pytest.raises(BackendError):
        decompress_block(block.ctype, block.payload, block.u_len, None)


def test_unavailable_methods_raise():
    with pytest.raises(BackendError):
        compress_block(TEXT, CompressionMethod.LZO, 7)
    with pytest.raises(BackendError):
        compress_block(TEXT, CompressionMethod.ZPAQ, 7)


def test_block_c_len_follows_payload():
    block = CompressedBlock(CompressionType.GZIP, b"12345", 10)
    assert block.c_len == 5