"""
Tests for PickleCodec: values appended to one stream decode back in order.
"""

import io
from fractions import Fraction

import pytest

from src.rank_gather.gather.codec import PickleCodec


def encode_all(codec, values):
    stream = bytearray()
    for value in values:
        codec.encode(value, stream)
    return stream


def decode_all(codec, data, count):
    stream = io.BytesIO(data)
    values = [codec.decode(stream) for _ in range(count)]
    return values, stream.tell()


class TestPickleCodec:

    def test_encode_appends_to_stream(self):
        codec = PickleCodec()
        stream = bytearray(b"prefix")
        codec.encode("value", stream)

        assert stream.startswith(b"prefix")
        assert len(stream) > len(b"prefix")

    def test_sequence_decodes_in_order(self):
        codec = PickleCodec()
        values = ["a", {"k": [1, 2]}, Fraction(3, 4), None, (1.5, "x")]
        data = encode_all(codec, values)

        decoded, position = decode_all(codec, data, len(values))

        assert decoded == values
        assert position == len(data)

    def test_decode_leaves_stream_after_value(self):
        codec = PickleCodec()
        data = encode_all(codec, [[1, 2, 3], "next"])
        stream = io.BytesIO(data)

        assert codec.decode(stream) == [1, 2, 3]
        assert stream.tell() == len(encode_all(codec, [[1, 2, 3]]))
        assert codec.decode(stream) == "next"

    def test_decode_from_offset(self):
        codec = PickleCodec()
        data = bytearray(b"\x00" * 5)
        codec.encode([1, 2, 3], data)
        stream = io.BytesIO(data)
        stream.seek(5)

        assert codec.decode(stream) == [1, 2, 3]
        assert stream.tell() == len(data)

    def test_truncated_stream_raises(self):
        codec = PickleCodec()
        data = encode_all(codec, ["a long enough string to cut in half"])
        truncated = io.BytesIO(bytes(data[:len(data) // 2]))

        with pytest.raises(Exception):
            codec.decode(truncated)

    def test_protocol_is_configurable(self):
        codec = PickleCodec(protocol=2)
        data = encode_all(codec, [42])

        assert data[:2] == b"\x80\x02"
