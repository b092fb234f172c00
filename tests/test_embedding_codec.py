"""Tests for the compact embedding codec used in export files."""

import base64
import struct

import pytest

from bookmark_rag.core.embedding_codec import SCALE, decode_embedding, encode_embedding, is_encoded_embedding


class TestEncode:
    def test_encoded_is_base64_int16(self):
        encoded = encode_embedding([0.0, 1.0, -1.0])

        raw = base64.b64decode(encoded)
        assert struct.unpack("<3h", raw) == (0, SCALE, -SCALE)

    def test_values_are_clamped(self):
        decoded = decode_embedding(encode_embedding([3.5, -7.0]))

        assert decoded == [1.0, -1.0]

    def test_quantization_error_is_small(self):
        vector = [0.123456, -0.654321, 0.999, -0.001]

        decoded = decode_embedding(encode_embedding(vector))

        assert decoded == pytest.approx(vector, abs=1.0 / SCALE)


class TestDecode:
    def test_raw_number_list_is_accepted(self):
        assert decode_embedding([1, 0.5, -2]) == [1.0, 0.5, -2.0]

    @pytest.mark.parametrize(
        "value",
        [None, "", "abc", "not base64!!", [], ["a", 1], [True, False], 42, {"v": [1]}],
    )
    def test_invalid_values(self, value):
        assert decode_embedding(value) is None

    def test_odd_byte_length_is_invalid(self):
        assert decode_embedding(base64.b64encode(b"\x01\x02\x03").decode()) is None

    def test_is_encoded_embedding(self):
        assert is_encoded_embedding(encode_embedding([0.1, 0.2]))
        assert not is_encoded_embedding("a b c d")
        assert not is_encoded_embedding([0.1])
