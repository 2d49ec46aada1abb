"""
Tests for decoding raw tensor bytes into float64 arrays.
"""

import numpy as np
import pytest

from model_surgeon.analysis.decode import decode_tensor, f8_e4m3_table, f8_e5m2_table, f16_table
from model_surgeon.errors import InvalidDtype


class TestHalfPrecision:
    def test_f16_table_matches_numpy(self):
        """Every one of the 65536 bit patterns decodes like numpy's float16."""
        expected = np.arange(1 << 16, dtype=np.uint16).view(np.float16).astype(np.float64)
        np.testing.assert_array_equal(f16_table(), expected)
        assert np.array_equal(np.signbit(f16_table()), np.signbit(expected))

    def test_f16_specials(self):
        raw = np.array([0x3C00, 0xC000, 0x7C00, 0xFC00, 0x0001, 0x7BFF, 0x8000], dtype="<u2").tobytes()
        values = decode_tensor(raw, "F16")
        assert values[:2].tolist() == [1.0, -2.0]
        assert np.isposinf(values[2]) and np.isneginf(values[3])
        assert values[4] == 2.0 ** -24
        assert values[5] == 65504.0
        assert values[6] == 0.0 and np.signbit(values[6])

    def test_f16_nan(self):
        assert np.isnan(decode_tensor(np.array([0x7E00], dtype="<u2").tobytes(), "F16")[0])

    def test_bf16_is_upper_half_of_f32(self):
        raw = np.array([0x3F80, 0xC040, 0x0000], dtype="<u2").tobytes()
        assert decode_tensor(raw, "BF16").tolist() == [1.0, -3.0, 0.0]


class TestEightBitFloats:
    def test_e4m3_values(self):
        table = f8_e4m3_table()
        assert table[0x38] == 1.0
        assert table[0x7E] == 448.0
        assert table[0x01] == 2.0 ** -9
        assert table[0xB8] == -1.0
        assert np.isnan(table[0x7F]) and np.isnan(table[0xFF])
        # no infinities in this variant
        assert not np.isinf(table).any()
        assert np.isnan(table).sum() == 2

    def test_e5m2_values(self):
        table = f8_e5m2_table()
        assert table[0x3C] == 1.0
        assert table[0x7B] == 57344.0
        assert table[0x01] == 2.0 ** -16
        assert np.isposinf(table[0x7C]) and np.isneginf(table[0xFC])
        assert np.isnan(table[0x7D])

    def test_decode_uses_tables(self):
        assert decode_tensor(bytes([0x38, 0x40]), "F8_E4M3").tolist() == [1.0, 2.0]
        assert decode_tensor(bytes([0x3C, 0x40]), "F8_E5M2").tolist() == [1.0, 2.0]


class TestDirectFormats:
    @pytest.mark.parametrize(
        "dtype, np_dtype",
        [("F64", "<f8"), ("F32", "<f4"), ("I64", "<i8"), ("I32", "<i4"), ("I16", "<i2"), ("I8", "i1"), ("U8", "u1")],
    )
    def test_reinterpreted_little_endian(self, dtype, np_dtype):
        values = np.array([-1, 0, 3], dtype=np.float64)
        if dtype == "U8":
            values = np.array([255, 0, 3], dtype=np.float64)
        raw = values.astype(np_dtype).tobytes()
        assert decode_tensor(raw, dtype).tolist() == values.tolist()

    def test_bool(self):
        assert decode_tensor(bytes([0, 1, 7]), "BOOL").tolist() == [0.0, 1.0, 1.0]

    def test_trailing_partial_element_ignored(self):
        raw = np.array([1.5], dtype="<f4").tobytes() + b"\x00\x00"
        assert decode_tensor(raw, "F32").tolist() == [1.5]

    def test_unknown_dtype(self):
        with pytest.raises(InvalidDtype):
            decode_tensor(b"\x00" * 4, "Q4_K")
