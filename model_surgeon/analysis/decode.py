"""
Numeric decoding of raw tensor bytes into a flat float64 array.

Half and 8-bit float formats are decoded from their bit fields through lookup
tables built once per process, so every decode is a single vectorized gather.
"""

from __future__ import annotations

from functools import lru_cache

import numpy as np

from model_surgeon.errors import InvalidDtype
from model_surgeon.formats.safetensors import DTYPE_SIZES

# Little-endian reinterpretations for the formats numpy reads directly.
_DIRECT = {
    "F64": np.dtype("<f8"),
    "F32": np.dtype("<f4"),
    "I64": np.dtype("<i8"),
    "I32": np.dtype("<i4"),
    "I16": np.dtype("<i2"),
    "I8": np.dtype("i1"),
    "U8": np.dtype("u1"),
}


def f16_bits_to_f32_bits(h: np.ndarray) -> np.ndarray:
    """Rebuild float32 bit patterns from IEEE half-precision bit patterns.

    Handles signed zero, subnormals (renormalized into the float32 exponent range),
    infinities and NaN payloads.
    """
    h = h.astype(np.uint32)
    sign = (h & 0x8000) << 16
    exp = (h >> 10) & 0x1F
    mant = h & 0x3FF

    bits = np.zeros_like(h)

    normal = (exp > 0) & (exp < 31)
    bits[normal] = ((exp[normal] + 112) << 23) | (mant[normal] << 13)

    special = exp == 31
    bits[special] = 0x7F800000 | (mant[special] << 13)

    sub = (exp == 0) & (mant != 0)
    if sub.any():
        m = mant[sub]
        # position of the highest set bit, 0..9
        top = (np.frexp(m.astype(np.float64))[1] - 1).astype(np.uint32)
        shifted = (m << (10 - top)) & 0x3FF
        bits[sub] = ((103 + top) << 23) | (shifted << 13)

    return bits | sign


@lru_cache(maxsize=None)
def f16_table() -> np.ndarray:
    bits = f16_bits_to_f32_bits(np.arange(1 << 16, dtype=np.uint32))
    return bits.view(np.float32).astype(np.float64)


def _f8_table(exp_bits: int, mant_bits: int, bias: int, *, ieee_specials: bool) -> np.ndarray:
    codes = np.arange(256, dtype=np.int64)
    sign = np.where(codes & 0x80, -1.0, 1.0)
    exp = (codes >> mant_bits) & ((1 << exp_bits) - 1)
    mant = codes & ((1 << mant_bits) - 1)
    frac = mant / float(1 << mant_bits)

    values = np.where(
        exp == 0,
        np.ldexp(frac, 1 - bias),
        np.ldexp(1.0 + frac, (exp - bias).astype(np.int32)),
    )
    max_exp = (1 << exp_bits) - 1
    if ieee_specials:
        values = np.where((exp == max_exp) & (mant == 0), np.inf, values)
        values = np.where((exp == max_exp) & (mant != 0), np.nan, values)
    else:
        # finite-only variant: only the all-ones pattern is NaN
        values = np.where((exp == max_exp) & (mant == (1 << mant_bits) - 1), np.nan, values)
    return sign * values


@lru_cache(maxsize=None)
def f8_e4m3_table() -> np.ndarray:
    """E4M3 ("fn"): bias 7, no infinities, S.1111.111 is NaN."""
    return _f8_table(4, 3, 7, ieee_specials=False)


@lru_cache(maxsize=None)
def f8_e5m2_table() -> np.ndarray:
    """E5M2: bias 15, IEEE-style infinities and NaN."""
    return _f8_table(5, 2, 15, ieee_specials=True)


def decode_tensor(raw: bytes, dtype: str) -> np.ndarray:
    """Decode raw little-endian bytes of ``dtype`` into a 1-D float64 array.

    Trailing bytes that do not form a whole element are ignored.
    """
    size = DTYPE_SIZES.get(dtype)
    if size is None:
        raise InvalidDtype(f'Cannot decode dtype "{dtype}"')
    n = len(raw) // size
    buf = memoryview(raw)[: n * size]

    direct = _DIRECT.get(dtype)
    if direct is not None:
        return np.frombuffer(buf, dtype=direct).astype(np.float64)
    if dtype == "BOOL":
        return (np.frombuffer(buf, dtype=np.uint8) != 0).astype(np.float64)
    if dtype == "BF16":
        # bf16 is the upper half of a float32
        u32 = np.frombuffer(buf, dtype="<u2").astype(np.uint32) << 16
        return u32.view(np.float32).astype(np.float64)
    if dtype == "F16":
        return f16_table()[np.frombuffer(buf, dtype="<u2")]
    if dtype == "F8_E4M3":
        return f8_e4m3_table()[np.frombuffer(buf, dtype=np.uint8)]
    if dtype == "F8_E5M2":
        return f8_e5m2_table()[np.frombuffer(buf, dtype=np.uint8)]
    raise InvalidDtype(f'Cannot decode dtype "{dtype}"')  # pragma: no cover
