"""Authentication suffix for generation-1 `A1` custom commands.

The sensor firmware only accepts an `A1` subcommand below 0x20 when it is
followed by four bytes derived from the sensor UID, the subcommand code and a
16-bit seed. The transform is a small fixed keystream: the UID words and the
inputs are mixed into four 16-bit words, run through eight rounds of a
two-bit feedback step keyed by `KEY`, and whitened.
"""

from __future__ import annotations

DEFAULT_SEED = 0x1B6A
KEY = (0xA0C5, 0x6860, 0x0000, 0x14C6)

_MASK = 0xFFFF


def _word(high: int, low: int) -> int:
    return (high << 8) | low


def _prepare(uid: bytes, x: int, y: int) -> tuple[int, int, int, int]:
    s1 = (_word(uid[5], uid[4]) + x + y) & _MASK
    s2 = (_word(uid[3], uid[2]) + KEY[2]) & _MASK
    s3 = (_word(uid[1], uid[0]) + x * 2) & _MASK
    s4 = 0x241A ^ KEY[3]
    return s1, s2, s3, s4


def _op(value: int) -> int:
    result = value >> 2
    if value & 1:
        result ^= KEY[1]
    if value & 2:
        result ^= KEY[0]
    return result & _MASK


def _process(words: tuple[int, int, int, int]) -> tuple[int, int, int, int]:
    r0 = _op(words[0]) ^ words[3]
    r1 = _op(r0) ^ words[2]
    r2 = _op(r1) ^ words[1]
    r3 = _op(r2) ^ words[0]
    r4 = _op(r3)
    r5 = _op(r4 ^ r0)
    r6 = _op(r5 ^ r1)
    r7 = _op(r6 ^ r2)
    return r3 ^ r7, r2 ^ r6, r1 ^ r5, r0 ^ r4


def useful_function(uid: bytes, x: int, y: int = DEFAULT_SEED) -> bytes:
    """Derive the 4-byte suffix for subcommand `x` with seed `y`."""
    if len(uid) < 6:
        raise ValueError(f"Sensor UID must have at least 6 bytes, got {len(uid)}")
    block_key = _process(_prepare(uid, x & _MASK, y & _MASK))
    low = block_key[0] ^ 0x4163
    high = block_key[1] ^ 0x4344
    return bytes([low & 0xFF, low >> 8, high & 0xFF, high >> 8])
