"""
dhash.py

Difference hash (dHash) over a 9x8 grayscale frame.

Each of the 8 rows gives 8 left-vs-right comparisons, so the fingerprint is
64 bits. Bit i (i = row * 8 + col, least significant first) is set when the
pixel is brighter than its right-hand neighbour.
"""

from __future__ import annotations

from .errors import InvalidFrameSize

HASH_W = 9
HASH_H = 8
FRAME_BYTES = HASH_W * HASH_H  # 72
HASH_BITS = 64


def dhash_9x8(gray: bytes) -> int:
    if len(gray) != FRAME_BYTES:
        raise InvalidFrameSize(len(gray), FRAME_BYTES)

    bits = 0
    pos = 0
    for y in range(HASH_H):
        row = y * HASH_W
        for x in range(HASH_W - 1):
            if gray[row + x] > gray[row + x + 1]:
                bits |= 1 << pos
            pos += 1
    return bits


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def max_distance_for(threshold: float) -> int:
    """Match threshold (0..1 of the 64 bits) -> largest distance still counted as a match."""
    return max(0, min(HASH_BITS, round(threshold * HASH_BITS)))


def format_hash(h: int) -> str:
    return f"{h:016x}"
