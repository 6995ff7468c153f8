"""Vector helpers: normalization, cosine similarity and float32 blob packing."""

import array
import math
import sys


def normalize(vec) -> list[float]:
    """Scale to unit length. A zero vector is returned unchanged."""
    norm = math.sqrt(sum(x * x for x in vec))
    if norm == 0:
        return [float(x) for x in vec]
    return [x / norm for x in vec]


def cosine_similarity(a, b) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def to_bytes(vec) -> bytes:
    """Pack as little-endian float32."""
    arr = array.array("f", vec)
    if sys.byteorder != "little":
        arr.byteswap()
    return arr.tobytes()


def from_bytes(blob: bytes) -> list[float]:
    arr = array.array("f")
    arr.frombytes(blob)
    if sys.byteorder != "little":
        arr.byteswap()
    return arr.tolist()
