"""Vector helpers shared by the caches: float32 codec, stable hashing, cosine."""

import base64
import hashlib
import math
from typing import Sequence, Union

import numpy as np

VectorLike = Union[Sequence[float], np.ndarray]

NORM_EPSILON = 1e-12


def to_vector(values) -> np.ndarray:
    """Coerce list / tuple / ndarray into a flat float32 array (empty on None)."""
    if values is None:
        return np.zeros(0, dtype=np.float32)
    return np.asarray(values, dtype=np.float32).reshape(-1)


def encode_vector(vector: VectorLike) -> str:
    """Pack as little-endian float32 bytes, base64 encoded."""
    arr = np.asarray(vector, dtype="<f4").reshape(-1)
    return base64.b64encode(arr.tobytes()).decode("ascii")


def decode_vector(encoded: str) -> np.ndarray:
    """Inverse of encode_vector. Trailing partial floats are ignored."""
    raw = base64.b64decode(encoded)
    usable = len(raw) - (len(raw) % 4)
    return np.frombuffer(raw[:usable], dtype="<f4").astype(np.float32)


def stable_hash(text: str, length: int = 32) -> str:
    """Truncated SHA-256 hex digest."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    dot(a, b) / (|a| * |b|) with norms floored at NORM_EPSILON.

    Computed as dot / sqrt(|a|^2 * |b|^2) so a vector compared with itself
    scores exactly 1.0.
    """
    a64 = np.asarray(a, dtype=np.float64)
    b64 = np.asarray(b, dtype=np.float64)
    floor = NORM_EPSILON * NORM_EPSILON
    denom = math.sqrt(max(float(np.dot(a64, a64)), floor) * max(float(np.dot(b64, b64)), floor))
    sim = float(np.dot(a64, b64)) / denom
    if math.isnan(sim):
        return 0.0
    return max(-1.0, min(1.0, sim))
