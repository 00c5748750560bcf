"""
Random-Hyperplane LSH for the semantic response cache.

Each of B unit hyperplanes contributes one signature bit (1 iff dot >= 0).
Vectors with high cosine similarity tend to share most bits, so probing all
buckets within a small Hamming radius of the query signature finds likely
neighbours without scanning every record.

Hyperplanes are derived from (seed, model_key, dim) with a portable 32-bit
generator so every process - and every writer sharing a Redis - computes the
same planes and therefore the same bucket keys.
"""

import logging
import math
from itertools import combinations
from typing import Callable, Optional

import numpy as np

from .vectors import VectorLike, stable_hash, to_vector

logger = logging.getLogger(__name__)

MAX_SIGNATURE_BITS = 32
_MASK32 = 0xFFFFFFFF


def _imul(a: int, b: int) -> int:
    return (a * b) & _MASK32


def mulberry32(seed: int) -> Callable[[], float]:
    """Deterministic uniform [0, 1) generator (mulberry32)."""
    state = seed & _MASK32

    def next_float() -> float:
        nonlocal state
        state = (state + 0x6D2B79F5) & _MASK32
        t = state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & _MASK32
        return ((t ^ (t >> 14)) & _MASK32) / 4294967296.0

    return next_float


def gaussian(rng: Callable[[], float]) -> float:
    """Standard normal sample via Box-Muller."""
    u = 0.0
    v = 0.0
    while u == 0.0:
        u = rng()
    while v == 0.0:
        v = rng()
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


class HyperplaneCache:
    """
    Per-dimension hyperplane sets for one (seed, model_key, bits) family.

    Owned by a RandomHyperplaneLSH instance; dimension is the cache key, so a
    vector of a new dimension gets its own planes instead of meaningless bits.
    """

    def __init__(self, bits: int, seed: str, model_key: str):
        self.bits = bits
        self.seed = seed
        self.model_key = model_key
        self._planes: dict[int, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._planes)

    def __contains__(self, dim: int) -> bool:
        return dim in self._planes

    def seed_for(self, dim: int) -> int:
        return int(stable_hash(f"{self.seed}:{self.model_key}:{dim}")[:8], 16)

    def get(self, dim: int) -> np.ndarray:
        """Return a (bits, dim) float64 matrix of unit-length planes."""
        planes = self._planes.get(dim)
        if planes is not None:
            return planes

        rng = mulberry32(self.seed_for(dim))
        planes = np.empty((self.bits, dim), dtype=np.float64)
        for b in range(self.bits):
            row = np.fromiter((gaussian(rng) for _ in range(dim)), dtype=np.float64, count=dim)
            norm = float(np.sqrt(np.dot(row, row))) or 1e-12
            planes[b] = row / norm

        self._planes[dim] = planes
        logger.debug(
            f"Generated {self.bits} hyperplanes for dim={dim} model_key={self.model_key}"
        )
        return planes

    def clear(self) -> None:
        self._planes.clear()


class RandomHyperplaneLSH:
    """
    Multi-probe random-hyperplane LSH.

    Usage:
        lsh = RandomHyperplaneLSH(bits=16, seed="resp:v1", model_key="cohere/embed-v3")
        sig = lsh.signature(vector)
        for code in lsh.neighbors(sig, radius=1):
            ...
    """

    def __init__(
        self,
        bits: int = 16,
        seed: str = "default",
        model_key: str = "default",
        max_radius: int = 2,
        hyperplanes: Optional[HyperplaneCache] = None,
    ):
        if not 1 <= bits <= MAX_SIGNATURE_BITS:
            raise ValueError(f"bits must be in [1, {MAX_SIGNATURE_BITS}], got {bits}")
        if max_radius < 0:
            raise ValueError(f"max_radius must be >= 0, got {max_radius}")

        self.bits = bits
        self.seed = seed
        self.model_key = model_key
        self.max_radius = max_radius
        self.hyperplanes = hyperplanes or HyperplaneCache(bits=bits, seed=seed, model_key=model_key)
        if self.hyperplanes.bits != bits:
            raise ValueError("hyperplane cache bit-width does not match LSH bit-width")

    def get_hyperplanes(self, dim: int) -> np.ndarray:
        return self.hyperplanes.get(dim)

    def signature(self, vector: VectorLike) -> int:
        """B-bit unsigned signature; bit i set iff dot(vector, plane_i) >= 0."""
        v = to_vector(vector).astype(np.float64)
        if v.size == 0:
            raise ValueError("cannot sign an empty vector")

        planes = self.get_hyperplanes(v.size)
        sides = planes @ v >= 0
        sig = 0
        for b, side in enumerate(sides):
            if side:
                sig |= 1 << b
        return sig

    def neighbors(self, sig: int, radius: int = 1) -> list[int]:
        """
        All signatures within Hamming distance <= radius, nearest first.

        Order: sig, then 1-bit flips by bit index, then 2-bit flips by (i, j).
        Radius above max_radius is clamped.
        """
        if radius > self.max_radius:
            logger.warning(
                f"Hamming radius {radius} exceeds max_radius={self.max_radius}; clamping"
            )
            radius = self.max_radius

        codes = [sig & _MASK32]
        for r in range(1, max(radius, 0) + 1):
            for flip in combinations(range(self.bits), r):
                code = sig
                for bit in flip:
                    code ^= 1 << bit
                codes.append(code & _MASK32)
        return codes

    @staticmethod
    def hamming_distance(a: int, b: int) -> int:
        return bin(a ^ b).count("1")
