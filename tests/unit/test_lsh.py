"""Tests for random-hyperplane LSH."""

import numpy as np
import pytest

from backend.core.caching.lsh import (
    MAX_SIGNATURE_BITS,
    HyperplaneCache,
    RandomHyperplaneLSH,
    gaussian,
    mulberry32,
)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def lsh():
    return RandomHyperplaneLSH(bits=16, seed="resp:v1", model_key="test-model", max_radius=2)


@pytest.fixture
def vector():
    rng = np.random.default_rng(7)
    return rng.normal(size=64).astype(np.float32)


# ============================================================================
# Generator
# ============================================================================


class TestGenerator:
    """Test the portable PRNG."""

    def test_same_seed_same_sequence(self):
        a = mulberry32(12345)
        b = mulberry32(12345)
        assert [a() for _ in range(10)] == [b() for _ in range(10)]

    def test_different_seed_different_sequence(self):
        a = mulberry32(1)
        b = mulberry32(2)
        assert [a() for _ in range(5)] != [b() for _ in range(5)]

    def test_range(self):
        rng = mulberry32(99)
        values = [rng() for _ in range(1000)]
        assert all(0.0 <= v < 1.0 for v in values)

    def test_gaussian_roughly_standard(self):
        rng = mulberry32(2024)
        samples = np.array([gaussian(rng) for _ in range(5000)])
        assert abs(samples.mean()) < 0.1
        assert abs(samples.std() - 1.0) < 0.1


# ============================================================================
# Hyperplanes
# ============================================================================


class TestHyperplaneCache:
    """Test per-dimension hyperplane generation."""

    def test_shape_and_unit_rows(self):
        cache = HyperplaneCache(bits=8, seed="s", model_key="m")
        planes = cache.get(32)
        assert planes.shape == (8, 32)
        np.testing.assert_allclose(np.linalg.norm(planes, axis=1), 1.0, rtol=1e-9)

    def test_cached_per_dimension(self):
        cache = HyperplaneCache(bits=4, seed="s", model_key="m")
        first = cache.get(16)
        assert cache.get(16) is first
        assert 16 in cache
        cache.get(8)
        assert len(cache) == 2

    def test_deterministic_across_instances(self):
        a = HyperplaneCache(bits=4, seed="s", model_key="m").get(10)
        b = HyperplaneCache(bits=4, seed="s", model_key="m").get(10)
        np.testing.assert_array_equal(a, b)

    def test_model_key_changes_planes(self):
        a = HyperplaneCache(bits=4, seed="s", model_key="m1").get(10)
        b = HyperplaneCache(bits=4, seed="s", model_key="m2").get(10)
        assert not np.array_equal(a, b)

    def test_seed_for_is_unsigned_32_bit(self):
        seed = HyperplaneCache(bits=4, seed="s", model_key="m").seed_for(1024)
        assert 0 <= seed < 2 ** 32

    def test_clear(self):
        cache = HyperplaneCache(bits=4, seed="s", model_key="m")
        cache.get(4)
        cache.clear()
        assert len(cache) == 0


# ============================================================================
# Signatures
# ============================================================================


class TestSignature:
    """Test signature()."""

    def test_deterministic_across_instances(self, vector):
        a = RandomHyperplaneLSH(bits=16, seed="resp:v1", model_key="test-model")
        b = RandomHyperplaneLSH(bits=16, seed="resp:v1", model_key="test-model")
        assert a.signature(vector) == b.signature(vector)
        assert a.signature(vector) == a.signature(vector)

    def test_fits_in_bit_width(self, lsh, vector):
        assert 0 <= lsh.signature(vector) < 2 ** 16

    def test_accepts_lists(self, lsh, vector):
        assert lsh.signature(vector.tolist()) == lsh.signature(vector)

    def test_scale_invariant(self, lsh, vector):
        assert lsh.signature(vector * 10) == lsh.signature(vector)

    def test_negated_vector_flips_all_bits(self, lsh, vector):
        sig = lsh.signature(vector)
        flipped = lsh.signature(-vector)
        assert sig ^ flipped == (1 << 16) - 1

    def test_bit_set_iff_non_negative_dot(self, lsh, vector):
        planes = lsh.get_hyperplanes(vector.size)
        sig = lsh.signature(vector)
        for b, plane in enumerate(planes):
            expected = np.dot(plane, vector.astype(np.float64)) >= 0
            assert bool(sig & (1 << b)) == expected

    def test_similar_vectors_share_most_bits(self, lsh, vector):
        near = vector + np.float32(0.01) * np.ones_like(vector)
        distance = lsh.hamming_distance(lsh.signature(vector), lsh.signature(near))
        assert distance <= 2

    def test_empty_vector_rejected(self, lsh):
        with pytest.raises(ValueError):
            lsh.signature([])

    def test_zero_vector_sets_every_bit(self, lsh):
        assert lsh.signature(np.zeros(8)) == (1 << 16) - 1


# ============================================================================
# Neighbors
# ============================================================================


class TestNeighbors:
    """Test neighbors()."""

    def test_radius_zero(self, lsh):
        assert lsh.neighbors(0b1010, radius=0) == [0b1010]

    def test_radius_one_complete(self, lsh):
        sig = 0xBEEF
        codes = lsh.neighbors(sig, radius=1)
        assert len(codes) == 16 + 1
        assert len(set(codes)) == len(codes)
        assert codes[0] == sig
        assert all(lsh.hamming_distance(sig, c) <= 1 for c in codes)

    def test_radius_one_order(self, lsh):
        codes = lsh.neighbors(0, radius=1)
        assert codes == [0] + [1 << b for b in range(16)]

    def test_radius_two_complete(self, lsh):
        sig = 0x1234
        codes = lsh.neighbors(sig, radius=2)
        assert len(codes) == 1 + 16 + 16 * 15 // 2
        assert len(set(codes)) == len(codes)
        assert all(lsh.hamming_distance(sig, c) <= 2 for c in codes)

    def test_radius_two_pairs_follow_singles(self, lsh):
        codes = lsh.neighbors(0, radius=2)
        assert codes[17] == 0b11
        assert codes[18] == 0b101

    def test_radius_clamped(self, lsh):
        assert lsh.neighbors(7, radius=5) == lsh.neighbors(7, radius=2)


# ============================================================================
# Construction
# ============================================================================


class TestConstruction:
    """Test argument validation."""

    @pytest.mark.parametrize("bits", [0, MAX_SIGNATURE_BITS + 1, -3])
    def test_bits_out_of_range(self, bits):
        with pytest.raises(ValueError):
            RandomHyperplaneLSH(bits=bits)

    def test_negative_max_radius(self):
        with pytest.raises(ValueError):
            RandomHyperplaneLSH(bits=8, max_radius=-1)

    def test_shared_hyperplane_cache(self):
        cache = HyperplaneCache(bits=8, seed="s", model_key="m")
        lsh = RandomHyperplaneLSH(bits=8, seed="s", model_key="m", hyperplanes=cache)
        lsh.signature(np.ones(12))
        assert 12 in cache

    def test_mismatched_hyperplane_cache(self):
        cache = HyperplaneCache(bits=4, seed="s", model_key="m")
        with pytest.raises(ValueError):
            RandomHyperplaneLSH(bits=8, seed="s", model_key="m", hyperplanes=cache)

    def test_max_bits_supported(self, vector):
        lsh = RandomHyperplaneLSH(bits=MAX_SIGNATURE_BITS)
        assert 0 <= lsh.signature(vector) < 2 ** MAX_SIGNATURE_BITS
