"""
Unit tests for descriptor matchers
"""

import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.append(project_root)

from common.errors import InvalidArgument, InvalidConfiguration
from matching.matcher import (
    available_matchers,
    create_matcher,
    default_matcher_for,
    hamming2_distances,
    hamming_distances,
    register_matcher,
    BruteForceMatcher,
    l1_distances,
)


def _binary(n, seed=0):
    return np.random.default_rng(seed).integers(0, 256, size=(n, 32), dtype=np.uint8)


class TestDistances:
    """Test cases for the distance kernels"""

    def test_hamming_counts_bits(self):
        q = np.array([[0b00000011, 0xFF]], dtype=np.uint8)
        t = np.array([[0, 0], [0b00000011, 0xFF]], dtype=np.uint8)
        np.testing.assert_array_equal(hamming_distances(q, t), [[10.0, 0.0]])

    def test_hamming2_counts_bit_pairs(self):
        q = np.array([[0b00000011, 0b01010101]], dtype=np.uint8)
        t = np.zeros((1, 2), dtype=np.uint8)
        np.testing.assert_array_equal(hamming2_distances(q, t), [[5.0]])

    def test_l1(self):
        q = np.array([[1.0, 2.0]])
        t = np.array([[0.0, 0.0], [1.0, 4.0]])
        np.testing.assert_allclose(l1_distances(q, t), [[3.0, 2.0]])


class TestBruteForceMatcher:
    """Test cases for brute-force matching"""

    def test_registry_has_builtin_families(self):
        names = available_matchers()
        for n in ("BruteForce", "BruteForce-L1", "BruteForce-Hamming", "BruteForce-Hamming(2)", "FlannBased"):
            assert n in names

    def test_unknown_matcher(self):
        with pytest.raises(InvalidConfiguration):
            create_matcher("NoSuchMatcher")

    def test_empty_train_set_yields_no_matches(self):
        """Matching against nothing is not an error"""
        m = create_matcher("BruteForce-Hamming")
        out = m.match(_binary(5), np.zeros((0, 32), dtype=np.uint8))
        assert out.n_queries == 5
        assert len(out) == 0
        out = m.match(_binary(5), np.zeros((0, 32), dtype=np.uint8), knn=True, k=2)
        assert len(out) == 0

    def test_flat_finds_exact_copies(self):
        """Each query copied from a train row matches that row at distance 0"""
        train = _binary(50)
        m = create_matcher("BruteForce-Hamming")
        out = m.match(train[[7, 3, 42]], train)
        assert [c.train_idx for c in out.best()] == [7, 3, 42]
        assert [c.query_idx for c in out.best()] == [0, 1, 2]
        assert all(c.distance == 0.0 for c in out.best())
        assert m.elapsed_ms >= 0.0

    def test_knn_is_sorted(self):
        """k=2 neighbours come back with d1 <= d2"""
        m = create_matcher("BruteForce-Hamming")
        out = m.match(_binary(40, seed=1), _binary(60, seed=2), knn=True, k=2)
        assert out.knn and out.k == 2
        for row in out.neighbours:
            assert len(row) == 2
            assert row[0].distance <= row[1].distance

    def test_knn_returns_fewer_when_train_is_small(self):
        m = create_matcher("BruteForce")
        out = m.match(np.random.default_rng(0).normal(size=(3, 8)), np.ones((1, 8)), knn=True, k=2)
        assert all(len(row) == 1 for row in out.neighbours)

    def test_ties_break_on_lowest_train_index(self):
        """Duplicate train descriptors resolve to the first one, in both modes"""
        base = _binary(1, seed=9)[0]
        train = np.stack([_binary(1, seed=10)[0], base, base, base])
        m = create_matcher("BruteForce-Hamming")
        assert m.match(base[None, :], train).best()[0].train_idx == 1
        row = m.match(base[None, :], train, knn=True, k=3).neighbours[0]
        assert [c.train_idx for c in row] == [1, 2, 3]

    def test_float_descriptors_l2(self):
        rng = np.random.default_rng(4)
        train = rng.normal(size=(30, 16)).astype(np.float32)
        q = train[[5, 9]] + 1e-3
        out = create_matcher("BruteForce").match(q, train)
        assert [c.train_idx for c in out.best()] == [5, 9]
        assert out.best()[0].distance == pytest.approx(1e-3 * 4.0, rel=1e-3)

    def test_chunking_matches_single_block(self, monkeypatch):
        """Row chunking does not change the result"""
        import matching.matcher as mm

        q, t = _binary(37, seed=5), _binary(23, seed=6)
        full = create_matcher("BruteForce-Hamming").match(q, t, knn=True, k=2)
        monkeypatch.setattr(mm, "CHUNK_ELEMENTS", 32 * 23 * 4)
        chunked = create_matcher("BruteForce-Hamming").match(q, t, knn=True, k=2)
        assert full.neighbours == chunked.neighbours

    def test_cross_check_is_subset(self):
        """Cross-checked matches are a subset of plain flat matches"""
        q, t = _binary(60, seed=7), _binary(40, seed=8)
        plain = set(create_matcher("BruteForce-Hamming").match(q, t).best())
        checked = create_matcher("BruteForce-Hamming", cross_check=True).match(q, t).best()
        assert set(checked) <= plain
        assert len(set(c.train_idx for c in checked)) == len(checked)

    def test_cross_check_keeps_mutual_matches(self):
        train = _binary(10, seed=11)
        out = create_matcher("BruteForce-Hamming", cross_check=True).match(train[::-1], train)
        assert len(out.best()) == 10

    def test_width_mismatch(self):
        with pytest.raises(InvalidArgument):
            create_matcher("BruteForce-Hamming").match(_binary(2), np.zeros((3, 64), dtype=np.uint8))

    def test_type_mismatch(self):
        with pytest.raises(InvalidArgument):
            create_matcher("BruteForce").match(_binary(2), np.zeros((3, 32), dtype=np.float32))

    def test_hamming_needs_uint8(self):
        with pytest.raises(InvalidArgument):
            create_matcher("BruteForce-Hamming").match(np.zeros((2, 32)), np.zeros((3, 32)))

    def test_default_matcher_for(self):
        assert default_matcher_for(_binary(1)) == "BruteForce-Hamming"
        assert default_matcher_for(np.zeros((1, 4), dtype=np.float32)) == "BruteForce"

    def test_register_matcher(self):
        """New families register without touching the pipeline"""
        register_matcher("Test-L1", lambda cc: BruteForceMatcher("Test-L1", l1_distances, False, cc))
        out = create_matcher("Test-L1").match(np.zeros((1, 2)), np.array([[1.0, 1.0], [0.5, 0.0]]))
        assert out.best()[0].train_idx == 1


class TestFlannMatcher:
    """Test cases for the approximate matcher"""

    def test_float_knn(self):
        rng = np.random.default_rng(12)
        train = rng.normal(size=(200, 32)).astype(np.float32)
        out = create_matcher("FlannBased").match(train[:20], train, knn=True, k=2)
        assert out.n_queries == 20
        for i, row in enumerate(out.neighbours):
            assert row[0].train_idx == i
            assert row[0].distance <= row[1].distance

    def test_cross_check_not_supported(self):
        with pytest.raises(InvalidConfiguration):
            create_matcher("FlannBased", cross_check=True)
