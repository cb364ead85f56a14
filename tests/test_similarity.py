"""
Tests for kernel functions and similarity matrices.
"""

import math

import numpy as np
import pytest

from malheur.analysis.similarity import (
    KERNELS,
    SimilarityEngine,
    VectorBlock,
    kernel_range,
)
from malheur.errors import ConfigError, DataError, ResourceError
from malheur.features.hashing import FeatureHasher
from malheur.features.reports import reports_from_tokens
from malheur.features.vectors import FeatureVector, FeatureVectorCollection, build_collection


class TestPairwise:
    """Test pairwise similarity."""

    def test_linear_kernel_scenario(self, abc_collection):
        """Test the linear kernel on {a, b}, {a}, {c}."""
        engine = SimilarityEngine("linear")
        a, b, c = abc_collection
        assert engine.similarity(a, a) == 2.0
        assert engine.similarity(a, b) == 1.0
        assert engine.similarity(a, c) == 0.0
        assert engine.similarity(b, c) == 0.0

    def test_cosine_value(self, abc_collection):
        """Test cosine of {a, b} and {a}."""
        engine = SimilarityEngine("cosine")
        a, b, _ = abc_collection
        assert engine.similarity(a, b) == pytest.approx(1 / math.sqrt(2))

    def test_tanimoto_value(self, abc_collection):
        """Test Tanimoto of {a, b} and {a}: 1 / (2 + 1 - 1)."""
        engine = SimilarityEngine("tanimoto")
        a, b, _ = abc_collection
        assert engine.similarity(a, b) == pytest.approx(0.5)
        assert engine.similarity(a, a) == pytest.approx(1.0)

    @pytest.mark.parametrize("kernel", KERNELS)
    def test_zero_vector(self, kernel, abc_collection):
        """Test that a zero vector has similarity 0 to everything."""
        engine = SimilarityEngine(kernel)
        zero = FeatureVector()
        for vec in list(abc_collection) + [zero]:
            value = engine.similarity(zero, vec)
            assert value == 0.0
            assert not math.isnan(value)

    @pytest.mark.parametrize("kernel", KERNELS)
    def test_symmetry(self, kernel, family_collection):
        """Test similarity(a, b) == similarity(b, a)."""
        engine = SimilarityEngine(kernel)
        vectors = list(family_collection)
        for a in vectors:
            for b in vectors:
                assert engine.similarity(a, b) == engine.similarity(b, a)

    @pytest.mark.parametrize("kernel", ["cosine", "tanimoto"])
    def test_self_similarity_maximal(self, kernel, family_collection):
        """Test that a normalized vector is most similar to itself."""
        engine = SimilarityEngine(kernel)
        vectors = list(family_collection)
        for a in vectors:
            self_sim = engine.self_similarity(a)
            for b in vectors:
                assert self_sim >= engine.similarity(a, b)

    @pytest.mark.parametrize("kernel", KERNELS)
    def test_values_within_kernel_range(self, kernel, family_collection):
        """Test that values stay within the kernel's range."""
        engine = SimilarityEngine(kernel)
        low, high = kernel_range(kernel)
        for a in family_collection:
            for b in family_collection:
                assert low <= engine.similarity(a, b) <= high

    def test_unknown_kernel(self):
        """Test that unknown kernels raise ConfigError."""
        with pytest.raises(ConfigError) as exc_info:
            SimilarityEngine("rbf")
        assert exc_info.value.option == "similarity.kernel"

    @pytest.mark.parametrize("kwargs", [{"workers": 0}, {"block_size": 0}])
    def test_invalid_resources(self, kwargs):
        with pytest.raises(ConfigError):
            SimilarityEngine("cosine", **kwargs)


class TestMatrix:
    """Test similarity matrices."""

    def test_linear_matrix_scenario(self, abc_collection):
        """Test the kernel matrix of {a, b}, {a}, {c}."""
        matrix = SimilarityEngine("linear").matrix(abc_collection)
        expected = np.array([[2.0, 1.0, 0.0], [1.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        assert np.array_equal(matrix.values, expected)
        assert matrix.symmetric
        assert matrix.row_sources == ["0", "1", "2"]

    @pytest.mark.parametrize("kernel", KERNELS)
    def test_matrix_symmetric(self, kernel, family_collection):
        """Test that the matrix of one collection is exactly symmetric."""
        values = SimilarityEngine(kernel).matrix(family_collection).values
        assert np.array_equal(values, values.T)
        assert np.all(np.diag(values) > 0)

    @pytest.mark.parametrize("kernel", KERNELS)
    def test_matrix_matches_pairwise(self, kernel, family_collection):
        """Test that matrix entries agree with pairwise similarities."""
        engine = SimilarityEngine(kernel)
        values = engine.matrix(family_collection).values
        vectors = list(family_collection)
        for i, a in enumerate(vectors):
            for j, b in enumerate(vectors):
                assert values[i, j] == engine.similarity(a, b)

    @pytest.mark.parametrize("kernel", KERNELS)
    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_random_sparse_paths_agree(self, kernel, seed, random_collection):
        """Test that pairwise, scan and matrix give identical bits on irregular weights."""
        coll = random_collection(seed)
        engine = SimilarityEngine(kernel, block_size=7)
        values = engine.matrix(coll).values
        block = VectorBlock(list(coll))
        vectors = list(coll)
        for i, a in enumerate(vectors):
            scanned = engine.against(a, block)
            for j, b in enumerate(vectors):
                pairwise = engine.similarity(a, b)
                assert pairwise == values[i, j]
                assert pairwise == scanned[j]

    def test_parallel_blocks_identical(self, family_collection):
        """Test that block size and workers do not change any bit."""
        reference = SimilarityEngine("cosine").matrix(family_collection).values
        blocked = SimilarityEngine("cosine", workers=4, block_size=1).matrix(family_collection).values
        assert np.array_equal(reference, blocked)

    def test_deterministic(self, family_collection):
        """Test that repeated runs are bit-identical."""
        engine = SimilarityEngine("tanimoto", block_size=5)
        assert np.array_equal(engine.matrix(family_collection).values,
                              engine.matrix(family_collection).values)

    def test_zero_vectors_in_matrix(self, hasher):
        """Test that zero rows stay zero without NaN."""
        coll = build_collection(reports_from_tokens([[], ["a"], []]), hasher, normalization="l2")
        values = SimilarityEngine("cosine").matrix(coll).values
        assert not np.any(np.isnan(values))
        assert values[0].tolist() == [0.0, 0.0, 0.0]
        assert values[1, 1] == pytest.approx(1.0)

    def test_rectangular(self, abc_collection):
        """Test a cross-collection matrix."""
        rows = abc_collection.subset([0, 1])
        matrix = SimilarityEngine("linear").matrix(rows, abc_collection)
        assert matrix.shape == (2, 3)
        assert not matrix.symmetric
        assert matrix.values.tolist() == [[2.0, 1.0, 0.0], [1.0, 1.0, 0.0]]

    def test_empty_collection(self):
        """Test that an empty collection gives an empty matrix."""
        matrix = SimilarityEngine("cosine").matrix(FeatureVectorCollection(16))
        assert matrix.shape == (0, 0)
        assert matrix.value_range() == (0.0, 0.0)

    def test_capacity_mismatch(self, abc_collection):
        """Test that different feature spaces are rejected."""
        other = FeatureVectorCollection(capacity=abc_collection.capacity + 1)
        with pytest.raises(DataError):
            SimilarityEngine("linear").matrix(abc_collection, other)

    def test_memory_budget(self, family_collection):
        """Test that an oversized matrix raises ResourceError with its size."""
        engine = SimilarityEngine("cosine", max_memory_mb=0.0001)
        with pytest.raises(ResourceError) as exc_info:
            engine.matrix(family_collection)
        n = len(family_collection)
        assert exc_info.value.requested_bytes == n * n * 8
        assert str(n * n * 8) in str(exc_info.value)

    def test_full_hash_space(self, family_reports):
        """Test matrices over the full default hash space."""
        coll = build_collection(family_reports, FeatureHasher(), normalization="l2")
        values = SimilarityEngine("cosine").matrix(coll).values
        assert values.shape == (len(coll), len(coll))
        assert np.allclose(np.diag(values), 1.0)


class TestVectorBlock:
    """Test one-to-many scans."""

    @pytest.mark.parametrize("kernel", KERNELS)
    def test_against_matches_matrix(self, kernel, family_collection):
        """Test that scanning a block reproduces the matrix row exactly."""
        engine = SimilarityEngine(kernel)
        values = engine.matrix(family_collection).values
        block = VectorBlock(list(family_collection))
        for i, vec in enumerate(family_collection):
            assert np.array_equal(engine.against(vec, block), values[:, i])

    def test_block_grows(self, abc_collection):
        """Test that appended vectors join later scans."""
        engine = SimilarityEngine("linear")
        block = VectorBlock()
        assert engine.against(abc_collection[0], block).size == 0
        block.append(abc_collection[1])
        assert engine.against(abc_collection[0], block).tolist() == [1.0]
        block.append(abc_collection[0])
        assert engine.against(abc_collection[0], block).tolist() == [1.0, 2.0]

    def test_query_ignores_unknown_features(self, abc_collection):
        """Test that features outside the block vocabulary are skipped."""
        engine = SimilarityEngine("linear")
        block = VectorBlock([abc_collection[1]])
        assert engine.against(abc_collection[2], block).tolist() == [0.0]
