# malheur/analysis/similarity.py
"""
Kernel functions over sparse feature vectors.

All kernels are computed from inner products:

    linear    <a, b>
    cosine    <a, b> / (||a|| * ||b||)
    tanimoto  <a, b> / (||a||^2 + ||b||^2 - <a, b>)

A zero vector has similarity 0 to everything (no NaN). Collection-level
work goes through blocks of scipy CSR products so each matrix row block is
independent and can be filled by a separate worker into a pre-sized output.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from ..errors import ConfigError, DataError, ResourceError
from ..features.vectors import FeatureVector, FeatureVectorCollection
from ..utils.logging_setup import get_logger
from .parallel import ParallelExecutor

logger = get_logger(__name__)

KERNELS = ("linear", "cosine", "tanimoto")

# Attainable similarity range per kernel for non-negative vectors
KERNEL_RANGES: Dict[str, Tuple[float, float]] = {
    "linear": (0.0, math.inf),
    "cosine": (0.0, 1.0),
    "tanimoto": (0.0, 1.0),
}


def kernel_range(kernel: str) -> Tuple[float, float]:
    """Return the (low, high) similarity bounds of a kernel."""
    try:
        return KERNEL_RANGES[kernel]
    except KeyError:
        raise ConfigError(
            f"Unknown kernel '{kernel}' (expected one of {', '.join(KERNELS)})",
            option="similarity.kernel",
            value=kernel,
        ) from None


@dataclass
class SimilarityMatrix:
    """
    Dense similarity matrix indexed by the collections' insertion order.

    ``values[i, j]`` is the similarity of row vector i and column vector j.
    """
    values: np.ndarray
    kernel: str
    row_sources: List[str] = field(default_factory=list)
    col_sources: List[str] = field(default_factory=list)
    symmetric: bool = False

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape

    def __getitem__(self, key):
        return self.values[key]

    def __len__(self) -> int:
        return self.values.shape[0]

    @property
    def nbytes(self) -> int:
        return int(self.values.nbytes)

    def value_range(self) -> Tuple[float, float]:
        """Smallest and largest entry (0, 0 for an empty matrix)."""
        if self.values.size == 0:
            return 0.0, 0.0
        return float(self.values.min()), float(self.values.max())


class VectorBlock:
    """
    A group of vectors stacked as CSR with their L2 norms.

    Used as the "many" side of one-to-many similarity scans. Columns are
    remapped to the sorted vocabulary of feature indices the block uses, so
    the CSR width is the vocabulary size rather than the table capacity.
    Vectors can be appended; the CSR form is rebuilt lazily on the next scan.
    """

    def __init__(self, vectors: Optional[Sequence[FeatureVector]] = None):
        self._vectors: List[FeatureVector] = list(vectors or [])
        self._csr: Optional[sp.csr_matrix] = None
        self._vocab: Optional[np.ndarray] = None
        self._norms: Optional[np.ndarray] = None

    def append(self, vector: FeatureVector) -> None:
        self._vectors.append(vector)
        self._csr = None

    def __len__(self) -> int:
        return len(self._vectors)

    @property
    def csr(self) -> sp.csr_matrix:
        if self._csr is None:
            self._rebuild()
        return self._csr

    @property
    def vocab(self) -> np.ndarray:
        if self._csr is None:
            self._rebuild()
        return self._vocab

    @property
    def norms(self) -> np.ndarray:
        if self._csr is None:
            self._rebuild()
        return self._norms

    def query(self, vector: FeatureVector) -> np.ndarray:
        """Dense copy of a vector over the block vocabulary."""
        vocab = self.vocab
        dense = np.zeros(vocab.size, dtype=np.float64)
        if vector.nnz and vocab.size:
            pos = np.searchsorted(vocab, vector.indices)
            hit = pos < vocab.size
            hit[hit] = vocab[pos[hit]] == vector.indices[hit]
            dense[pos[hit]] = vector.weights[hit]
        return dense

    def _rebuild(self) -> None:
        n = len(self._vectors)
        indptr = np.zeros(n + 1, dtype=np.int64)
        if n:
            indptr[1:] = np.cumsum([v.nnz for v in self._vectors])
            indices = np.concatenate([v.indices for v in self._vectors])
            data = np.concatenate([v.weights for v in self._vectors])
        else:
            indices = np.zeros(0, dtype=np.int64)
            data = np.zeros(0, dtype=np.float64)
        self._vocab = np.unique(indices)
        cols = np.searchsorted(self._vocab, indices)
        self._csr = sp.csr_matrix((data, cols, indptr), shape=(n, self._vocab.size))
        self._norms = np.array([v.norm() for v in self._vectors], dtype=np.float64)


class SimilarityEngine:
    """
    Computes pairwise similarities and similarity matrices.

    Matrix computation is split into row blocks; with ``workers > 1`` the
    blocks run on a thread pool and write disjoint row ranges of one
    pre-allocated array.
    """

    def __init__(
        self,
        kernel: str = "cosine",
        workers: int = 1,
        block_size: int = 256,
        max_memory_mb: float = 2048,
    ):
        """
        Initialize the engine.

        Args:
            kernel: 'linear', 'cosine' or 'tanimoto'
            workers: Thread pool size for matrix blocks
            block_size: Rows per matrix block
            max_memory_mb: Budget for a dense matrix in MiB
        """
        kernel_range(kernel)
        if block_size < 1:
            raise ConfigError("block_size must be >= 1", option="resources.block_size", value=block_size)
        if workers < 1:
            raise ConfigError("workers must be >= 1", option="resources.workers", value=workers)
        self.kernel = kernel
        self.workers = int(workers)
        self.block_size = int(block_size)
        self.max_memory_mb = max_memory_mb

    def value_range(self) -> Tuple[float, float]:
        """Attainable similarity range of the configured kernel."""
        return kernel_range(self.kernel)

    # --- pairwise ---

    def similarity(self, a: FeatureVector, b: FeatureVector) -> float:
        """
        Similarity of two vectors under the configured kernel.

        Computed as a one-row scan so the value is bit-identical to the
        matching entry of :meth:`against` and :meth:`matrix`.
        """
        return float(self.against(a, VectorBlock([b]))[0])

    def self_similarity(self, a: FeatureVector) -> float:
        return self.similarity(a, a)

    # --- one-to-many ---

    def against(self, vector: FeatureVector, block: VectorBlock) -> np.ndarray:
        """
        Similarities of one vector to every vector of a block.

        Each inner product is accumulated over the block row's features in
        ascending index order, the same order the matrix product uses.
        """
        if len(block) == 0:
            return np.zeros(0, dtype=np.float64)
        dots = np.asarray(block.csr @ block.query(vector), dtype=np.float64).ravel()
        norm = np.array([vector.norm()], dtype=np.float64)
        return self._apply(dots[:, None], block.norms, norm).ravel()

    # --- matrices ---

    def matrix(
        self,
        rows: FeatureVectorCollection,
        cols: Optional[FeatureVectorCollection] = None,
    ) -> SimilarityMatrix:
        """
        Compute the similarity matrix of two collections.

        With ``cols`` omitted the matrix of ``rows`` against itself is
        computed; it is symmetric.

        Raises:
            DataError: if the collections were hashed into different spaces
            ResourceError: if the matrix does not fit the memory budget
        """
        symmetric = cols is None
        cols = rows if cols is None else cols
        if rows.capacity != cols.capacity:
            raise DataError(
                f"Collections use different feature spaces ({rows.capacity} != {cols.capacity})"
            )

        n, m = len(rows), len(cols)
        out = self.allocate(n, m)
        if n == 0 or m == 0:
            return SimilarityMatrix(out, self.kernel, rows.sources, cols.sources, symmetric)

        x, y = _shared_columns(rows.to_csr(), None if symmetric else cols.to_csr())
        yt = (x if symmetric else y).T.tocsr()
        norms_x = rows.norms()
        norms_y = norms_x if symmetric else cols.norms()

        starts = list(range(0, n, self.block_size))

        def fill(start: int) -> None:
            end = min(start + self.block_size, n)
            dots = (x[start:end] @ yt).toarray()
            out[start:end] = self._apply(dots, norms_x[start:end], norms_y)

        logger.debug(f"Computing {n}x{m} {self.kernel} matrix in {len(starts)} blocks")
        with ParallelExecutor(max_workers=self.workers) as executor:
            executor.run(fill, starts)

        return SimilarityMatrix(out, self.kernel, rows.sources, cols.sources, symmetric)

    def allocate(self, n: int, m: int) -> np.ndarray:
        """Allocate an (n x m) float64 buffer within the memory budget."""
        requested = int(n) * int(m) * 8
        budget = int(self.max_memory_mb * 1024 * 1024)
        if requested > budget:
            raise ResourceError(
                f"Similarity matrix of {n}x{m} needs {requested} bytes, "
                f"exceeding the budget of {budget} bytes",
                requested_bytes=requested,
                details={'rows': n, 'cols': m, 'budget_bytes': budget},
            )
        try:
            return np.zeros((n, m), dtype=np.float64)
        except MemoryError as e:
            raise ResourceError(
                f"Could not allocate similarity matrix of {n}x{m} ({requested} bytes)",
                requested_bytes=requested,
                details={'rows': n, 'cols': m},
            ) from e

    # --- internals ---

    def _apply(self, dots: np.ndarray, norms_rows: np.ndarray, norms_cols: np.ndarray) -> np.ndarray:
        """Turn a block of inner products into kernel values."""
        if self.kernel == "linear":
            return dots

        nr = np.asarray(norms_rows, dtype=np.float64).reshape(-1, 1)
        nc = np.asarray(norms_cols, dtype=np.float64).reshape(1, -1)

        if self.kernel == "cosine":
            denom = nr * nc
        else:
            denom = nr * nr + nc * nc - dots

        values = np.zeros_like(dots, dtype=np.float64)
        np.divide(dots, denom, out=values, where=denom > 0)
        return np.minimum(values, 1.0, out=values)


def _shared_columns(
    x: sp.csr_matrix, y: Optional[sp.csr_matrix]
) -> Tuple[sp.csr_matrix, Optional[sp.csr_matrix]]:
    """
    Remap CSR columns onto the sorted union of used feature indices.

    The mapping is monotone, so per-row index order (and with it the
    summation order of every inner product) is unchanged.
    """
    used = x.indices if y is None else np.concatenate([x.indices, y.indices])
    vocab = np.unique(used)

    def remap(m: sp.csr_matrix) -> sp.csr_matrix:
        cols = np.searchsorted(vocab, m.indices)
        return sp.csr_matrix((m.data, cols, m.indptr), shape=(m.shape[0], vocab.size))

    return remap(x), (None if y is None else remap(y))
