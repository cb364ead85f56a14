# malheur/features/vectors.py
"""
Sparse feature vectors and ordered collections of them.

A FeatureVector stores its non-zero entries as two parallel numpy arrays
(sorted indices and non-negative weights), which lets similarity code do a
merge-join over shared indices. Incremental construction goes through a
pending dict that is folded into the sorted arrays on first read.

A FeatureVectorCollection keeps vectors in insertion order together with a
label and a source name per vector. That order is the canonical index of
every downstream matrix.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from ..errors import DataError, ConfigError
from ..utils.logging_setup import get_logger
from .hashing import DEFAULT_CAPACITY, FeatureHasher, Token

logger = get_logger(__name__)

EMBEDDINGS = ("count", "binary")
NORMALIZATIONS = ("none", "l1", "l2")

WeightedToken = Union[Token, Tuple[Token, float]]


class FeatureVector:
    """
    Sparse non-negative feature vector.

    Owns its arrays; they are never shared with another vector. The L2 norm
    and the L2-normalized form are cached and dropped on mutation.
    """

    __slots__ = ("_indices", "_weights", "_pending", "_norm", "_normalized")

    def __init__(self, indices: Optional[Sequence[int]] = None, weights: Optional[Sequence[float]] = None):
        """
        Initialize vector from parallel index/weight sequences.

        Duplicate indices are summed, zero weights dropped.

        Args:
            indices: Feature indices (>= 0)
            weights: Non-negative weights, same length as indices
        """
        idx = np.asarray(indices if indices is not None else [], dtype=np.int64).ravel()
        w = np.asarray(weights if weights is not None else [], dtype=np.float64).ravel()
        if idx.shape != w.shape:
            raise ValueError(f"indices and weights differ in length ({idx.size} != {w.size})")
        if idx.size and idx.min() < 0:
            raise ValueError("feature indices must be non-negative")
        if w.size and (not np.all(np.isfinite(w)) or w.min() < 0):
            raise ValueError("feature weights must be finite and non-negative")

        self._indices, self._weights = _compact(idx, w)
        self._pending: Dict[int, float] = {}
        self._norm: Optional[float] = None
        self._normalized: Optional[FeatureVector] = None

    # --- construction ---

    @classmethod
    def from_counts(cls, counts: Mapping[int, float]) -> "FeatureVector":
        """Create a vector from an index -> weight mapping."""
        if not counts:
            return cls()
        items = sorted(counts.items())
        return cls([i for i, _ in items], [w for _, w in items])

    @classmethod
    def from_tokens(
        cls,
        tokens: Iterable[WeightedToken],
        hasher: FeatureHasher,
        embedding: str = "count",
        normalization: str = "none",
    ) -> "FeatureVector":
        """
        Hash tokens and accumulate their weights.

        Args:
            tokens: Tokens, optionally paired with a weight (default 1.0)
            hasher: Feature hasher shared by the whole run
            embedding: 'count' sums weights, 'binary' marks presence
            normalization: 'none', 'l1' or 'l2'

        Returns:
            New FeatureVector
        """
        _check_choice(embedding, EMBEDDINGS, "features.embedding")
        _check_choice(normalization, NORMALIZATIONS, "features.normalization")

        counts: Dict[int, float] = {}
        for item in tokens:
            if isinstance(item, tuple):
                token, weight = item
                weight = float(weight)
            else:
                token, weight = item, 1.0
            if weight < 0:
                raise ValueError(f"negative token weight {weight} for {token!r}")
            slot = hasher.index(token)
            counts[slot] = counts.get(slot, 0.0) + weight

        if embedding == "binary":
            counts = {slot: 1.0 for slot, weight in counts.items() if weight > 0}

        return cls.from_counts(counts).normalize(normalization)

    # --- mutation ---

    def add(self, index: int, weight: float = 1.0) -> None:
        """Accumulate weight at an index."""
        if index < 0:
            raise ValueError("feature indices must be non-negative")
        if weight < 0:
            raise ValueError("feature weights must be non-negative")
        self._pending[int(index)] = self._pending.get(int(index), 0.0) + float(weight)
        self._norm = None
        self._normalized = None

    # --- accessors ---

    @property
    def indices(self) -> np.ndarray:
        self._flush()
        return self._indices

    @property
    def weights(self) -> np.ndarray:
        self._flush()
        return self._weights

    @property
    def nnz(self) -> int:
        return int(self.indices.size)

    def __len__(self) -> int:
        return self.nnz

    def is_zero(self) -> bool:
        return self.nnz == 0

    def max_index(self) -> int:
        """Largest index in use, -1 for the zero vector."""
        idx = self.indices
        return int(idx[-1]) if idx.size else -1

    def items(self) -> Iterator[Tuple[int, float]]:
        for i, w in zip(self.indices.tolist(), self.weights.tolist()):
            yield i, w

    def to_dict(self) -> Dict[int, float]:
        return dict(self.items())

    def copy(self) -> "FeatureVector":
        return FeatureVector(self.indices.copy(), self.weights.copy())

    # --- math ---

    def dot(self, other: "FeatureVector") -> float:
        """Inner product over shared indices (merge-join of sorted arrays)."""
        _, ia, ib = np.intersect1d(self.indices, other.indices, assume_unique=True, return_indices=True)
        if ia.size == 0:
            return 0.0
        return float(np.dot(self.weights[ia], other.weights[ib]))

    def norm(self) -> float:
        """Cached L2 norm."""
        if self._norm is None:
            w = self.weights
            self._norm = float(np.sqrt(np.dot(w, w))) if w.size else 0.0
        return self._norm

    def normalized(self) -> "FeatureVector":
        """Cached L2-normalized copy; the zero vector stays zero."""
        if self._normalized is None:
            self._normalized = self.normalize("l2")
        return self._normalized

    def normalize(self, normalization: str) -> "FeatureVector":
        """Return a normalized copy ('none', 'l1' or 'l2')."""
        _check_choice(normalization, NORMALIZATIONS, "features.normalization")
        if normalization == "none" or self.is_zero():
            return self.copy()
        if normalization == "l1":
            total = float(self.weights.sum())
        else:
            total = self.norm()
        return FeatureVector(self.indices.copy(), self.weights / total)

    # --- protocol ---

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureVector):
            return NotImplemented
        return np.array_equal(self.indices, other.indices) and np.array_equal(self.weights, other.weights)

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        return f"FeatureVector(nnz={self.nnz}, norm={self.norm():.4g})"

    # --- internals ---

    def _flush(self) -> None:
        if not self._pending:
            return
        pend = sorted(self._pending.items())
        self._pending = {}
        idx = np.concatenate([self._indices, np.fromiter((i for i, _ in pend), dtype=np.int64, count=len(pend))])
        w = np.concatenate([self._weights, np.fromiter((v for _, v in pend), dtype=np.float64, count=len(pend))])
        self._indices, self._weights = _compact(idx, w)


class FeatureVectorCollection:
    """
    Ordered feature vectors with parallel label and source arrays.

    ``capacity`` is the size of the index space the vectors were hashed
    into; every index stored is below it.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        vectors: Optional[Iterable[FeatureVector]] = None,
        labels: Optional[Iterable[str]] = None,
        sources: Optional[Iterable[str]] = None,
    ):
        self.capacity = int(capacity)
        self._vectors: List[FeatureVector] = []
        self._labels: List[str] = []
        self._sources: List[str] = []

        vectors = list(vectors or [])
        labels = list(labels) if labels is not None else [""] * len(vectors)
        sources = list(sources) if sources is not None else [""] * len(vectors)
        if not (len(vectors) == len(labels) == len(sources)):
            raise ValueError("vectors, labels and sources must have equal length")
        for vec, label, source in zip(vectors, labels, sources):
            self.append(vec, label, source)

    def append(self, vector: FeatureVector, label: str = "", source: str = "") -> int:
        """Append a vector; returns its position."""
        if vector.max_index() >= self.capacity:
            raise DataError(
                f"Feature index {vector.max_index()} exceeds table capacity {self.capacity}",
                details={'capacity': self.capacity},
            )
        self._vectors.append(vector)
        self._labels.append(str(label))
        self._sources.append(str(source))
        return len(self._vectors) - 1

    def extend(self, other: "FeatureVectorCollection") -> None:
        for vec, label, source in zip(other._vectors, other._labels, other._sources):
            self.append(vec, label, source)

    @property
    def vectors(self) -> List[FeatureVector]:
        return list(self._vectors)

    @property
    def labels(self) -> List[str]:
        return list(self._labels)

    @property
    def sources(self) -> List[str]:
        return list(self._sources)

    def __len__(self) -> int:
        return len(self._vectors)

    def __getitem__(self, i: int) -> FeatureVector:
        return self._vectors[i]

    def __iter__(self) -> Iterator[FeatureVector]:
        return iter(self._vectors)

    def subset(self, indices: Iterable[int]) -> "FeatureVectorCollection":
        """New collection holding the given positions (vectors are shared)."""
        out = FeatureVectorCollection(self.capacity)
        for i in indices:
            out.append(self._vectors[i], self._labels[i], self._sources[i])
        return out

    def nnz(self) -> int:
        return sum(v.nnz for v in self._vectors)

    def to_csr(self) -> sp.csr_matrix:
        """Stack the vectors into an (n x capacity) CSR matrix."""
        n = len(self._vectors)
        indptr = np.zeros(n + 1, dtype=np.int64)
        if n:
            indptr[1:] = np.cumsum([v.nnz for v in self._vectors])
            indices = np.concatenate([v.indices for v in self._vectors])
            data = np.concatenate([v.weights for v in self._vectors])
        else:
            indices = np.zeros(0, dtype=np.int64)
            data = np.zeros(0, dtype=np.float64)
        return sp.csr_matrix((data, indices, indptr), shape=(n, self.capacity))

    def norms(self) -> np.ndarray:
        """L2 norm of every vector, in order."""
        return np.array([v.norm() for v in self._vectors], dtype=np.float64)

    # --- persistence ---

    def save(self, path: Union[str, Path]) -> Path:
        """
        Save the collection as a compressed ``.npz`` archive.

        Indices and weights round-trip exactly; numpy appends the ``.npz``
        suffix when it is missing.
        """
        path = Path(path)
        if path.suffix != ".npz":
            path = path.with_name(path.name + ".npz")
        path.parent.mkdir(parents=True, exist_ok=True)
        csr = self.to_csr()
        np.savez_compressed(
            path,
            capacity=np.array([self.capacity], dtype=np.int64),
            indptr=csr.indptr.astype(np.int64),
            indices=csr.indices.astype(np.int64),
            weights=csr.data.astype(np.float64),
            labels=np.array(self._labels, dtype=str),
            sources=np.array(self._sources, dtype=str),
        )
        logger.info(f"Saved {len(self)} feature vectors to {path}")
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "FeatureVectorCollection":
        """Load a collection written by :meth:`save`."""
        path = Path(path)
        if not path.exists() and path.with_name(path.name + ".npz").exists():
            path = path.with_name(path.name + ".npz")
        if not path.is_file():
            raise DataError(f"Feature vector file not found: {path}", path=str(path))

        try:
            with np.load(path, allow_pickle=False) as data:
                capacity = int(data["capacity"][0])
                indptr = data["indptr"]
                indices = data["indices"]
                weights = data["weights"]
                labels = [str(x) for x in data["labels"]]
                sources = [str(x) for x in data["sources"]]
        except (OSError, KeyError, ValueError) as e:
            raise DataError(f"Could not read feature vectors from {path}: {e}", path=str(path)) from e

        n = len(indptr) - 1
        if len(labels) != n or len(sources) != n:
            raise DataError(f"Corrupt feature vector file {path}: metadata length mismatch", path=str(path))

        out = cls(capacity)
        for i in range(n):
            start, end = int(indptr[i]), int(indptr[i + 1])
            vec = FeatureVector(indices[start:end], weights[start:end])
            out.append(vec, labels[i], sources[i])
        logger.info(f"Loaded {n} feature vectors from {path}")
        return out

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureVectorCollection):
            return NotImplemented
        return (
            self.capacity == other.capacity
            and self._labels == other._labels
            and self._sources == other._sources
            and all(a == b for a, b in zip(self._vectors, other._vectors))
            and len(self) == len(other)
        )

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        return f"FeatureVectorCollection(n={len(self)}, capacity={self.capacity})"


def build_collection(
    reports: Sequence[Any],
    hasher: FeatureHasher,
    embedding: str = "count",
    normalization: str = "none",
    workers: int = 1,
) -> FeatureVectorCollection:
    """
    Build one feature vector per report, preserving report order.

    Reports are independent, so with ``workers > 1`` they are vectorized on a
    thread pool. When the hasher keeps a lookup table, new tokens are first
    registered sequentially in report order so slot assignment does not
    depend on thread scheduling.

    Args:
        reports: Objects with ``tokens``, ``label`` and ``source`` attributes
        hasher: Feature hasher for the run
        embedding: 'count' or 'binary'
        normalization: 'none', 'l1' or 'l2'
        workers: Thread pool size

    Returns:
        FeatureVectorCollection in report order
    """
    from ..analysis.parallel import ParallelExecutor

    _check_choice(embedding, EMBEDDINGS, "features.embedding")
    _check_choice(normalization, NORMALIZATIONS, "features.normalization")

    reports = list(reports)
    if hasher.lookup_table and workers > 1:
        for report in reports:
            hasher.register(_token_of(t) for t in report.tokens)

    def vectorize(report) -> FeatureVector:
        return FeatureVector.from_tokens(report.tokens, hasher, embedding, normalization)

    with ParallelExecutor(max_workers=workers) as executor:
        vectors = executor.map(vectorize, reports)

    collection = FeatureVectorCollection(hasher.capacity)
    for report, vec in zip(reports, vectors):
        collection.append(vec, getattr(report, "label", ""), getattr(report, "source", ""))

    stats = hasher.get_stats()
    logger.info(
        f"Built {len(collection)} feature vectors "
        f"({collection.nnz()} non-zeros, {stats['tokens']} tokens, "
        f"{stats['slots']} slots, {stats['collisions']} collisions)"
    )
    return collection


# ----------------------------
# Helpers
# ----------------------------

def _compact(idx: np.ndarray, w: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Sort by index, sum duplicates and drop zero weights."""
    if idx.size == 0:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float64)
    order = np.argsort(idx, kind="stable")
    idx = idx[order]
    w = w[order]
    uniq, starts = np.unique(idx, return_index=True)
    if uniq.size != idx.size:
        w = np.add.reduceat(w, starts)
        idx = uniq
    keep = w > 0
    if not np.all(keep):
        idx = idx[keep]
        w = w[keep]
    return np.ascontiguousarray(idx), np.ascontiguousarray(w)


def _token_of(item: WeightedToken) -> Token:
    return item[0] if isinstance(item, tuple) else item


def _check_choice(value: str, choices: Sequence[str], option: str) -> None:
    if value not in choices:
        raise ConfigError(
            f"Unknown {option.split('.')[-1]} '{value}' (expected one of {', '.join(choices)})",
            option=option,
            value=value,
        )
