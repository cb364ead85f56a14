# malheur/analysis/clustering.py
"""
Hierarchical agglomerative clustering over a similarity matrix.

Clusters live in slots named after their smallest member. At every step the
pair of active slots (i, j), i < j, with the highest linkage similarity is
merged into slot i; among equal similarities the lexicographically lowest
pair wins. After merging j into i the linkage row of slot i becomes:

    single    max(s(i, k), s(j, k))
    complete  min(s(i, k), s(j, k))
    average   T(i, k) / (|i| |k|), with pair totals T(i, k) += T(j, k)

Each active row caches its best partner to the right, so a step only rescans
rows whose cached partner was one of the merged slots.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.cluster import hierarchy

from ..errors import ConfigError, DataError
from ..features.vectors import FeatureVectorCollection
from ..utils.logging_setup import get_logger
from .prototypes import PrototypeExtractor, PrototypeSet
from .similarity import SimilarityEngine, SimilarityMatrix, kernel_range

logger = get_logger(__name__)

LINKAGES = ("single", "complete", "average")
MODES = ("flat", "dendrogram")

MONOTONIC_TOLERANCE = 1e-12


@dataclass(frozen=True)
class Merge:
    """One agglomeration step: two node ids joined at a similarity."""
    left: int
    right: int
    similarity: float
    size: int


@dataclass
class Dendrogram:
    """
    Merge sequence of an agglomerative run.

    Node ids follow scipy: leaves are ``0..n_leaves-1`` and the node created
    by merge k is ``n_leaves + k``.
    """
    n_leaves: int
    merges: List[Merge] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.merges)

    @property
    def complete(self) -> bool:
        """True if the merges join every leaf into one root."""
        return len(self.merges) == max(self.n_leaves - 1, 0)

    def similarities(self) -> np.ndarray:
        return np.array([m.similarity for m in self.merges], dtype=np.float64)

    def check_monotonic(self, tolerance: float = MONOTONIC_TOLERANCE) -> List[int]:
        """
        Return merge numbers whose similarity exceeds a child merge's.

        A merge must not be more similar than the merges that built its
        children; checking every parent/child edge covers every
        leaf-to-root path.
        """
        offending = []
        for k, merge in enumerate(self.merges):
            for child in (merge.left, merge.right):
                if child >= self.n_leaves:
                    below = self.merges[child - self.n_leaves].similarity
                    if merge.similarity > below + tolerance:
                        offending.append(k)
                        break
        return offending

    def cut(self, min_similarity: float) -> np.ndarray:
        """
        Flat cluster labels at a similarity level.

        Merges are applied in order up to the first one below
        ``min_similarity``. Labels are numbered by smallest member.
        """
        parent = list(range(self.n_leaves + len(self.merges)))

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for k, merge in enumerate(self.merges):
            if merge.similarity < min_similarity:
                break
            node = self.n_leaves + k
            parent[find(merge.left)] = node
            parent[find(merge.right)] = node

        labels = np.empty(self.n_leaves, dtype=np.int64)
        numbers: Dict[int, int] = {}
        for i in range(self.n_leaves):
            root = find(i)
            if root not in numbers:
                numbers[root] = len(numbers)
            labels[i] = numbers[root]
        return labels

    def to_linkage(self) -> np.ndarray:
        """
        Convert to a scipy linkage matrix.

        Distances are ``top - similarity`` where ``top`` is the highest merge
        similarity, so the first merge sits at distance 0.

        Raises:
            ValueError: if the dendrogram is not complete
        """
        if not self.complete or self.n_leaves < 2:
            raise ValueError(
                f"Linkage needs a complete dendrogram "
                f"({len(self.merges)} merges for {self.n_leaves} leaves)"
            )
        sims = self.similarities()
        top = float(sims.max())
        z = np.array(
            [[m.left, m.right, top - m.similarity, m.size] for m in self.merges],
            dtype=np.float64,
        )
        hierarchy.is_valid_linkage(z, throw=True, name="dendrogram")
        return z

    def to_dict(self) -> Dict:
        return {
            'n_leaves': self.n_leaves,
            'merges': [
                {'left': m.left, 'right': m.right, 'similarity': m.similarity, 'size': m.size}
                for m in self.merges
            ],
        }


@dataclass
class ClusterResult:
    """Flat clustering plus the dendrogram it was cut from."""
    labels: np.ndarray
    clusters: List[List[int]]
    dendrogram: Dendrogram
    violations: List[int] = field(default_factory=list)
    mode: str = "flat"
    min_similarity: float = 0.0
    prototypes: Optional[PrototypeSet] = None

    def __len__(self) -> int:
        return len(self.clusters)

    @property
    def rejected(self) -> List[int]:
        return np.flatnonzero(self.labels < 0).tolist()

    def sizes(self) -> List[int]:
        return [len(c) for c in self.clusters]


class ClusterEngine:
    """
    Agglomerative clustering of feature vector collections.

    In ``flat`` mode merging stops at the first pair below
    ``min_similarity``; in ``dendrogram`` mode it continues to a single root
    and the flat labels are the cut at ``min_similarity``.
    """

    def __init__(
        self,
        engine: SimilarityEngine,
        linkage: str = "complete",
        min_similarity: float = 0.35,
        mode: str = "flat",
        reject_num: int = 1,
        extractor: Optional[PrototypeExtractor] = None,
    ):
        """
        Initialize the cluster engine.

        Args:
            engine: Similarity engine providing the kernel
            linkage: 'single', 'complete' or 'average'
            min_similarity: Cut threshold for flat clusters
            mode: 'flat' or 'dendrogram'
            reject_num: Clusters with fewer members are labeled -1
            extractor: Cluster prototypes instead of all vectors
        """
        if linkage not in LINKAGES:
            raise ConfigError(
                f"Unknown linkage '{linkage}' (expected one of {', '.join(LINKAGES)})",
                option="cluster.linkage",
                value=linkage,
            )
        if mode not in MODES:
            raise ConfigError(
                f"Unknown cluster mode '{mode}' (expected one of {', '.join(MODES)})",
                option="cluster.mode",
                value=mode,
            )
        if reject_num < 1:
            raise ConfigError("reject_num must be >= 1", option="cluster.reject_num", value=reject_num)

        min_similarity = float(min_similarity)
        low, high = kernel_range(engine.kernel)
        if not math.isfinite(min_similarity) or min_similarity < low or min_similarity > high:
            raise self._threshold_error(min_similarity, low, high, engine.kernel)

        self.engine = engine
        self.linkage = linkage
        self.min_similarity = min_similarity
        self.mode = mode
        self.reject_num = int(reject_num)
        self.extractor = extractor

    # --- public API ---

    def cluster(self, collection: FeatureVectorCollection) -> ClusterResult:
        """
        Cluster a collection.

        Raises:
            DataError: if the collection is empty
            ConfigError: if the cut threshold exceeds the matrix's values
            ResourceError: if the matrix does not fit the memory budget
        """
        if len(collection) == 0:
            raise DataError("Cannot cluster an empty collection")

        pset = None
        if self.extractor is not None:
            pset = self.extractor.extract(collection)
            matrix = self.engine.matrix(pset.vectors(collection))
            logger.info(f"Clustering {len(pset)} prototypes of {len(collection)} vectors")
        else:
            matrix = self.engine.matrix(collection)

        dendrogram, violations = self.agglomerate(matrix)
        labels = dendrogram.cut(self.min_similarity)
        if pset is not None:
            labels = labels[pset.assignments]

        labels, clusters = self._reject(labels)
        logger.info(
            f"Found {len(clusters)} clusters with {self.linkage} linkage "
            f"({int(np.sum(labels < 0))} reports rejected)"
        )
        return ClusterResult(
            labels=labels,
            clusters=clusters,
            dendrogram=dendrogram,
            violations=violations,
            mode=self.mode,
            min_similarity=self.min_similarity,
            prototypes=pset,
        )

    def agglomerate(self, matrix: SimilarityMatrix) -> Tuple[Dendrogram, List[int]]:
        """
        Run the merge loop over a square similarity matrix.

        Returns:
            The dendrogram and the list of merges violating monotonicity
        """
        values = np.asarray(matrix.values, dtype=np.float64)
        n = values.shape[0]
        if values.shape != (n, n):
            raise DataError(f"Clustering needs a square matrix, got {values.shape}")
        self._check_cut(values)

        stop = self.min_similarity if self.mode == "flat" else None
        merges = self._merge_loop(values, stop)
        dendrogram = Dendrogram(n_leaves=n, merges=merges)

        violations = dendrogram.check_monotonic()
        if violations:
            logger.warning(
                f"Dendrogram is not monotonic at {len(violations)} merges "
                f"(first at merge {violations[0]})"
            )
        return dendrogram, violations

    # --- internals ---

    def _merge_loop(self, values: np.ndarray, stop: Optional[float]) -> List[Merge]:
        n = values.shape[0]
        w = self.engine.allocate(n, n)
        w[:] = values
        np.fill_diagonal(w, -np.inf)

        active = np.ones(n, dtype=bool)
        sizes = np.ones(n, dtype=np.int64)
        node = np.arange(n, dtype=np.int64)
        # Summed pair similarities between slots, for average linkage
        totals = None
        if self.linkage == "average":
            totals = self.engine.allocate(n, n)
            totals[:] = values
        best_val = np.full(n, -np.inf)
        best_col = np.full(n, -1, dtype=np.int64)
        for r in range(n):
            self._rescan(w, r, best_val, best_col)

        merges: List[Merge] = []
        remaining = n
        while remaining > 1:
            i = int(np.argmax(best_val))
            sim = float(best_val[i])
            if sim == -np.inf:
                break
            if stop is not None and sim < stop:
                break
            j = int(best_col[i])

            size = int(sizes[i] + sizes[j])
            merges.append(Merge(int(node[i]), int(node[j]), sim, size))
            if len(merges) == 1 or len(merges) % 1000 == 0:
                logger.debug(f"Merge {len(merges)}: slots {i} and {j} at {sim:.6g}")

            active[j] = False
            best_val[j] = -np.inf
            best_col[j] = -1
            sizes[i] = size

            row = self._linkage_row(w, totals, i, j, sizes, active)
            row[i] = -np.inf
            row[j] = -np.inf
            w[i, :] = row
            w[:, i] = row
            w[j, :] = -np.inf
            w[:, j] = -np.inf
            node[i] = n + len(merges) - 1
            remaining -= 1

            rows = np.flatnonzero(active)
            stale = (rows == i) | (best_col[rows] == i) | (best_col[rows] == j)
            for r in rows[stale].tolist():
                self._rescan(w, r, best_val, best_col)

            # Rows left of i only gain a new candidate in column i
            left = rows[~stale & (rows < i)]
            v = w[left, i]
            better = (v > best_val[left]) | ((v == best_val[left]) & (i < best_col[left]))
            best_val[left[better]] = v[better]
            best_col[left[better]] = i

        return merges

    def _linkage_row(self, w: np.ndarray, totals: Optional[np.ndarray], i: int, j: int,
                     sizes: np.ndarray, active: np.ndarray) -> np.ndarray:
        """Similarities of the merged cluster in slot i to every slot."""
        if self.linkage == "single":
            return np.maximum(w[i], w[j])
        if self.linkage == "complete":
            return np.minimum(w[i], w[j])
        # Averages come from pair totals, never from earlier averages
        totals[i] += totals[j]
        totals[:, i] = totals[i]
        row = totals[i] / (sizes[i] * sizes)
        row[~active] = -np.inf
        return row

    @staticmethod
    def _rescan(w: np.ndarray, r: int, best_val: np.ndarray, best_col: np.ndarray) -> None:
        tail = w[r, r + 1:]
        if tail.size == 0:
            best_val[r] = -np.inf
            best_col[r] = -1
            return
        k = int(np.argmax(tail))
        best_val[r] = tail[k]
        best_col[r] = r + 1 + k if tail[k] > -np.inf else -1

    def _check_cut(self, values: np.ndarray) -> None:
        low, high = kernel_range(self.engine.kernel)
        high = min(high, float(values.max())) if values.size else low
        if self.min_similarity < low or self.min_similarity > high:
            raise self._threshold_error(self.min_similarity, low, high, self.engine.kernel)

    def _reject(self, labels: np.ndarray) -> Tuple[np.ndarray, List[List[int]]]:
        """Drop clusters below reject_num and renumber by smallest member."""
        groups: Dict[int, List[int]] = {}
        for i, label in enumerate(labels.tolist()):
            groups.setdefault(label, []).append(i)

        out = np.full(labels.size, -1, dtype=np.int64)
        clusters: List[List[int]] = []
        for members in sorted(groups.values(), key=lambda m: m[0]):
            if len(members) < self.reject_num:
                continue
            out[members] = len(clusters)
            clusters.append(members)
        return out, clusters

    @staticmethod
    def _threshold_error(value: float, low: float, high: float, kernel: str) -> ConfigError:
        return ConfigError(
            f"Cluster threshold {value} is outside [{low}, {high}] for the {kernel} kernel",
            option="cluster.min_similarity",
            value=value,
        )
