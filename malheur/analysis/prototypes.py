# malheur/analysis/prototypes.py
"""
Greedy prototype extraction.

Vectors are visited in collection order. Each vector is compared with the
prototypes chosen so far; if the best similarity reaches the threshold the
vector is covered by that prototype (earliest prototype on ties), otherwise
it becomes a prototype itself. The result depends on the visiting order, but
every covered vector is within the threshold of its prototype.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from ..errors import ConfigError, DataError
from ..features.vectors import FeatureVectorCollection
from ..utils.logging_setup import get_logger
from .similarity import SimilarityEngine, VectorBlock

logger = get_logger(__name__)


@dataclass
class PrototypeSet:
    """
    Prototypes of a collection and the covering assignment of every vector.

    ``prototypes`` holds positions of the representatives in creation order.
    They index the extracted collection, or ``loaded`` when the set was
    produced by mapping a collection onto previously saved prototypes.
    ``assignments[i]`` is the prototype number covering vector i and
    ``similarities[i]`` the similarity between the two.
    """
    prototypes: List[int] = field(default_factory=list)
    assignments: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    similarities: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    uncovered: List[int] = field(default_factory=list)
    threshold: float = 0.0
    kernel: str = "cosine"
    loaded: Optional[FeatureVectorCollection] = None

    def __len__(self) -> int:
        return len(self.prototypes)

    @property
    def num_vectors(self) -> int:
        return int(self.assignments.size)

    def members(self, k: int) -> List[int]:
        """Positions of the vectors covered by prototype k."""
        return np.flatnonzero(self.assignments == k).tolist()

    def vectors(self, collection: Optional[FeatureVectorCollection] = None) -> FeatureVectorCollection:
        """Prototype vectors with their labels and sources."""
        if self.loaded is not None:
            return self.loaded
        if collection is None:
            raise ValueError("collection required for extracted prototypes")
        return collection.subset(self.prototypes)

    def prototype_sources(self, collection: FeatureVectorCollection) -> List[str]:
        """Source name of the covering prototype, per vector."""
        names = self.vectors(collection).sources
        return [names[k] for k in self.assignments.tolist()]

    def coverage(self) -> float:
        """Fraction of vectors that meet the threshold."""
        if self.num_vectors == 0:
            return 1.0
        return 1.0 - len(self.uncovered) / self.num_vectors


class PrototypeExtractor:
    """
    Extracts a covering prototype set from a feature vector collection.

    Thresholds are similarities: higher means closer.
    """

    def __init__(self, engine: SimilarityEngine, threshold: float, max_num: int = 0):
        """
        Initialize extractor.

        Args:
            engine: Similarity engine providing the kernel
            threshold: Minimum similarity between a vector and its prototype
            max_num: Upper bound on the number of prototypes (0 = unlimited)
        """
        low, high = engine.value_range()
        threshold = float(threshold)
        if not math.isfinite(threshold) or threshold < low or threshold > high:
            raise ConfigError(
                f"Prototype threshold {threshold} is outside [{low}, {high}] "
                f"for the {engine.kernel} kernel",
                option="prototypes.threshold",
                value=threshold,
            )
        if max_num < 0:
            raise ConfigError("max_num must be >= 0", option="prototypes.max_num", value=max_num)

        self.engine = engine
        self.threshold = threshold
        self.max_num = int(max_num)

    def extract(self, collection: FeatureVectorCollection) -> PrototypeSet:
        """
        Extract prototypes in collection order.

        An empty collection yields an empty set.
        """
        n = len(collection)
        assignments = np.zeros(n, dtype=np.int64)
        similarities = np.zeros(n, dtype=np.float64)
        prototypes: List[int] = []
        uncovered: List[int] = []
        block = VectorBlock()

        for i, vec in enumerate(collection):
            if len(block):
                sims = self.engine.against(vec, block)
                k = int(np.argmax(sims))
                best = float(sims[k])
                if best >= self.threshold:
                    assignments[i] = k
                    similarities[i] = best
                    continue
                if self.max_num and len(block) >= self.max_num:
                    assignments[i] = k
                    similarities[i] = best
                    uncovered.append(i)
                    continue

            assignments[i] = len(block)
            similarities[i] = self.engine.self_similarity(vec)
            block.append(vec)
            prototypes.append(i)

        if uncovered:
            logger.warning(
                f"Prototype limit of {self.max_num} reached; "
                f"{len(uncovered)} vectors assigned below threshold {self.threshold}"
            )

        logger.info(
            f"Extracted {len(prototypes)} prototypes from {n} vectors "
            f"({self.engine.kernel}, threshold {self.threshold})"
        )
        return PrototypeSet(
            prototypes=prototypes,
            assignments=assignments,
            similarities=similarities,
            uncovered=uncovered,
            threshold=self.threshold,
            kernel=self.engine.kernel,
        )

    def assign(self, collection: FeatureVectorCollection, prototypes: FeatureVectorCollection) -> PrototypeSet:
        """
        Map a collection onto an existing prototype set.

        Every vector goes to its most similar prototype; vectors below the
        threshold are listed in ``uncovered``.

        Raises:
            DataError: if the prototype set is empty but vectors need assigning
        """
        if prototypes.capacity != collection.capacity:
            raise DataError(
                f"Prototypes use a different feature space ({prototypes.capacity} != {collection.capacity})"
            )
        if len(prototypes) == 0 and len(collection):
            raise DataError("Cannot assign reports to an empty prototype set")

        n = len(collection)
        assignments = np.zeros(n, dtype=np.int64)
        similarities = np.zeros(n, dtype=np.float64)
        uncovered: List[int] = []
        block = VectorBlock(prototypes.vectors)

        for i, vec in enumerate(collection):
            sims = self.engine.against(vec, block)
            k = int(np.argmax(sims))
            assignments[i] = k
            similarities[i] = sims[k]
            if sims[k] < self.threshold:
                uncovered.append(i)

        logger.info(
            f"Assigned {n} vectors to {len(prototypes)} prototypes "
            f"({len(uncovered)} below threshold)"
        )
        return PrototypeSet(
            prototypes=list(range(len(prototypes))),
            assignments=assignments,
            similarities=similarities,
            uncovered=uncovered,
            threshold=self.threshold,
            kernel=self.engine.kernel,
            loaded=prototypes,
        )
