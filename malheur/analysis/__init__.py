"""Similarity, prototype and clustering engines."""

from .similarity import SimilarityEngine, SimilarityMatrix, KERNELS
from .prototypes import PrototypeExtractor, PrototypeSet
from .clustering import ClusterEngine, ClusterResult, Dendrogram, Merge, LINKAGES

__all__ = [
    'SimilarityEngine',
    'SimilarityMatrix',
    'KERNELS',
    'PrototypeExtractor',
    'PrototypeSet',
    'ClusterEngine',
    'ClusterResult',
    'Dendrogram',
    'Merge',
    'LINKAGES',
]
