"""Malheur - automatic analysis of malware behavior reports."""

__version__ = "0.5.0"

from .errors import ConfigError, DataError, MalheurError, ResourceError
from .features.hashing import FeatureHasher
from .features.vectors import FeatureVector, FeatureVectorCollection, build_collection
from .analysis.similarity import SimilarityEngine, SimilarityMatrix
from .analysis.prototypes import PrototypeExtractor, PrototypeSet
from .analysis.clustering import ClusterEngine, ClusterResult, Dendrogram
from .config import MalheurConfig
from .tasks import Malheur, ClusterRequest, KernelRequest, PrototypeRequest, resolve_request

__all__ = [
    "__version__",
    "MalheurError",
    "ConfigError",
    "DataError",
    "ResourceError",
    "FeatureHasher",
    "FeatureVector",
    "FeatureVectorCollection",
    "build_collection",
    "SimilarityEngine",
    "SimilarityMatrix",
    "PrototypeExtractor",
    "PrototypeSet",
    "ClusterEngine",
    "ClusterResult",
    "Dendrogram",
    "MalheurConfig",
    "Malheur",
    "KernelRequest",
    "PrototypeRequest",
    "ClusterRequest",
    "resolve_request",
]
