"""
Feature extraction for Malheur.

Reports are tokenized, hashed into a bounded index space and stored as
sparse vectors.
"""

from .hashing import FeatureHasher
from .vectors import FeatureVector, FeatureVectorCollection, build_collection
from .reports import Report, load_reports, tokenize

__all__ = [
    'FeatureHasher',
    'FeatureVector',
    'FeatureVectorCollection',
    'build_collection',
    'Report',
    'load_reports',
    'tokenize',
]
