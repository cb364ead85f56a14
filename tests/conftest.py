"""
Shared fixtures for the Malheur test suite.
"""

import logging
from pathlib import Path
from typing import List

import numpy as np
import pytest

from malheur.features.hashing import FeatureHasher
from malheur.features.reports import Report, reports_from_tokens
from malheur.features.vectors import FeatureVector, FeatureVectorCollection, build_collection
from malheur.utils.logging_setup import ROOT_LOGGER, setup_logging


@pytest.fixture(autouse=True)
def reset_logging():
    """Re-attach the package logger to the current stderr after each test."""
    yield
    setup_logging()


@pytest.fixture
def malheur_log(caplog):
    """caplog wired to the (non-propagating) package logger."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.addHandler(caplog.handler)
    old_level = logger.level
    logger.setLevel(logging.DEBUG)
    yield caplog
    logger.setLevel(old_level)
    logger.removeHandler(caplog.handler)


@pytest.fixture
def hasher() -> FeatureHasher:
    """Lookup-table hasher; distinct tokens never collide at this size."""
    return FeatureHasher(capacity=1 << 16, lookup_table=True)


@pytest.fixture
def abc_reports() -> List[Report]:
    """Three reports: {a, b}, {a}, {c}."""
    return reports_from_tokens([["a", "b"], ["a"], ["c"]])


@pytest.fixture
def abc_collection(hasher, abc_reports) -> FeatureVectorCollection:
    """Raw count vectors of the three reports."""
    return build_collection(abc_reports, hasher)


def family_tokens(family: str, variant: int, length: int = 12) -> List[str]:
    """Tokens of a synthetic report: a family core plus a few variant calls."""
    core = [f"{family}_call{i}" for i in range(length)]
    extra = [f"{family}_v{variant}_{i}" for i in range(variant % 3 + 1)]
    return core + extra


@pytest.fixture
def family_reports() -> List[Report]:
    """Twelve reports from three behavior families, interleaved."""
    token_lists = []
    labels = []
    for variant in range(4):
        for family in ("worm", "bot", "dropper"):
            token_lists.append(family_tokens(family, variant))
            labels.append(family)
    return reports_from_tokens(token_lists, labels)


@pytest.fixture
def family_collection(hasher, family_reports) -> FeatureVectorCollection:
    return build_collection(family_reports, hasher, normalization="l2")


@pytest.fixture
def report_dir(tmp_path) -> Path:
    """Directory of plain-text reports labeled by extension."""
    root = tmp_path / "reports"
    root.mkdir()
    traces = {
        "sample1.worm": "open_file\nwrite_file\nconnect\nsend\nclose\n",
        "sample2.worm": "open_file\nwrite_file\nconnect\nsend\nsend\nclose\n",
        "sample3.bot": "create_mutex\nreg_set\nconnect\nrecv\nexec\n",
        "sample4.bot": "create_mutex\nreg_set\nconnect\nrecv\nrecv\nexec\n",
        "sample5.dropper": "download\nwrite_file\ncreate_process\nexit\n",
    }
    for name, text in traces.items():
        (root / name).write_text(text)
    (root / ".hidden").write_text("ignored\n")
    return root


@pytest.fixture
def config_file(tmp_path) -> Path:
    """Config with line tokens, unigrams and a small hash space."""
    path = tmp_path / "malheur.yml"
    path.write_text(
        "input:\n"
        "  ngram_len: 1\n"
        "  ngram_delim: ''\n"
        "features:\n"
        "  table_capacity: 65536\n"
        "  lookup_table: true\n"
        "prototypes:\n"
        "  threshold: 0.6\n"
        "cluster:\n"
        "  min_similarity: 0.5\n"
    )
    return path


@pytest.fixture
def random_collection():
    """Builder of sparse collections with overlapping supports and non-dyadic weights."""
    def build(seed: int, n: int = 30, capacity: int = 64) -> FeatureVectorCollection:
        rng = np.random.default_rng(seed)
        coll = FeatureVectorCollection(capacity)
        for _ in range(n):
            nnz = int(rng.integers(1, 16))
            indices = np.sort(rng.choice(capacity, size=nnz, replace=False))
            weights = rng.random(nnz) * 10.0 ** rng.integers(-3, 3, size=nnz) + 1e-3
            coll.append(FeatureVector(indices, weights))
        return coll
    return build
