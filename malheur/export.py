"""
Result writers.

Every writer takes the in-memory result, the collection it was computed
from (for report names and labels) and a destination path. Text output is
line oriented with ``#`` comment headers; JSON output is one object.
"""

import json
import string
from pathlib import Path
from typing import Any, Dict, List, Union
from urllib.parse import quote

import numpy as np

from .analysis.clustering import ClusterResult
from .analysis.prototypes import PrototypeSet
from .analysis.similarity import SimilarityMatrix
from .errors import ConfigError, DataError
from .features.vectors import FeatureVectorCollection
from .utils.logging_setup import get_logger

logger = get_logger(__name__)

FORMATS = ("text", "json")

PathLike = Union[str, Path]

# Punctuation left readable in text fields
NAME_SAFE = "".join(c for c in string.punctuation if c not in "%#")


def format_value(value: float) -> str:
    """Shortest text that reads back as the same double."""
    return repr(float(value))


def format_name(name: str) -> str:
    """Percent-encode a report name or label for a text field."""
    return quote(name, safe=NAME_SAFE)


def export_kernel(matrix: SimilarityMatrix, collection: FeatureVectorCollection,
                  path: PathLike, fmt: str = "text") -> Path:
    """Write a similarity matrix with one row per report."""
    n, m = matrix.shape
    if fmt == "json":
        data = {
            'kernel': matrix.kernel,
            'shape': [n, m],
            'sources': matrix.row_sources,
            'labels': collection.labels,
            'values': matrix.values.tolist(),
        }
        return _write_json(path, data)

    lines = [f"# Kernel matrix ({n} x {m}), {matrix.kernel}"]
    lines.append("# sources " + " ".join(format_name(s) for s in matrix.col_sources))
    for source, row in zip(matrix.row_sources, matrix.values):
        lines.append(" ".join([format_name(source)] + [format_value(v) for v in row]))
    return _write_lines(path, lines, fmt)


def export_prototypes(pset: PrototypeSet, collection: FeatureVectorCollection,
                      path: PathLike, fmt: str = "text") -> Path:
    """Write the covering prototype of every report."""
    names = pset.prototype_sources(collection)
    sources = collection.sources
    labels = collection.labels

    if fmt == "json":
        uncovered = set(pset.uncovered)
        data = {
            'kernel': pset.kernel,
            'threshold': pset.threshold,
            'prototypes': pset.vectors(collection).sources,
            'reports': [
                {
                    'report': sources[i],
                    'prototype': names[i],
                    'similarity': float(pset.similarities[i]),
                    'label': labels[i],
                    'covered': i not in uncovered,
                }
                for i in range(len(collection))
            ],
        }
        return _write_json(path, data)

    lines = [
        f"# Prototypes: {len(pset)} of {len(collection)} reports "
        f"({pset.kernel}, threshold {format_value(pset.threshold)})",
        "# <report> <prototype> <similarity> <label>",
    ]
    for i in range(len(collection)):
        lines.append(
            f"{format_name(sources[i])} {format_name(names[i])} "
            f"{format_value(pset.similarities[i])} {format_name(labels[i])}"
        )
    return _write_lines(path, lines, fmt)


def export_clusters(result: ClusterResult, collection: FeatureVectorCollection,
                    path: PathLike, fmt: str = "text") -> Path:
    """Write the cluster of every report, plus merges in dendrogram mode."""
    sources = collection.sources
    labels = collection.labels
    include_merges = result.mode == "dendrogram"

    if fmt == "json":
        data: Dict[str, Any] = {
            'min_similarity': result.min_similarity,
            'clusters': len(result),
            'reports': [
                {'report': sources[i], 'cluster': int(result.labels[i]), 'label': labels[i]}
                for i in range(len(collection))
            ],
            'violations': result.violations,
        }
        if include_merges:
            data['dendrogram'] = result.dendrogram.to_dict()
        return _write_json(path, data)

    lines = [
        f"# Clusters: {len(result)} of {len(collection)} reports "
        f"({len(result.rejected)} rejected, min similarity {format_value(result.min_similarity)})",
        "# <report> <cluster> <label>",
    ]
    for i in range(len(collection)):
        lines.append(f"{format_name(sources[i])} {int(result.labels[i])} {format_name(labels[i])}")
    if include_merges:
        lines.append("# merges")
        lines.append("# <left> <right> <similarity> <size>")
        for merge in result.dendrogram.merges:
            lines.append(f"{merge.left} {merge.right} {format_value(merge.similarity)} {merge.size}")
    return _write_lines(path, lines, fmt)


# ----------------------------
# Helpers
# ----------------------------

def _check_format(fmt: str) -> None:
    if fmt not in FORMATS:
        raise ConfigError(
            f"Unknown report format '{fmt}' (expected one of {', '.join(FORMATS)})",
            option="report.format",
            value=fmt,
        )


def _write_lines(path: PathLike, lines: List[str], fmt: str) -> Path:
    _check_format(fmt)
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as e:
        raise DataError(f"Could not write results to {path}: {e}", path=str(path)) from e
    logger.info(f"Wrote {len(lines)} lines to {path}")
    return path


def _write_json(path: PathLike, data: Dict[str, Any]) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=_json_default)
    except OSError as e:
        raise DataError(f"Could not write results to {path}: {e}", path=str(path)) from e
    logger.info(f"Wrote results to {path}")
    return path


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
