"""
Task requests and the Malheur runner.

A request is resolved once from the command line and handed to
:class:`Malheur` as an immutable value. The runner owns the per-run state
(the feature hasher) and wires ingestion, the analysis engines and export
together.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .analysis.clustering import ClusterEngine, ClusterResult
from .analysis.prototypes import PrototypeExtractor, PrototypeSet
from .analysis.similarity import SimilarityEngine, SimilarityMatrix
from .config import MalheurConfig
from .errors import ConfigError, DataError
from .export import export_clusters, export_kernel, export_prototypes
from .features.hashing import FeatureHasher
from .features.reports import decode_delimiters, load_reports
from .features.vectors import FeatureVectorCollection, build_collection
from .utils.logging_setup import get_logger, log_operation

logger = get_logger(__name__)

TASKS = ("kernel", "prototype", "cluster")


@dataclass(frozen=True)
class KernelRequest:
    """Compute the similarity matrix of the input reports."""
    input_path: Path
    result_file: Path


@dataclass(frozen=True)
class PrototypeRequest:
    """Extract prototypes; at least one output is set."""
    input_path: Path
    result_file: Optional[Path] = None
    proto_file: Optional[Path] = None
    load_prototypes: Optional[Path] = None


@dataclass(frozen=True)
class ClusterRequest:
    """Cluster the input reports."""
    input_path: Path
    result_file: Optional[Path] = None


Request = Union[KernelRequest, PrototypeRequest, ClusterRequest]
Result = Union[SimilarityMatrix, PrototypeSet, ClusterResult]


def resolve_request(
    task: str,
    input_path: Union[str, Path],
    result_file: Optional[Union[str, Path]] = None,
    proto_file: Optional[Union[str, Path]] = None,
    load_file: Optional[Union[str, Path]] = None,
) -> Request:
    """
    Turn command line arguments into a task request.

    Args:
        task: 'kernel', 'prototype' or 'cluster' (case-insensitive)
        input_path: Reports to analyze
        result_file: Destination for analysis results
        proto_file: Destination for prototype vectors
        load_file: Previously saved prototype vectors to reuse

    Raises:
        ConfigError: for an unknown task or a task without required output
    """
    name = str(task).lower()
    input_path = Path(input_path)
    result_file = Path(result_file) if result_file else None
    proto_file = Path(proto_file) if proto_file else None
    load_file = Path(load_file) if load_file else None

    if name == "kernel":
        if result_file is None:
            raise ConfigError("No output specified for kernel task (see option -r)", option="result_file")
        if proto_file or load_file:
            logger.warning("Prototypes will not be extracted in this task")
        return KernelRequest(input_path, result_file)

    if name == "prototype":
        if result_file is None and proto_file is None:
            raise ConfigError(
                "No output specified for prototype task (see options -s and/or -r)",
                option="result_file",
            )
        return PrototypeRequest(input_path, result_file, proto_file, load_file)

    if name == "cluster":
        return ClusterRequest(input_path, result_file)

    raise ConfigError(
        f"Unknown analysis task '{task}' (expected one of {', '.join(TASKS)})",
        option="task",
        value=task,
    )


class Malheur:
    """
    Runs analysis tasks under one configuration.

    The feature hasher is created here and shared by every collection the
    run builds, so indices stay consistent across them.
    """

    def __init__(self, config: Optional[MalheurConfig] = None, lookup_table: Optional[bool] = None):
        """
        Initialize the runner.

        Args:
            config: Validated configuration (defaults when None)
            lookup_table: Overrides ``features.lookup_table`` when set
        """
        self.config = (config or MalheurConfig()).validate()
        table = self.config.features.lookup_table if lookup_table is None else lookup_table
        self.hasher = FeatureHasher(self.config.features.table_capacity, lookup_table=table)

        resources = self.config.resources
        self.engine = SimilarityEngine(
            kernel=self.config.similarity.kernel,
            workers=resources.workers,
            block_size=resources.block_size,
            max_memory_mb=resources.max_memory_mb,
        )

    # --- building blocks ---

    def extractor(self) -> PrototypeExtractor:
        return PrototypeExtractor(
            self.engine,
            threshold=self.config.prototypes.threshold,
            max_num=self.config.prototypes.max_num,
        )

    def cluster_engine(self) -> ClusterEngine:
        cfg = self.config.cluster
        return ClusterEngine(
            self.engine,
            linkage=cfg.linkage,
            min_similarity=cfg.min_similarity,
            mode=cfg.mode,
            reject_num=cfg.reject_num,
            extractor=self.extractor() if cfg.use_prototypes else None,
        )

    def load(self, input_path: Union[str, Path]) -> FeatureVectorCollection:
        """Read, tokenize and vectorize the reports under a path."""
        cfg = self.config
        reports = load_reports(
            input_path,
            ngram_len=cfg.input.ngram_len,
            delimiters=decode_delimiters(cfg.input.ngram_delim),
            label_file=cfg.input.label_file,
        )
        return build_collection(
            reports,
            self.hasher,
            embedding=cfg.features.embedding,
            normalization=cfg.features.normalization,
            workers=cfg.resources.workers,
        )

    # --- tasks ---

    def run(self, request: Request) -> Result:
        """Execute a request and return its in-memory result."""
        start = time.perf_counter()
        if isinstance(request, KernelRequest):
            log_operation(logger, "kernel", input=str(request.input_path))
            result = self.kernel(request)
        elif isinstance(request, PrototypeRequest):
            log_operation(logger, "prototype", input=str(request.input_path))
            result = self.prototype(request)
        elif isinstance(request, ClusterRequest):
            log_operation(logger, "cluster", input=str(request.input_path))
            result = self.cluster(request)
        else:
            raise TypeError(f"Unsupported request type: {type(request).__name__}")

        logger.info(f"Finished in {time.perf_counter() - start:.2f}s")
        return result

    def kernel(self, request: KernelRequest) -> SimilarityMatrix:
        collection = self.load(request.input_path)
        if len(collection) == 0:
            raise DataError(f"No reports found in {request.input_path}", path=str(request.input_path))

        matrix = self.engine.matrix(collection)
        export_kernel(matrix, collection, request.result_file, fmt=self.config.report.format)
        return matrix

    def prototype(self, request: PrototypeRequest) -> PrototypeSet:
        collection = self.load(request.input_path)
        extractor = self.extractor()

        if request.load_prototypes:
            prototypes = FeatureVectorCollection.load(request.load_prototypes)
            pset = extractor.assign(collection, prototypes)
        else:
            pset = extractor.extract(collection)

        if request.result_file:
            export_prototypes(pset, collection, request.result_file, fmt=self.config.report.format)
        if request.proto_file:
            pset.vectors(collection).save(request.proto_file)
        return pset

    def cluster(self, request: ClusterRequest) -> ClusterResult:
        collection = self.load(request.input_path)
        if len(collection) == 0:
            raise DataError(f"No reports found in {request.input_path}", path=str(request.input_path))

        result = self.cluster_engine().cluster(collection)
        if request.result_file:
            export_clusters(result, collection, request.result_file, fmt=self.config.report.format)
        return result
