"""
Tests for result writers.
"""

import json
from urllib.parse import unquote

import pytest

from malheur.analysis.clustering import ClusterEngine
from malheur.analysis.prototypes import PrototypeExtractor
from malheur.analysis.similarity import SimilarityEngine
from malheur.errors import ConfigError, DataError
from malheur.export import (
    export_clusters,
    export_kernel,
    export_prototypes,
    format_name,
    format_value,
)
from malheur.features.vectors import FeatureVectorCollection


@pytest.fixture
def labeled_abc(hasher):
    from malheur.features.reports import reports_from_tokens
    from malheur.features.vectors import build_collection

    reports = reports_from_tokens([["a", "b"], ["a"], ["c"]], labels=["x", "x", "y"])
    return build_collection(reports, hasher)


def data_lines(path):
    return [line for line in path.read_text().splitlines() if not line.startswith("#")]


@pytest.fixture
def awkward_names(labeled_abc):
    """The abc vectors under names containing spaces, a hash and a percent sign."""
    return FeatureVectorCollection(
        labeled_abc.capacity,
        list(labeled_abc),
        labels=["x y", "x", ""],
        sources=["my report.worm", "#2 sample", "50%.bot"],
    )


class TestKernelExport:

    def test_text(self, tmp_path, labeled_abc):
        matrix = SimilarityEngine("linear").matrix(labeled_abc)
        path = export_kernel(matrix, labeled_abc, tmp_path / "kernel.txt")

        text = path.read_text()
        assert text.startswith("# Kernel matrix (3 x 3), linear\n")
        assert "# sources 0 1 2\n" in text
        assert data_lines(path) == ["0 2.0 1.0 0.0", "1 1.0 1.0 0.0", "2 0.0 0.0 1.0"]

    def test_values_read_back_exactly(self, tmp_path, family_collection):
        matrix = SimilarityEngine("cosine").matrix(family_collection)
        path = export_kernel(matrix, family_collection, tmp_path / "kernel.txt")
        for i, line in enumerate(data_lines(path)):
            values = [float(v) for v in line.split()[1:]]
            assert values == matrix.values[i].tolist()

    def test_json(self, tmp_path, labeled_abc):
        matrix = SimilarityEngine("linear").matrix(labeled_abc)
        path = export_kernel(matrix, labeled_abc, tmp_path / "kernel.json", fmt="json")

        data = json.loads(path.read_text())
        assert data["kernel"] == "linear"
        assert data["shape"] == [3, 3]
        assert data["labels"] == ["x", "x", "y"]
        assert data["values"][0] == [2.0, 1.0, 0.0]


class TestPrototypeExport:

    def test_text(self, tmp_path, labeled_abc):
        pset = PrototypeExtractor(SimilarityEngine("cosine"), threshold=0.5).extract(labeled_abc)
        path = export_prototypes(pset, labeled_abc, tmp_path / "protos.txt")

        lines = data_lines(path)
        assert [line.split()[:2] for line in lines] == [["0", "0"], ["1", "0"], ["2", "2"]]
        assert [line.split()[3] for line in lines] == ["x", "x", "y"]
        assert float(lines[1].split()[2]) == pytest.approx(0.7071067811865475)
        assert "# Prototypes: 2 of 3 reports" in path.read_text()

    def test_json_marks_uncovered(self, tmp_path, labeled_abc):
        extractor = PrototypeExtractor(SimilarityEngine("cosine"), threshold=0.99, max_num=1)
        pset = extractor.extract(labeled_abc)
        path = export_prototypes(pset, labeled_abc, tmp_path / "protos.json", fmt="json")

        data = json.loads(path.read_text())
        assert data["prototypes"] == ["0"]
        assert [r["covered"] for r in data["reports"]] == [True, False, False]


class TestClusterExport:

    def test_flat_text(self, tmp_path, labeled_abc):
        engine = ClusterEngine(SimilarityEngine("cosine"), min_similarity=0.5, reject_num=2)
        result = engine.cluster(labeled_abc)
        path = export_clusters(result, labeled_abc, tmp_path / "clusters.txt")

        assert data_lines(path) == ["0 0 x", "1 0 x", "2 -1 y"]
        assert "# merges" not in path.read_text()

    def test_dendrogram_text(self, tmp_path, labeled_abc):
        engine = ClusterEngine(SimilarityEngine("linear"), min_similarity=1.0, mode="dendrogram")
        result = engine.cluster(labeled_abc)
        path = export_clusters(result, labeled_abc, tmp_path / "clusters.txt")

        text = path.read_text()
        assert "# merges\n" in text
        merges = text.split("# <left> <right> <similarity> <size>\n")[1].splitlines()
        assert merges == ["0 1 1.0 2", "3 2 0.0 3"]

    def test_dendrogram_json(self, tmp_path, labeled_abc):
        engine = ClusterEngine(SimilarityEngine("cosine"), min_similarity=0.5, mode="dendrogram")
        result = engine.cluster(labeled_abc)
        path = export_clusters(result, labeled_abc, tmp_path / "clusters.json", fmt="json")

        data = json.loads(path.read_text())
        assert data["clusters"] == 2
        assert [r["cluster"] for r in data["reports"]] == [0, 0, 1]
        assert data["dendrogram"]["n_leaves"] == 3
        assert len(data["dendrogram"]["merges"]) == 2


class TestErrors:

    def test_unknown_format(self, tmp_path, labeled_abc):
        matrix = SimilarityEngine("linear").matrix(labeled_abc)
        with pytest.raises(ConfigError) as exc_info:
            export_kernel(matrix, labeled_abc, tmp_path / "kernel.csv", fmt="csv")
        assert exc_info.value.option == "report.format"

    def test_unwritable_destination(self, tmp_path, labeled_abc):
        blocker = tmp_path / "file"
        blocker.write_text("")
        matrix = SimilarityEngine("linear").matrix(labeled_abc)
        with pytest.raises(DataError):
            export_kernel(matrix, labeled_abc, blocker / "kernel.txt")

    def test_format_value(self):
        assert format_value(0.1) == "0.1"
        assert float(format_value(1 / 3)) == 1 / 3


class TestNames:
    """Report names and labels in text fields."""

    def test_format_name(self):
        assert format_name("sample1.worm") == "sample1.worm"
        assert format_name("my report.worm") == "my%20report.worm"
        assert format_name("a\tb\nc") == "a%09b%0Ac"
        assert format_name("#1 50%") == "%231%2050%25"
        for name in ("my report.worm", "#1 50%", "naïve rapport", "a/b:c"):
            assert unquote(format_name(name)) == name

    def test_kernel_fields(self, tmp_path, awkward_names):
        matrix = SimilarityEngine("linear").matrix(awkward_names)
        path = export_kernel(matrix, awkward_names, tmp_path / "kernel.txt")

        assert "# sources my%20report.worm %232%20sample 50%25.bot\n" in path.read_text()
        rows = [line.split() for line in data_lines(path)]
        assert all(len(row) == 4 for row in rows)
        assert [unquote(row[0]) for row in rows] == awkward_names.sources

    def test_prototype_fields(self, tmp_path, awkward_names):
        pset = PrototypeExtractor(SimilarityEngine("cosine"), threshold=0.5).extract(awkward_names)
        path = export_prototypes(pset, awkward_names, tmp_path / "protos.txt")

        rows = [line.split() for line in data_lines(path)]
        assert rows[0][:2] == ["my%20report.worm", "my%20report.worm"]
        assert rows[0][3] == "x%20y"
        assert unquote(rows[1][1]) == "my report.worm"
        assert rows[2][:2] == ["50%25.bot", "50%25.bot"]

    def test_cluster_fields(self, tmp_path, awkward_names):
        engine = ClusterEngine(SimilarityEngine("cosine"), min_similarity=0.5)
        result = engine.cluster(awkward_names)
        path = export_clusters(result, awkward_names, tmp_path / "clusters.txt")

        assert data_lines(path) == ["my%20report.worm 0 x%20y", "%232%20sample 0 x", "50%25.bot 1 "]

    def test_json_keeps_names(self, tmp_path, awkward_names):
        engine = ClusterEngine(SimilarityEngine("cosine"), min_similarity=0.5)
        result = engine.cluster(awkward_names)
        path = export_clusters(result, awkward_names, tmp_path / "clusters.json", fmt="json")

        reports = json.loads(path.read_text())["reports"]
        assert [r["report"] for r in reports] == awkward_names.sources
