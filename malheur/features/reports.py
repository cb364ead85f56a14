# malheur/features/reports.py
"""Report loading and n-gram tokenization."""

import tarfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import unquote

from ..errors import DataError
from ..utils.logging_setup import get_logger
from .vectors import WeightedToken

logger = get_logger(__name__)

ARCHIVE_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".zip")


@dataclass
class Report:
    """One behavior report reduced to its tokens."""
    tokens: List[WeightedToken] = field(default_factory=list)
    label: str = ""
    source: str = ""

    def __len__(self) -> int:
        return len(self.tokens)


def decode_delimiters(encoded: str) -> str:
    """
    Decode URI-style escapes in a delimiter string.

    ``"%0a%0d%20"`` becomes newline, carriage return and space.
    """
    return unquote(encoded or "")


def tokenize(text: str, ngram_len: int = 1, delimiters: str = "") -> List[str]:
    """
    Split text into words and emit word n-grams.

    Args:
        text: Report contents
        ngram_len: Words per n-gram
        delimiters: Characters separating words; empty splits on lines

    Returns:
        N-grams joined by a single space, in text order
    """
    if ngram_len < 1:
        raise ValueError(f"ngram_len must be >= 1, got {ngram_len}")

    if delimiters:
        table = str.maketrans({c: "\n" for c in delimiters})
        words = [w for w in text.translate(table).split("\n") if w]
    else:
        words = [w for w in text.splitlines() if w]

    if ngram_len == 1:
        return words
    return [" ".join(words[i:i + ngram_len]) for i in range(len(words) - ngram_len + 1)]


def label_from_name(name: str) -> str:
    """Label encoded as the file extension (``report.allaple`` -> ``allaple``)."""
    base = Path(name).name
    if "." not in base.lstrip("."):
        return ""
    return base.rsplit(".", 1)[1]


def read_label_file(path: Union[str, Path]) -> Dict[str, str]:
    """
    Read a ``<report> <label>`` mapping, one pair per line.

    Blank lines and lines starting with ``#`` are ignored.
    """
    path = Path(path)
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise DataError(f"Could not read label file {path}: {e}", path=str(path)) from e

    labels: Dict[str, str] = {}
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) != 2:
            raise DataError(
                f"Malformed label file {path} at line {lineno}: {line!r}",
                path=str(path),
                details={'line': lineno},
            )
        labels[parts[0]] = parts[1]
    return labels


def is_archive(path: Path) -> bool:
    name = path.name.lower()
    return any(name.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def iter_sources(path: Union[str, Path]) -> Iterator[Tuple[str, bytes]]:
    """
    Yield ``(name, contents)`` for every report under a path.

    Directories are read non-recursively in name order with hidden files
    skipped; archives yield their regular members in name order.
    """
    path = Path(path)
    if not path.exists():
        raise DataError(f"Input not found: {path}", path=str(path))

    try:
        if path.is_dir():
            for child in sorted(path.iterdir()):
                if child.name.startswith(".") or not child.is_file():
                    continue
                yield child.name, child.read_bytes()
        elif path.name.lower().endswith(".zip"):
            with zipfile.ZipFile(path) as zf:
                for info in sorted(zf.infolist(), key=lambda i: i.filename):
                    if info.is_dir() or Path(info.filename).name.startswith("."):
                        continue
                    yield Path(info.filename).name, zf.read(info)
        elif is_archive(path):
            with tarfile.open(path) as tf:
                for member in sorted(tf.getmembers(), key=lambda m: m.name):
                    if not member.isfile() or Path(member.name).name.startswith("."):
                        continue
                    handle = tf.extractfile(member)
                    if handle is None:
                        continue
                    yield Path(member.name).name, handle.read()
        else:
            yield path.name, path.read_bytes()
    except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
        raise DataError(f"Could not read reports from {path}: {e}", path=str(path)) from e


def load_reports(
    path: Union[str, Path],
    ngram_len: int = 1,
    delimiters: str = "",
    label_file: Optional[Union[str, Path]] = None,
) -> List[Report]:
    """
    Load and tokenize every report under a path.

    Args:
        path: Directory, single file or archive
        ngram_len: Words per n-gram
        delimiters: Decoded delimiter characters
        label_file: Optional ``<report> <label>`` mapping overriding extensions

    Returns:
        Reports in name order

    Raises:
        DataError: if the input is missing or unreadable
    """
    labels = read_label_file(label_file) if label_file else None

    reports: List[Report] = []
    for name, data in iter_sources(path):
        text = data.decode("utf-8", errors="replace")
        if labels is not None:
            label = labels.get(name, labels.get(Path(name).stem, ""))
        else:
            label = label_from_name(name)
        reports.append(Report(tokenize(text, ngram_len, delimiters), label, name))

    logger.info(f"Loaded {len(reports)} reports from {path}")
    return reports


def reports_from_tokens(token_lists: Sequence[Sequence[WeightedToken]],
                        labels: Optional[Sequence[str]] = None) -> List[Report]:
    """Wrap in-memory token sequences as reports named by position."""
    labels = list(labels) if labels is not None else [""] * len(token_lists)
    return [
        Report(list(tokens), label, str(i))
        for i, (tokens, label) in enumerate(zip(token_lists, labels))
    ]
