"""
Configuration system for Malheur.

Settings are grouped in section dataclasses that mirror the YAML file:

    input / features / similarity / prototypes / cluster / resources / report

Files are YAML (or JSON by suffix). Missing keys take defaults, unknown keys
are rejected. Environment variables ``MALHEUR_<SECTION>_<KEY>`` override
file values, e.g. ``MALHEUR_PROTOTYPES_THRESHOLD=0.8``.
"""

import json
import math
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax

from .errors import ConfigError

CONFIG_FILENAMES = ("malheur.yml", ".malheur.yml", "malheur.yaml")
ENV_PREFIX = "MALHEUR_"


@dataclass
class InputConfig:
    """Report ingestion and tokenization."""
    ngram_len: int = 2
    ngram_delim: str = "%0a%0d%20"  # URI-encoded; "" splits on lines
    label_file: Optional[str] = None


@dataclass
class FeaturesConfig:
    """Feature hashing and vector construction."""
    embedding: str = "count"
    normalization: str = "l2"
    table_capacity: int = 1 << 24
    lookup_table: bool = False


@dataclass
class SimilarityConfig:
    kernel: str = "cosine"


@dataclass
class PrototypeConfig:
    """Prototype extraction. Thresholds are similarities."""
    threshold: float = 0.65
    max_num: int = 0  # 0 = unlimited


@dataclass
class ClusterConfig:
    """Agglomerative clustering."""
    linkage: str = "complete"
    min_similarity: float = 0.35
    mode: str = "flat"
    reject_num: int = 1
    use_prototypes: bool = False


@dataclass
class ResourceConfig:
    workers: int = 1
    max_memory_mb: float = 2048.0
    block_size: int = 256


@dataclass
class ReportConfig:
    format: str = "text"


SECTIONS = {
    "input": InputConfig,
    "features": FeaturesConfig,
    "similarity": SimilarityConfig,
    "prototypes": PrototypeConfig,
    "cluster": ClusterConfig,
    "resources": ResourceConfig,
    "report": ReportConfig,
}

CHOICES = {
    ("features", "embedding"): ("count", "binary"),
    ("features", "normalization"): ("none", "l1", "l2"),
    ("similarity", "kernel"): ("linear", "cosine", "tanimoto"),
    ("cluster", "linkage"): ("single", "complete", "average"),
    ("cluster", "mode"): ("flat", "dendrogram"),
    ("report", "format"): ("text", "json"),
}


@dataclass
class MalheurConfig:
    """
    Complete Malheur configuration.

    Every section defaults to its dataclass defaults, so ``MalheurConfig()``
    is a valid configuration.
    """

    input: InputConfig = field(default_factory=InputConfig)
    features: FeaturesConfig = field(default_factory=FeaturesConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    prototypes: PrototypeConfig = field(default_factory=PrototypeConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    resources: ResourceConfig = field(default_factory=ResourceConfig)
    report: ReportConfig = field(default_factory=ReportConfig)

    source: Optional[Path] = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Convert to a plain nested dict (without the source path)."""
        return {name: asdict(getattr(self, name)) for name in SECTIONS}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "MalheurConfig":
        """
        Create from a nested dict.

        Raises:
            ConfigError: on unknown sections or keys, or values of the wrong type
        """
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigError(f"Configuration must be a mapping, got {type(data).__name__}")

        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigError(
                f"Unknown configuration section(s): {', '.join(unknown)}",
                option=unknown[0],
            )

        sections = {}
        for name, section_cls in SECTIONS.items():
            values = data.get(name) or {}
            if not isinstance(values, Mapping):
                raise ConfigError(f"Section '{name}' must be a mapping", option=name, value=values)
            known = {f.name: f for f in fields(section_cls)}
            extra = sorted(set(values) - set(known))
            if extra:
                raise ConfigError(
                    f"Unknown option(s) in '{name}': {', '.join(extra)}",
                    option=f"{name}.{extra[0]}",
                )
            sections[name] = section_cls(**{
                key: _coerce(f"{name}.{key}", value, getattr(section_cls(), key))
                for key, value in values.items()
            })
        return cls(**sections)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "MalheurConfig":
        """
        Load configuration from a YAML or JSON file.

        Raises:
            ConfigError: if the file is missing, unparsable or invalid
        """
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}", option="config", value=str(path))

        try:
            with open(path, "r", encoding="utf-8") as f:
                if path.suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read configuration {path}: {e}", option="config", value=str(path)) from e

        config = cls.from_dict(data)
        config.source = path
        return config

    def save(self, path: Union[str, Path]) -> Path:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        return path

    def apply_env_overrides(self, environ: Optional[Mapping[str, str]] = None) -> "MalheurConfig":
        """
        Apply ``MALHEUR_<SECTION>_<KEY>`` overrides in place.

        Raises:
            ConfigError: if an override cannot be coerced to the option's type
        """
        environ = os.environ if environ is None else environ
        for name in SECTIONS:
            section = getattr(self, name)
            for f in fields(section):
                env_var = f"{ENV_PREFIX}{name.upper()}_{f.name.upper()}"
                raw = environ.get(env_var)
                if raw is None:
                    continue
                current = getattr(section, f.name)
                setattr(section, f.name, _coerce(f"{name}.{f.name}", raw, current, from_env=True))
        return self

    def validate(self) -> "MalheurConfig":
        """
        Check every option.

        Raises:
            ConfigError: listing all problems found
        """
        errors = self.issues()
        if errors:
            raise ConfigError(
                "Invalid configuration:\n  " + "\n  ".join(errors),
                details={'errors': errors},
            )
        return self

    def issues(self) -> List[str]:
        """Return a list of validation problems (empty if valid)."""
        errors = []

        for (section, key), choices in CHOICES.items():
            value = getattr(getattr(self, section), key)
            if value not in choices:
                errors.append(f"{section}.{key} must be one of {', '.join(choices)}, got {value!r}")

        if self.input.ngram_len < 1:
            errors.append(f"input.ngram_len must be >= 1, got {self.input.ngram_len}")
        if self.features.table_capacity < 1:
            errors.append(f"features.table_capacity must be >= 1, got {self.features.table_capacity}")
        if self.prototypes.max_num < 0:
            errors.append(f"prototypes.max_num must be >= 0, got {self.prototypes.max_num}")
        if self.cluster.reject_num < 1:
            errors.append(f"cluster.reject_num must be >= 1, got {self.cluster.reject_num}")
        if self.resources.workers < 1:
            errors.append(f"resources.workers must be >= 1, got {self.resources.workers}")
        if self.resources.block_size < 1:
            errors.append(f"resources.block_size must be >= 1, got {self.resources.block_size}")
        if not self.resources.max_memory_mb > 0:
            errors.append(f"resources.max_memory_mb must be > 0, got {self.resources.max_memory_mb}")

        # Thresholds are similarities and must lie in the kernel's range
        low, high = 0.0, math.inf
        if self.similarity.kernel in ("cosine", "tanimoto"):
            high = 1.0
        for option, value in (
            ("prototypes.threshold", self.prototypes.threshold),
            ("cluster.min_similarity", self.cluster.min_similarity),
        ):
            if not math.isfinite(value) or value < low or value > high:
                errors.append(f"{option} must be within [{low}, {high}] for the "
                              f"{self.similarity.kernel} kernel, got {value}")

        return errors


def find_config(start: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Search ``start`` and its parents for a Malheur config file."""
    current = Path(start or Path.cwd()).resolve()
    if current.is_file():
        current = current.parent
    for directory in [current, *current.parents]:
        for name in CONFIG_FILENAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def find_and_load(start: Optional[Union[str, Path]] = None,
                  environ: Optional[Mapping[str, str]] = None) -> MalheurConfig:
    """Load the nearest config file (or defaults) and apply env overrides."""
    path = find_config(start)
    config = MalheurConfig.load(path) if path else MalheurConfig()
    return config.apply_env_overrides(environ)


def load_config(path: Optional[Union[str, Path]] = None,
                environ: Optional[Mapping[str, str]] = None) -> MalheurConfig:
    """
    Load, override and validate a configuration.

    Args:
        path: Explicit config file; searched for when None
        environ: Environment mapping (default os.environ)
    """
    if path is not None:
        config = MalheurConfig.load(path).apply_env_overrides(environ)
    else:
        config = find_and_load(environ=environ)
    return config.validate()


class ConfigManager:
    """Loads, saves and displays Malheur configuration files."""

    DEFAULT_CONFIG_FILE = "malheur.yml"

    def __init__(self, config_path: Optional[Union[str, Path]] = None, console: Optional[Console] = None):
        """
        Initialize config manager.

        Args:
            config_path: Path to configuration file
            console: Rich console for display (default stdout)
        """
        self.console = console or Console()
        self.config_path = Path(config_path) if config_path else Path(self.DEFAULT_CONFIG_FILE)
        self._config: Optional[MalheurConfig] = None

    def load(self) -> MalheurConfig:
        """Load the file if present, otherwise defaults; env overrides applied."""
        if self._config is not None:
            return self._config

        if self.config_path.exists():
            self._config = MalheurConfig.load(self.config_path)
        else:
            self._config = MalheurConfig()
        self._config.apply_env_overrides()
        return self._config

    def save(self, config: Optional[MalheurConfig] = None) -> Path:
        config = config or self._config or MalheurConfig()
        path = config.save(self.config_path)
        self._config = config
        return path

    def display(self, config: Optional[MalheurConfig] = None) -> None:
        """Display configuration in a formatted panel."""
        config = config or self.load()
        yaml_str = yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False)
        syntax = Syntax(yaml_str, "yaml", theme="monokai", line_numbers=True)
        title = f"Malheur Configuration ({config.source})" if config.source else "Malheur Configuration (defaults)"
        panel = Panel(
            syntax,
            title=f"[bold cyan]{title}[/bold cyan]",
            border_style="cyan"
        )
        self.console.print(panel)


def create_default_config_file(path: Optional[Union[str, Path]] = None) -> Path:
    """
    Create a default configuration file.

    Args:
        path: Path for config file (default ./malheur.yml)

    Returns:
        Path written
    """
    path = Path(path or ConfigManager.DEFAULT_CONFIG_FILE)
    return MalheurConfig().save(path)


# ----------------------------
# Helpers
# ----------------------------

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _coerce(option: str, value: Any, default: Any, from_env: bool = False) -> Any:
    """Coerce a raw value to the type of the option's default."""
    try:
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
                return value.strip().lower() in _TRUE
            raise ValueError("expected a boolean")
        if isinstance(default, int):
            if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
                raise ValueError("expected an integer")
            return int(value)
        if isinstance(default, float):
            if isinstance(value, bool):
                raise ValueError("expected a number")
            return float(value)
        if default is None:
            # Optional strings; an empty env value clears them
            if from_env and value == "":
                return None
            return None if value is None else str(value)
        if isinstance(default, str):
            if not isinstance(value, str) and not from_env:
                raise ValueError("expected a string")
            return str(value)
    except (TypeError, ValueError) as e:
        source = "environment" if from_env else "configuration"
        raise ConfigError(
            f"Invalid {source} value for {option}: {value!r} ({e})",
            option=option,
            value=value,
        ) from e
    return value
