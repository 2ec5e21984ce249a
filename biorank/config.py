"""Configuration loading utilities for biorank pipelines."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from biorank.errors import ConfigurationError


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load and validate a pipeline config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


@dataclass(frozen=True)
class FilterConfig:
    enabled: bool = True
    min_count: int = 1
    min_fraction: float = 0.3


@dataclass(frozen=True)
class DifferentialConfig:
    group_col: str = "group"
    reference: str | None = None
    alpha: float = 0.05
    lfc_threshold: float = 0.0
    significance_policy: str = "primary"
    min_disp: float = 1e-8
    max_disp: float = 10.0
    max_iter: int = 100
    tol: float = 1e-8


@dataclass(frozen=True)
class ClusterConfig:
    metric: str = "correlation"
    linkage: str = "complete"
    n_gene_clusters: int = 2
    k_range: tuple[int, ...] = (2, 3, 4, 5)
    k_samples: int = 2
    n_restarts: int = 25
    max_iter: int = 300
    n_components: int | None = None
    pca_component: int = 1


@dataclass(frozen=True)
class EnsembleConfig:
    oversample: str = "auto"
    k_neighbors: int = 5
    target_count: int | None = None
    n_trees: int = 500
    max_samples: int | None = None
    max_features: str | int | float | None = "sqrt"
    min_samples_leaf: int = 1


@dataclass(frozen=True)
class EnrichmentConfig:
    gene_sets_path: str | None = None
    score_col: str = "log2FoldChange"
    weight: float = 1.0
    n_perm: int = 1000
    min_size: int = 5
    max_size: int | None = None


@dataclass(frozen=True)
class PipelineConfig:
    """Explicit configuration threaded through every pipeline stage."""

    seed: int = 0
    n_jobs: int = 1
    top_n: int = 200
    missing_sentinel: str = "NA"
    write_plots: bool = False
    filter: FilterConfig = field(default_factory=FilterConfig)
    differential: DifferentialConfig = field(default_factory=DifferentialConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    ensemble: EnsembleConfig = field(default_factory=EnsembleConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    def __post_init__(self) -> None:
        if int(self.top_n) < 1:
            raise ConfigurationError("top_n must be >= 1.")
        if int(self.n_jobs) == 0:
            raise ConfigurationError("n_jobs must be non-zero.")
        policy = self.differential.significance_policy
        if policy not in {"primary", "union", "intersection"}:
            raise ConfigurationError(
                "significance_policy must be one of {'primary', 'union', 'intersection'}.",
                [policy],
            )
        if self.ensemble.oversample not in {"auto", "always", "never"}:
            raise ConfigurationError(
                "oversample must be one of {'auto', 'always', 'never'}.",
                [self.ensemble.oversample],
            )
        if not 0.0 < float(self.differential.alpha) < 1.0:
            raise ConfigurationError("alpha must lie in (0, 1).")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineConfig":
        """Build a config, rejecting keys that no section declares."""
        sections = {
            "filter": FilterConfig,
            "differential": DifferentialConfig,
            "cluster": ClusterConfig,
            "ensemble": EnsembleConfig,
            "enrichment": EnrichmentConfig,
        }
        top_keys = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - top_keys - {"counts_path", "metadata_path", "outdir"})
        if unknown:
            raise ConfigurationError("Unknown config keys.", unknown)
        _check_types("top level", cls, {k: v for k, v in data.items() if k not in sections})

        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in top_keys:
                continue
            if key in sections:
                kwargs[key] = _build_section(key, sections[key], value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _matches(type_name: str, value: Any) -> bool:
    if type_name == "None":
        return value is None
    if type_name == "bool":
        return isinstance(value, bool)
    if type_name == "int":
        return isinstance(value, int) and not isinstance(value, bool)
    if type_name == "float":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_name == "str":
        return isinstance(value, str)
    if type_name.startswith("tuple["):
        return isinstance(value, (list, tuple)) and all(
            _matches("int", item) for item in value
        )
    raise ConfigurationError(f"Unsupported config field type '{type_name}'.")


def _check_types(name: str, section_cls, value: dict[str, Any]) -> None:
    """Reject values whose JSON type does not match the declared field type."""
    annotations = {f.name: str(f.type) for f in fields(section_cls)}
    bad = []
    for key, item in value.items():
        if key not in annotations:
            continue
        options = [opt.strip() for opt in annotations[key].split("|")]
        if not any(_matches(opt, item) for opt in options):
            bad.append(f"{key}={item!r} (expected {annotations[key]})")
    if bad:
        raise ConfigurationError(f"Wrongly typed values in config section '{name}'.", bad)


def _build_section(name: str, section_cls, value: Any):
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section '{name}' must be a JSON object.")
    known = {f.name for f in fields(section_cls)}
    unknown = sorted(set(value) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in config section '{name}'.", unknown
        )
    _check_types(name, section_cls, value)
    if "k_range" in value:
        value = {**value, "k_range": tuple(int(k) for k in value["k_range"])}
    return section_cls(**value)


def load_pipeline_config(path: str | Path) -> tuple[PipelineConfig, dict[str, Any]]:
    """Return the typed config and the raw JSON (which also carries input paths)."""
    raw = load_json_config(path)
    return PipelineConfig.from_dict(raw), raw
