from __future__ import annotations

import json
from pathlib import Path

import pytest

from biorank.config import PipelineConfig, load_json_config, load_pipeline_config
from biorank.errors import ConfigurationError


def test_load_project_config():
    root = Path(__file__).resolve().parents[1]
    cfg, raw = load_pipeline_config(root / "configs" / "biorank_example.json")
    assert "counts_path" in raw
    assert "metadata_path" in raw
    assert isinstance(cfg.cluster.k_range, tuple)
    assert cfg.differential.significance_policy in {"primary", "union", "intersection"}


def test_invalid_json_reports_line_and_column(tmp_path: Path):
    bad = tmp_path / "bad.json"
    bad.write_text('{"a": 1,}\n', encoding="utf-8")
    with pytest.raises(ValueError, match=r"line \d+, column \d+"):
        load_json_config(bad)


def test_non_object_json_config_rejected(tmp_path: Path):
    bad = tmp_path / "list.json"
    bad.write_text(json.dumps([1, 2, 3]), encoding="utf-8")
    with pytest.raises(ValueError, match="expected JSON object"):
        load_json_config(bad)


def test_non_json_extension_rejected(tmp_path: Path):
    bad = tmp_path / "cfg.yaml"
    bad.write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError, match="Use a .json config file"):
        load_json_config(bad)


def test_unknown_keys_are_rejected():
    with pytest.raises(ConfigurationError) as exc:
        PipelineConfig.from_dict({"seed": 1, "n_trees": 10})
    assert exc.value.identifiers == ("n_trees",)
    with pytest.raises(ConfigurationError, match="section 'ensemble'"):
        PipelineConfig.from_dict({"ensemble": {"n_tree": 10}})


def test_sections_are_built_and_validated():
    cfg = PipelineConfig.from_dict(
        {
            "seed": 7,
            "differential": {"alpha": 0.1, "significance_policy": "union"},
            "cluster": {"k_range": [2, 3]},
        }
    )
    assert cfg.seed == 7
    assert cfg.differential.alpha == 0.1
    assert cfg.cluster.k_range == (2, 3)
    assert cfg.to_dict()["ensemble"]["n_trees"] == 500
    with pytest.raises(ConfigurationError, match="significance_policy"):
        PipelineConfig.from_dict({"differential": {"significance_policy": "vote"}})
    with pytest.raises(ConfigurationError, match="alpha"):
        PipelineConfig.from_dict({"differential": {"alpha": 1.5}})
    with pytest.raises(ConfigurationError, match="oversample"):
        PipelineConfig.from_dict({"ensemble": {"oversample": "sometimes"}})


def test_values_are_checked_against_field_types():
    with pytest.raises(ConfigurationError, match="section 'ensemble'") as exc:
        PipelineConfig.from_dict({"ensemble": {"n_trees": "10"}})
    assert exc.value.identifiers[0].startswith("n_trees='10'")
    with pytest.raises(ConfigurationError, match="Wrongly typed"):
        PipelineConfig.from_dict({"filter": {"enabled": "yes"}})
    with pytest.raises(ConfigurationError, match="Wrongly typed"):
        PipelineConfig.from_dict({"cluster": {"k_range": [2, "3"]}})
    with pytest.raises(ConfigurationError, match="Wrongly typed"):
        PipelineConfig.from_dict({"cluster": {"n_restarts": True}})
    with pytest.raises(ConfigurationError, match="top level"):
        PipelineConfig.from_dict({"seed": 1.5})


def test_json_numbers_and_nulls_fit_their_fields():
    cfg = PipelineConfig.from_dict(
        {
            "write_plots": True,
            "differential": {"alpha": 0.01, "lfc_threshold": 1, "reference": None},
            "ensemble": {"max_features": 0.5, "target_count": None, "max_samples": 4},
            "enrichment": {"weight": 0, "max_size": 50},
        }
    )
    assert cfg.differential.lfc_threshold == 1
    assert cfg.ensemble.max_features == 0.5
    assert cfg.enrichment.max_size == 50
