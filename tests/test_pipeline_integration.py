from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import matplotlib
import numpy as np
import pandas as pd
import pytest

os.environ.setdefault("MPLBACKEND", "Agg")
matplotlib.use("Agg", force=True)

from biorank.config import ClusterConfig, EnsembleConfig, PipelineConfig
from biorank.core.types import CountMatrix, SampleMetadata
from biorank.errors import ConfigurationError, DataError
from biorank.pipeline.driver import run_pipeline, run_pipeline_from_config
from biorank.pipeline.io import load_gmt


def _write_inputs(tmp_path: Path, counts, meta, de_genes: list[str]) -> Path:
    counts_path = tmp_path / "counts.csv"
    meta_path = tmp_path / "metadata.csv"
    gmt_path = tmp_path / "sets.gmt"
    counts.counts.rename_axis("gene").to_csv(counts_path)
    meta.table.rename_axis("sample").to_csv(meta_path)
    gmt_path.write_text(
        "\n".join(
            [
                "shifted\tfirst five genes\t" + "\t".join(de_genes),
                "unshifted\tnull genes\t" + "\t".join(f"g{i:02d}" for i in range(6, 13)),
                "tiny\ttoo small\tg01\tg02",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    cfg = {
        "counts_path": str(counts_path),
        "metadata_path": str(meta_path),
        "outdir": str(tmp_path / "out"),
        "seed": 3,
        "write_plots": True,
        "cluster": {"n_restarts": 5},
        "ensemble": {"n_trees": 50},
        "enrichment": {"gene_sets_path": str(gmt_path), "n_perm": 200},
    }
    cfg_path = tmp_path / "cfg.json"
    cfg_path.write_text(json.dumps(cfg), encoding="utf-8")
    return cfg_path


def test_config_run_writes_all_outputs(tmp_path: Path, two_group_data, de_genes):
    counts, meta = two_group_data
    cfg_path = _write_inputs(tmp_path, counts, meta, de_genes)

    result = run_pipeline_from_config(cfg_path)

    assert set(result.candidates) == set(de_genes)
    assert set(de_genes) <= set(result.aggregated.provenance["gene"])
    assert result.oversampling is None
    assert set(result.aggregated.table.columns) == {
        "pca_loading",
        "ensemble_importance",
        "cluster_membership",
    }

    enr = result.enrichment
    assert enr is not None
    assert enr.table.loc["shifted", "es"] > 0.9
    assert enr.table.loc["shifted", "pvalue"] < 0.05
    assert enr.table.loc["tiny", "status"] == "skipped"

    out = tmp_path / "out"
    for name in (
        "size_factors.csv",
        "differential_results.csv",
        "gene_clusters.csv",
        "cluster_assignment.csv",
        "pca_scores.csv",
        "pca_loadings.csv",
        "pca_variance.csv",
        "elbow_curve.csv",
        "ensemble_importance.csv",
        "oob_error_curve.csv",
        "candidate_table.csv",
        "candidate_provenance.csv",
        "enrichment_results.csv",
    ):
        assert (out / "results" / name).exists(), name
    assert (out / "logs" / "biorank.log").exists()
    assert (out / "figures" / "elbow_curve.png").exists()
    assert (out / "figures" / "oob_error_curve.png").exists()
    assert (out / "figures" / "enrichment_null_shifted.png").exists()

    de_table = pd.read_csv(out / "results" / "differential_results.csv", index_col=0)
    assert de_table.shape[0] == 20
    assert "ttest_pvalue" in de_table.columns

    meta_json = json.loads((out / "run_metadata.json").read_text(encoding="utf-8"))
    assert meta_json["parameters"]["seed"] == 3
    assert meta_json["input_shape"] == {"genes": 20, "samples": 6}

    candidates = pd.read_csv(out / "results" / "candidate_table.csv", index_col=0)
    assert candidates.index[0] == 1

    variance = pd.read_csv(out / "results" / "pca_variance.csv", index_col=0)
    assert list(variance.columns) == ["eigenvalue", "explained_variance_ratio", "cumulative_ratio"]
    assert variance.index[0] == "PC1"
    assert np.all(np.diff(variance["eigenvalue"].to_numpy()) <= 1e-12)
    assert np.isclose(
        variance["explained_variance_ratio"].iloc[0], result.pca.explained_variance_ratio[0]
    )
    assert variance["cumulative_ratio"].iloc[-1] <= 1.0 + 1e-9


def test_same_seed_gives_identical_rankings(two_group_data):
    counts, meta = two_group_data
    cfg = PipelineConfig(
        seed=11,
        cluster=ClusterConfig(n_restarts=3),
        ensemble=EnsembleConfig(n_trees=30),
    )
    a = run_pipeline(counts, meta, cfg)
    b = run_pipeline(counts, meta, cfg)
    assert a.ensemble_ranking.genes == b.ensemble_ranking.genes
    assert np.array_equal(a.ensemble.importances.to_numpy(), b.ensemble.importances.to_numpy())
    pd.testing.assert_frame_equal(a.aggregated.table, b.aggregated.table)
    pd.testing.assert_frame_equal(a.elbow, b.elbow)


def test_oversampling_feeds_the_ensemble(two_group_data):
    counts, meta = two_group_data
    cfg = PipelineConfig(
        cluster=ClusterConfig(n_restarts=2),
        ensemble=EnsembleConfig(oversample="always", k_neighbors=2, target_count=5, n_trees=20),
    )
    result = run_pipeline(counts, meta, cfg)
    assert result.oversampling is not None
    assert result.oversampling.n_synthetic == 2
    assert result.oversampling.X.shape == (8, len(result.candidates))


def test_few_hits_fall_back_to_top_pvalues(two_group_data, de_genes, caplog):
    counts, meta = two_group_data
    null_only = CountMatrix(counts=counts.counts.drop(index=de_genes))
    cfg = PipelineConfig(
        top_n=5,
        cluster=ClusterConfig(n_restarts=2),
        ensemble=EnsembleConfig(n_trees=20),
    )
    with caplog.at_level(logging.WARNING):
        result = run_pipeline(null_only, meta, cfg)
    assert len(result.candidates) == 5
    assert not set(result.candidates) & set(de_genes)
    assert any("falling back" in rec.getMessage() for rec in caplog.records)
    assert result.enrichment is None


def test_load_gmt_rejects_duplicates(tmp_path: Path):
    gmt = tmp_path / "dup.gmt"
    gmt.write_text("s1\tdesc\ta\tb\ns1\tdesc\tc\n", encoding="utf-8")
    with pytest.raises(DataError, match="Duplicate gene set"):
        load_gmt(gmt)


def _drop_sample(
    counts: CountMatrix, meta: SampleMetadata, sample: str
) -> tuple[CountMatrix, SampleMetadata]:
    kept = CountMatrix(counts=counts.counts.drop(columns=[sample]))
    return kept, SampleMetadata(table=meta.table.drop(index=[sample]))


def test_auto_oversampling_skips_a_minority_too_small_for_k(two_group_data, caplog):
    counts, meta = _drop_sample(*two_group_data, "B3")
    cfg = PipelineConfig(
        cluster=ClusterConfig(n_restarts=2, k_samples=2),
        ensemble=EnsembleConfig(oversample="auto", k_neighbors=5, n_trees=20),
    )
    with caplog.at_level(logging.WARNING):
        result = run_pipeline(counts, meta, cfg)
    assert result.oversampling is None
    assert result.differential.table.shape[0] == 20
    assert any("oversampling skipped" in rec.getMessage() for rec in caplog.records)


def test_forced_oversampling_logs_before_failing(two_group_data, caplog):
    counts, meta = _drop_sample(*two_group_data, "B3")
    cfg = PipelineConfig(
        cluster=ClusterConfig(n_restarts=2, k_samples=2),
        ensemble=EnsembleConfig(oversample="always", k_neighbors=5, n_trees=20),
    )
    with caplog.at_level(logging.ERROR):
        with pytest.raises(ConfigurationError, match="needs more than k_neighbors"):
            run_pipeline(counts, meta, cfg)
    assert any("lower ensemble.k_neighbors" in rec.getMessage() for rec in caplog.records)
