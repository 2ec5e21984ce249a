"""End-to-end candidate biomarker pipeline."""

from __future__ import annotations

import importlib.metadata as importlib_metadata
import logging
import platform
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from biorank._version import __version__
from biorank.aggregate import AggregatedCandidates, aggregate_rankings, cluster_members
from biorank.cluster.hierarchical import agglomerative, cut_tree
from biorank.cluster.kmeans import elbow_curve, kmeans
from biorank.cluster.pca import fit_pca, standardize, top_loading_genes
from biorank.config import PipelineConfig, load_pipeline_config
from biorank.core.types import (
    ClusterAssignment,
    CountMatrix,
    Dendrogram,
    DifferentialResult,
    EnrichmentResult,
    KMeansResult,
    NormalizationResult,
    PrincipalComponents,
    RankedGeneList,
    SampleMetadata,
)
from biorank.core.utils import derive_seed
from biorank.differential import run_differential, significant_genes
from biorank.errors import ConfigurationError
from biorank.normalize import normalize_counts
from biorank.pipeline.io import (
    ensure_dir,
    load_gmt,
    read_count_matrix,
    read_sample_metadata,
    setup_logger,
    write_json,
    write_table,
)
from biorank.stats.enrichment import gsea_prerank, ranked_list_from_results
from biorank.supervised.forest import EnsembleResult, fit_ensemble, rank_features
from biorank.supervised.oversample import OversampleResult, smote

MIN_CANDIDATES = 2


@dataclass(frozen=True)
class PipelineResult:
    normalization: NormalizationResult
    differential: DifferentialResult
    candidates: list[str]
    gene_dendrogram: Dendrogram
    gene_clusters: ClusterAssignment
    sample_dendrogram: Dendrogram
    sample_clusters: ClusterAssignment
    pca: PrincipalComponents
    pca_ranking: RankedGeneList
    elbow: pd.DataFrame
    sample_kmeans: KMeansResult | None
    oversampling: OversampleResult | None
    ensemble: EnsembleResult
    ensemble_ranking: RankedGeneList
    aggregated: AggregatedCandidates
    enrichment: EnrichmentResult | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _select_candidates(
    de: DifferentialResult, config: PipelineConfig, logger: logging.Logger
) -> list[str]:
    dcfg = config.differential
    hits = significant_genes(
        de, alpha=dcfg.alpha, lfc_threshold=dcfg.lfc_threshold, policy=dcfg.significance_policy
    )
    logger.info(
        "Significant genes (policy=%s, alpha=%.3g): %d",
        dcfg.significance_policy,
        dcfg.alpha,
        len(hits),
    )
    if len(hits) >= MIN_CANDIDATES:
        return hits[: config.top_n]

    ranked = de.table[["pvalue"]].dropna().copy()
    ranked["gene"] = ranked.index.astype(str)
    ranked = ranked.sort_values(["pvalue", "gene"])
    fallback = list(ranked["gene"])[: config.top_n]
    logger.warning(
        "Only %d significant genes; falling back to the top %d genes by p-value.",
        len(hits),
        len(fallback),
    )
    return fallback


def _log_expression(norm: NormalizationResult, genes: Sequence[str]) -> pd.DataFrame:
    """Samples x genes log2(normalized + 1) expression."""
    return np.log2(norm.normalized.loc[list(genes)] + 1.0).T


def _resample_for_ensemble(
    X: np.ndarray, y: np.ndarray, config: PipelineConfig, logger: logging.Logger
) -> OversampleResult | None:
    """SMOTE the ensemble input per ``ensemble.oversample``.

    ``"auto"`` skips balanced classes and minorities too small for
    ``k_neighbors``; ``"always"`` lets the small-minority error propagate.
    """
    ecfg = config.ensemble
    if ecfg.oversample == "never":
        return None
    _, counts = np.unique(y, return_counts=True)
    if ecfg.oversample == "auto" and counts.min() == counts.max():
        logger.info("Classes balanced (%d each); oversampling skipped.", int(counts.min()))
        return None
    n_min = int(counts.min())
    if n_min <= int(ecfg.k_neighbors):
        if ecfg.oversample == "auto":
            logger.warning(
                "Minority class has %d samples, not more than k_neighbors=%d; "
                "oversampling skipped, ensemble fitted on the original samples.",
                n_min,
                ecfg.k_neighbors,
            )
            return None
        logger.error(
            "Minority class has %d samples, not more than k_neighbors=%d; "
            "lower ensemble.k_neighbors or set ensemble.oversample to 'auto' or 'never'.",
            n_min,
            ecfg.k_neighbors,
        )
    return smote(
        X,
        y,
        target_count=ecfg.target_count,
        k_neighbors=ecfg.k_neighbors,
        seed=derive_seed(config.seed, "smote"),
    )


def run_pipeline(
    counts: CountMatrix,
    metadata: SampleMetadata,
    config: PipelineConfig | None = None,
    gene_sets: Mapping[str, Sequence[str]] | None = None,
    outdir: str | Path | None = None,
    logger: logging.Logger | None = None,
) -> PipelineResult:
    """Run every stage from raw counts to the aggregated candidate table."""
    cfg = config or PipelineConfig()
    log = logger or logging.getLogger(__name__)
    ccfg = cfg.cluster

    norm = normalize_counts(counts, metadata, cfg.filter)
    de = run_differential(norm, metadata, cfg.differential, n_jobs=cfg.n_jobs)
    log.info(
        "Differential testing: %d genes, %d with a defined p-value (%s vs %s)",
        de.table.shape[0],
        de.n_tested,
        de.treatment,
        de.reference,
    )

    candidates = _select_candidates(de, cfg, log)
    expr = _log_expression(norm, candidates)
    sample_ids = [str(s) for s in expr.index]

    gene_tree = agglomerative(
        expr.T.to_numpy(dtype=float), metric=ccfg.metric, linkage=ccfg.linkage, labels=candidates
    )
    gene_clusters = cut_tree(gene_tree, min(int(ccfg.n_gene_clusters), len(candidates)))
    abs_lfc = de.table.loc[candidates, "log2FoldChange"].abs()
    cluster_strength = abs_lfc.groupby(gene_clusters.labels.reindex(abs_lfc.index)).mean()
    top_cluster = int(cluster_strength.idxmax())
    cluster_ranking = cluster_members(gene_clusters, top_cluster, order_by=abs_lfc)

    sample_tree = agglomerative(
        expr.to_numpy(dtype=float), metric="euclidean", linkage=ccfg.linkage, labels=sample_ids
    )
    sample_clusters = cut_tree(sample_tree, min(int(ccfg.k_samples), len(sample_ids)))

    pcs = fit_pca(standardize(expr), n_components=ccfg.n_components)
    pca_ranking = top_loading_genes(pcs, component=ccfg.pca_component, top_n=cfg.top_n)

    scores = pcs.scores.to_numpy(dtype=float)
    kmeans_seed = derive_seed(cfg.seed, "kmeans")
    k_values = [k for k in ccfg.k_range if 2 <= int(k) <= len(sample_ids)]
    elbow = elbow_curve(
        scores, k_values, n_restarts=ccfg.n_restarts, max_iter=ccfg.max_iter, seed=kmeans_seed
    )
    sample_km = None
    if 2 <= int(ccfg.k_samples) <= len(sample_ids):
        sample_km = kmeans(
            scores,
            ccfg.k_samples,
            n_restarts=ccfg.n_restarts,
            max_iter=ccfg.max_iter,
            seed=kmeans_seed,
            labels=sample_ids,
        )

    y = metadata.groups(sample_ids).to_numpy()
    X = expr.to_numpy(dtype=float)
    resampled = _resample_for_ensemble(X, y, cfg, log)
    X_fit, y_fit = (resampled.X, resampled.y) if resampled is not None else (X, y)
    ecfg = cfg.ensemble
    ensemble = fit_ensemble(
        X_fit,
        y_fit,
        feature_names=candidates,
        n_trees=ecfg.n_trees,
        max_samples=ecfg.max_samples,
        max_features=ecfg.max_features,
        min_samples_leaf=ecfg.min_samples_leaf,
        seed=derive_seed(cfg.seed, "ensemble"),
        n_jobs=cfg.n_jobs,
    )
    ensemble_ranking = rank_features(ensemble)

    aggregated = aggregate_rankings(
        {
            "pca_loading": pca_ranking,
            "ensemble_importance": ensemble_ranking,
            "cluster_membership": cluster_ranking,
        },
        top_n=cfg.top_n,
        missing=cfg.missing_sentinel,
    )
    log.info("Aggregated candidates: %d unique genes", aggregated.provenance.shape[0])

    sets = gene_sets
    if sets is None and cfg.enrichment.gene_sets_path:
        sets = load_gmt(cfg.enrichment.gene_sets_path)
    enrichment = None
    if sets is not None:
        encfg = cfg.enrichment
        enrichment = gsea_prerank(
            ranked_list_from_results(de, score=encfg.score_col),
            sets,
            weight=encfg.weight,
            n_perm=encfg.n_perm,
            min_size=encfg.min_size,
            max_size=encfg.max_size,
            seed=derive_seed(cfg.seed, "enrichment"),
            n_jobs=cfg.n_jobs,
        )
        log.info(
            "Enrichment: %d sets tested, %d skipped",
            enrichment.tested.shape[0],
            enrichment.skipped.shape[0],
        )

    result = PipelineResult(
        normalization=norm,
        differential=de,
        candidates=candidates,
        gene_dendrogram=gene_tree,
        gene_clusters=gene_clusters,
        sample_dendrogram=sample_tree,
        sample_clusters=sample_clusters,
        pca=pcs,
        pca_ranking=pca_ranking,
        elbow=elbow,
        sample_kmeans=sample_km,
        oversampling=resampled,
        ensemble=ensemble,
        ensemble_ranking=ensemble_ranking,
        aggregated=aggregated,
        enrichment=enrichment,
        metadata=_run_metadata(cfg, counts),
    )
    if outdir is not None:
        write_outputs(result, Path(outdir), cfg)
        log.info("Pipeline complete. Results in %s", Path(outdir).as_posix())
    return result


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _package_version(name: str) -> str:
    try:
        return importlib_metadata.version(name)
    except importlib_metadata.PackageNotFoundError:
        return "unknown"


def _run_metadata(cfg: PipelineConfig, counts: CountMatrix) -> dict[str, Any]:
    return {
        "timestamp_utc": _now_utc_iso(),
        "biorank_version": __version__,
        "python_version": platform.python_version(),
        "versions": {
            name: _package_version(name)
            for name in (
                "numpy",
                "pandas",
                "scipy",
                "scikit-learn",
                "imbalanced-learn",
                "joblib",
                "matplotlib",
            )
        },
        "input_shape": {"genes": counts.shape[0], "samples": counts.shape[1]},
        "parameters": cfg.to_dict(),
    }


def pca_variance_table(pcs: PrincipalComponents) -> pd.DataFrame:
    """Eigenvalue and explained-variance ratio per component."""
    ratio = pcs.explained_variance_ratio
    return pd.DataFrame(
        {
            "eigenvalue": pcs.eigenvalues,
            "explained_variance_ratio": ratio,
            "cumulative_ratio": np.cumsum(ratio),
        },
        index=pd.Index(list(pcs.loadings.columns), name="component"),
    )


def write_outputs(result: PipelineResult, outdir: Path, cfg: PipelineConfig) -> None:
    results_dir = outdir / "results"
    ensure_dir(results_dir)

    write_table(result.normalization.size_factors.to_frame(), results_dir / "size_factors.csv")
    write_table(result.differential.table, results_dir / "differential_results.csv")
    write_table(
        result.gene_clusters.labels.rename_axis("gene").to_frame(),
        results_dir / "gene_clusters.csv",
    )
    write_table(
        result.sample_clusters.labels.rename_axis("sample").to_frame(),
        results_dir / "cluster_assignment.csv",
    )
    write_table(result.pca.scores.rename_axis("sample"), results_dir / "pca_scores.csv")
    write_table(result.pca.loadings.rename_axis("gene"), results_dir / "pca_loadings.csv")
    write_table(pca_variance_table(result.pca), results_dir / "pca_variance.csv")
    write_table(result.elbow, results_dir / "elbow_curve.csv", index=False)
    write_table(result.ensemble_ranking.to_frame(), results_dir / "ensemble_importance.csv", index=False)
    write_table(
        pd.DataFrame(
            {
                "n_trees": np.arange(1, result.ensemble.oob_error_curve.size + 1),
                "oob_error": result.ensemble.oob_error_curve,
            }
        ),
        results_dir / "oob_error_curve.csv",
        index=False,
    )
    write_table(result.aggregated.table, results_dir / "candidate_table.csv")
    write_table(result.aggregated.provenance, results_dir / "candidate_provenance.csv", index=False)
    if result.enrichment is not None:
        write_table(result.enrichment.table, results_dir / "enrichment_results.csv")
    write_json(outdir / "run_metadata.json", result.metadata)

    if cfg.write_plots:
        from biorank.plotting.diagnostics import plot_elbow_curve, plot_null_hist, plot_oob_curve

        fig_dir = outdir / "figures"
        ensure_dir(fig_dir)
        if not result.elbow.empty:
            plot_elbow_curve(result.elbow, fig_dir / "elbow_curve.png")
        plot_oob_curve(result.ensemble.oob_error_curve, fig_dir / "oob_error_curve.png")
        if result.enrichment is not None:
            tested = result.enrichment.tested
            for name, null in result.enrichment.null_distributions.items():
                safe = "".join(ch if ch.isalnum() else "_" for ch in name)
                plot_null_hist(
                    null,
                    float(tested.loc[name, "es"]),
                    fig_dir / f"enrichment_null_{safe}.png",
                    title=name,
                )


def run_pipeline_from_config(config_path: str | Path) -> PipelineResult:
    """Load inputs named in a JSON config, run, and write outputs."""
    cfg, raw = load_pipeline_config(config_path)
    for key in ("counts_path", "metadata_path"):
        if not raw.get(key):
            raise ConfigurationError(f"Config is missing '{key}'.")
    outdir = Path(raw.get("outdir", "biorank_out"))
    logger = setup_logger(outdir / "logs" / "biorank.log", "biorank")

    counts = read_count_matrix(raw["counts_path"])
    metadata = read_sample_metadata(raw["metadata_path"], group_col=cfg.differential.group_col)
    logger.info(
        "Loaded counts: genes=%d samples=%d", counts.shape[0], counts.shape[1]
    )
    return run_pipeline(counts, metadata, cfg, outdir=outdir, logger=logger)
