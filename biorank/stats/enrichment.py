"""Pre-ranked gene-set enrichment with a gene-label permutation null."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np
import pandas as pd

from biorank.core.types import DifferentialResult, EnrichmentResult, RankedGeneList
from biorank.core.utils import derive_seed
from biorank.errors import ConfigurationError
from biorank.parallel import parallel_map
from biorank.stats.multiple_testing import bh_fdr

logger = logging.getLogger(__name__)

PERM_BATCH = 100
RESULT_COLUMNS = [
    "gene_set",
    "es",
    "nes",
    "pvalue",
    "padj",
    "size",
    "set_size",
    "status",
    "leading_edge",
]


def ranked_list_from_results(
    result: DifferentialResult, score: str = "log2FoldChange"
) -> RankedGeneList:
    """Rank every tested gene by a signed score; NaN scores are dropped."""
    if score not in result.table.columns:
        raise ConfigurationError(f"Unknown ranking column '{score}'.")
    return RankedGeneList.from_scores(result.table[score])


def _hit_weights(scores: np.ndarray, positions: np.ndarray, weight: float) -> np.ndarray:
    w = np.abs(scores[positions]) ** float(weight)
    total = w.sum(axis=-1, keepdims=True)
    flat = np.ones_like(w) / w.shape[-1]
    return np.where(total > 0, w / np.where(total > 0, total, 1.0), flat)


def enrichment_score_from_positions(
    scores: np.ndarray, positions: np.ndarray, weight: float = 1.0
) -> np.ndarray:
    """Signed maximum deviation of the running sum for sorted hit positions.

    ``positions`` has shape ``(n_hits,)`` or ``(n_rows, n_hits)``, each row
    sorted ascending; one score is returned per row. The running sum rises by the normalized ``|score|^weight``
    at each hit and falls by ``1 / (N - n_hits)`` at each miss. Its extremes
    occur right after a hit (maximum) or right before one (minimum).
    """
    pos = np.atleast_2d(np.asarray(positions, dtype=int))
    n_total = int(scores.size)
    n_hits = pos.shape[1]
    miss_step = 1.0 / float(n_total - n_hits) if n_total > n_hits else 0.0

    w = _hit_weights(scores, pos, weight)
    cum = np.cumsum(w, axis=1)
    misses_before = pos - np.arange(n_hits)[None, :]
    after_hit = cum - misses_before * miss_step
    before_hit = (cum - w) - misses_before * miss_step

    top = np.maximum(after_hit.max(axis=1), 0.0)
    bottom = np.minimum(before_hit.min(axis=1), 0.0)
    es = np.where(top >= -bottom, top, bottom)
    return es


def running_sum(scores: np.ndarray, in_set: np.ndarray, weight: float = 1.0) -> np.ndarray:
    """Full running-sum curve over the ranked list (for diagnostics)."""
    hits = np.asarray(in_set, dtype=bool)
    n_total = hits.size
    n_hits = int(hits.sum())
    step_hit = np.zeros(n_total)
    if n_hits:
        w = np.abs(scores[hits]) ** float(weight)
        step_hit[hits] = w / w.sum() if w.sum() > 0 else 1.0 / n_hits
    step_miss = np.where(hits, 0.0, 1.0 / float(n_total - n_hits) if n_total > n_hits else 0.0)
    return np.cumsum(step_hit - step_miss)


def leading_edge(genes: Sequence[str], scores: np.ndarray, positions: np.ndarray, es: float, weight: float) -> list[str]:
    curve = running_sum(scores, np.isin(np.arange(len(genes)), positions), weight)
    if es >= 0:
        peak = int(np.argmax(curve))
        return [genes[p] for p in positions if p <= peak]
    trough = int(np.argmin(curve))
    return [genes[p] for p in positions if p > trough]


@dataclass(frozen=True)
class _SetTask:
    name: str
    positions: np.ndarray
    scores: np.ndarray
    weight: float
    n_perm: int
    seed: int


def _permutation_null(task: _SetTask) -> np.ndarray:
    rng = np.random.default_rng(task.seed)
    n_total = task.scores.size
    n_hits = task.positions.size
    null = np.empty(task.n_perm, dtype=float)
    done = 0
    while done < task.n_perm:
        b = min(PERM_BATCH, task.n_perm - done)
        perm_pos = np.sort(np.argsort(rng.random((b, n_total)), axis=1)[:, :n_hits], axis=1)
        null[done : done + b] = enrichment_score_from_positions(task.scores, perm_pos, task.weight)
        done += b
    return null


def _signed_pvalue(es: float, null: np.ndarray) -> float:
    if es >= 0:
        same = null[null >= 0]
        return float((1.0 + np.sum(same >= es)) / (1.0 + same.size))
    same = null[null < 0]
    return float((1.0 + np.sum(same <= es)) / (1.0 + same.size))


def _normalize(es: float, null: np.ndarray) -> float:
    same = null[null >= 0] if es >= 0 else null[null < 0]
    if same.size == 0:
        return float("nan")
    scale = float(np.mean(np.abs(same)))
    if scale <= 0:
        return float("nan")
    return float(es / scale)


def gsea_prerank(
    ranked: RankedGeneList,
    gene_sets: Mapping[str, Sequence[str]],
    weight: float = 1.0,
    n_perm: int = 1000,
    min_size: int = 5,
    max_size: int | None = None,
    seed: int = 0,
    n_jobs: int = 1,
) -> EnrichmentResult:
    """Enrichment of each gene set along a full ranked gene list.

    Sets whose overlap with the ranked list is below ``min_size`` (or above
    ``max_size``) are reported with ``status="skipped"`` and NaN statistics.
    The p-value compares ES against same-signed null scores; NES divides ES
    by the mean absolute same-signed null score. BH runs over tested sets only.
    """
    if int(n_perm) < 1:
        raise ConfigurationError("n_perm must be >= 1.")
    if int(min_size) < 1:
        raise ConfigurationError("min_size must be >= 1.")
    if len(ranked) < 2:
        raise ConfigurationError("Ranked list needs at least two genes.")

    genes = list(ranked.genes)
    scores = np.asarray(ranked.scores, dtype=float)
    index = {g: i for i, g in enumerate(genes)}

    rows: list[dict] = []
    tasks: list[_SetTask] = []
    for name, members in gene_sets.items():
        unique_members = list(dict.fromkeys(str(m) for m in members))
        positions = np.sort(np.array([index[m] for m in unique_members if m in index], dtype=int))
        size = int(positions.size)
        row = {
            "gene_set": str(name),
            "es": np.nan,
            "nes": np.nan,
            "pvalue": np.nan,
            "padj": np.nan,
            "size": size,
            "set_size": len(unique_members),
            "status": "skipped",
            "leading_edge": "",
        }
        too_big = max_size is not None and size > int(max_size)
        if size < int(min_size) or too_big or size >= len(genes):
            logger.info(
                "Gene set %s skipped: overlap=%d (min_size=%d)", name, size, int(min_size)
            )
        else:
            row["status"] = "tested"
            tasks.append(
                _SetTask(
                    name=str(name),
                    positions=positions,
                    scores=scores,
                    weight=float(weight),
                    n_perm=int(n_perm),
                    seed=derive_seed(seed, "gsea", name),
                )
            )
        rows.append(row)

    nulls = parallel_map(_permutation_null, tasks, n_jobs=n_jobs, require_seed=True)
    by_name = {row["gene_set"]: row for row in rows}
    null_map: dict[str, np.ndarray] = {}
    for task, null in zip(tasks, nulls):
        es = float(enrichment_score_from_positions(scores, task.positions, weight)[0])
        row = by_name[task.name]
        row["es"] = es
        row["nes"] = _normalize(es, null)
        row["pvalue"] = _signed_pvalue(es, null)
        row["leading_edge"] = ";".join(leading_edge(genes, scores, task.positions, es, weight))
        null_map[task.name] = null

    table = pd.DataFrame(rows, columns=RESULT_COLUMNS)
    table["padj"] = bh_fdr(table["pvalue"].to_numpy(dtype=float))
    table = table.set_index("gene_set")
    return EnrichmentResult(table=table, null_distributions=null_map)
