"""Typed records for the entities passed between biorank stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd

from biorank.core.utils import duplicated_labels
from biorank.errors import DataError


@dataclass(frozen=True)
class CountMatrix:
    """Raw counts, genes as rows and samples as columns.

    Stages read from ``counts`` and never write to it.
    """

    counts: pd.DataFrame

    def __post_init__(self) -> None:
        df = self.counts
        if not isinstance(df, pd.DataFrame):
            raise DataError("CountMatrix expects a pandas DataFrame.")
        if df.shape[0] == 0 or df.shape[1] == 0:
            raise DataError(f"CountMatrix must be non-empty, got shape {df.shape}.")
        dup_genes = duplicated_labels(df.index)
        if dup_genes:
            raise DataError("Duplicate gene IDs in count matrix.", dup_genes)
        dup_samples = duplicated_labels(df.columns)
        if dup_samples:
            raise DataError("Duplicate sample IDs in count matrix.", dup_samples)
        non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
        if non_numeric:
            raise DataError("Non-numeric count columns.", non_numeric)
        values = df.to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise DataError("Count matrix contains NaN/inf.")
        negative = df.index[(values < 0).any(axis=1)]
        if len(negative) > 0:
            raise DataError("Count matrix contains negative counts.", negative)
        fractional = df.index[(values != np.round(values)).any(axis=1)]
        if len(fractional) > 0:
            raise DataError("Count matrix contains non-integer counts.", fractional)

    @property
    def gene_ids(self) -> list[str]:
        return [str(g) for g in self.counts.index]

    @property
    def sample_ids(self) -> list[str]:
        return [str(s) for s in self.counts.columns]

    @property
    def shape(self) -> tuple[int, int]:
        return (int(self.counts.shape[0]), int(self.counts.shape[1]))

    def values(self) -> np.ndarray:
        """Return a float copy of the counts (genes x samples)."""
        return self.counts.to_numpy(dtype=float, copy=True)


@dataclass(frozen=True)
class SampleMetadata:
    """Per-sample group labels and covariates, indexed by sample ID."""

    table: pd.DataFrame
    group_col: str = "group"

    def __post_init__(self) -> None:
        df = self.table
        if not isinstance(df, pd.DataFrame):
            raise DataError("SampleMetadata expects a pandas DataFrame.")
        dup = duplicated_labels(df.index)
        if dup:
            raise DataError("Duplicate sample IDs in metadata.", dup)
        if self.group_col not in df.columns:
            raise DataError(f"Metadata is missing the group column '{self.group_col}'.")
        missing = df.index[df[self.group_col].isna()]
        if len(missing) > 0:
            raise DataError("Samples without a group label.", missing)

    @property
    def sample_ids(self) -> list[str]:
        return [str(s) for s in self.table.index]

    def groups(self, sample_ids: Sequence[str] | None = None) -> pd.Series:
        labels = self.table[self.group_col].astype(str)
        labels.index = [str(s) for s in labels.index]
        if sample_ids is None:
            return labels.copy()
        return labels.loc[[str(s) for s in sample_ids]].copy()

    def check_alignment(self, sample_ids: Sequence[str]) -> None:
        """Raise ``DataError`` unless metadata and count columns biject."""
        counts_ids = {str(s) for s in sample_ids}
        meta_ids = set(self.sample_ids)
        missing = sorted(counts_ids - meta_ids)
        extra = sorted(meta_ids - counts_ids)
        if missing:
            raise DataError("Samples in counts but not in metadata.", missing)
        if extra:
            raise DataError("Samples in metadata but not in counts.", extra)


@dataclass(frozen=True)
class NormalizationResult:
    size_factors: pd.Series
    normalized: pd.DataFrame
    filter_counts: dict[str, int] = field(default_factory=dict)

    @property
    def kept_genes(self) -> list[str]:
        return [str(g) for g in self.normalized.index]


@dataclass(frozen=True)
class DifferentialResult:
    """Per-gene test table; NaN marks an undefined statistic.

    ``table`` columns: baseMean, log2FoldChange, lfcSE, stat, pvalue, padj,
    dispGeneEst, dispFit, dispersion, converged, ttest_stat, ttest_pvalue,
    ttest_padj.
    """

    table: pd.DataFrame
    reference: str
    treatment: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def n_tested(self) -> int:
        return int(np.isfinite(self.table["pvalue"].to_numpy(dtype=float)).sum())


@dataclass(frozen=True)
class Dendrogram:
    """Binary merge tree in SciPy linkage convention.

    Leaves are ``0..n-1``; the cluster created by merge ``t`` has id ``n + t``.
    """

    merges: np.ndarray
    heights: np.ndarray
    sizes: np.ndarray
    labels: tuple[str, ...]
    metric: str = "euclidean"
    linkage: str = "complete"

    @property
    def n_leaves(self) -> int:
        return len(self.labels)

    @property
    def leaf_order(self) -> list[int]:
        n = self.n_leaves
        if n == 1:
            return [0]
        order: list[int] = []
        stack = [n + self.merges.shape[0] - 1]
        while stack:
            node = stack.pop()
            if node < n:
                order.append(int(node))
                continue
            left, right = self.merges[node - n]
            stack.append(int(right))
            stack.append(int(left))
        return order

    def to_linkage_matrix(self) -> np.ndarray:
        return np.column_stack(
            [
                self.merges.astype(float),
                self.heights.astype(float),
                self.sizes.astype(float),
            ]
        )


@dataclass(frozen=True)
class ClusterAssignment:
    """Item ID to cluster label; labels are only meaningful within one run."""

    labels: pd.Series

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    def members(self, label: int) -> list[str]:
        return [str(i) for i in self.labels.index[self.labels.to_numpy() == label]]


@dataclass(frozen=True)
class PrincipalComponents:
    eigenvalues: np.ndarray
    loadings: pd.DataFrame
    scores: pd.DataFrame
    total_variance: float

    @property
    def explained_variance_ratio(self) -> np.ndarray:
        if self.total_variance <= 0:
            return np.zeros_like(self.eigenvalues)
        return self.eigenvalues / float(self.total_variance)


@dataclass(frozen=True)
class KMeansResult:
    labels: pd.Series
    centers: np.ndarray
    inertia: float
    n_iter: int
    restart: int
    k: int


@dataclass(frozen=True)
class OversampleResult:
    """Original rows first, then synthetic rows in generation order."""

    X: np.ndarray
    y: np.ndarray
    n_original: int
    minority_label: Any

    @property
    def n_synthetic(self) -> int:
        return int(self.X.shape[0]) - int(self.n_original)


@dataclass(frozen=True)
class RankedGeneList:
    """Genes ordered by score, highest first, each gene at most once.

    Equal scores are allowed; their relative order is the one supplied.
    """

    genes: tuple[str, ...]
    scores: np.ndarray

    def __post_init__(self) -> None:
        scores = np.asarray(self.scores, dtype=float).ravel()
        if len(self.genes) != scores.size:
            raise DataError("RankedGeneList genes and scores differ in length.")
        dup = duplicated_labels(self.genes)
        if dup:
            raise DataError("RankedGeneList contains duplicate genes.", dup)
        if not np.isfinite(scores).all():
            raise DataError("RankedGeneList scores must be finite.")
        if scores.size > 1 and np.any(np.diff(scores) > 0):
            raise DataError("RankedGeneList scores must be in descending order.")
        object.__setattr__(self, "genes", tuple(str(g) for g in self.genes))
        object.__setattr__(self, "scores", scores)

    @classmethod
    def from_scores(cls, scores: pd.Series) -> "RankedGeneList":
        """Sort a gene -> score series descending, ties by gene ID."""
        s = pd.Series(scores, dtype=float).dropna()
        frame = pd.DataFrame({"gene": [str(g) for g in s.index], "score": s.to_numpy()})
        frame = frame.sort_values(["score", "gene"], ascending=[False, True], kind="mergesort")
        return cls(genes=tuple(frame["gene"]), scores=frame["score"].to_numpy(dtype=float))

    def __len__(self) -> int:
        return len(self.genes)

    def head(self, n: int) -> "RankedGeneList":
        n_i = max(0, int(n))
        return RankedGeneList(genes=self.genes[:n_i], scores=self.scores[:n_i])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"gene": list(self.genes), "score": self.scores})


@dataclass(frozen=True)
class EnrichmentResult:
    """Per gene-set table; skipped sets carry NaN statistics.

    ``table`` columns: es, nes, pvalue, padj, size, set_size, status,
    leading_edge.
    """

    table: pd.DataFrame
    null_distributions: dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def tested(self) -> pd.DataFrame:
        return self.table[self.table["status"] == "tested"]

    @property
    def skipped(self) -> pd.DataFrame:
        return self.table[self.table["status"] == "skipped"]
