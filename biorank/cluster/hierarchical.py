"""Agglomerative clustering with deterministic tie-breaking."""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform

from biorank.core.types import ClusterAssignment, Dendrogram
from biorank.core.utils import finite_2d
from biorank.errors import ConfigurationError, DataError, NumericError

logger = logging.getLogger(__name__)

METRICS = {"euclidean", "cityblock", "cosine", "correlation"}
LINKAGES = {"single", "complete", "average"}


def pairwise_distances(X: np.ndarray, metric: str = "euclidean") -> np.ndarray:
    """Full symmetric item x item distance matrix."""
    if metric not in METRICS:
        raise ConfigurationError(f"Unsupported distance metric '{metric}'.", sorted(METRICS))
    arr = finite_2d("X", X)
    if arr.shape[0] < 2:
        raise DataError("Clustering needs at least two items.")
    dist = squareform(pdist(arr, metric=metric))
    if not np.isfinite(dist).all():
        raise NumericError(
            f"Distance metric '{metric}' produced NaN (constant rows under a correlation metric?)."
        )
    return dist


def _lance_williams(
    linkage: str, d_i: np.ndarray, d_j: np.ndarray, n_i: int, n_j: int
) -> np.ndarray:
    if linkage == "single":
        return np.minimum(d_i, d_j)
    if linkage == "complete":
        return np.maximum(d_i, d_j)
    return (n_i * d_i + n_j * d_j) / float(n_i + n_j)


def agglomerative(
    X: np.ndarray,
    metric: str = "euclidean",
    linkage: str = "complete",
    labels: Sequence[str] | None = None,
) -> Dendrogram:
    """Merge the closest pair of clusters until one remains.

    Each active cluster lives in the slot of its smallest original item index,
    so scanning the upper triangle in row-major order breaks ties by the lowest
    original index pair.

    Raises:
        DataError: With fewer than two items.
        ConfigurationError: For an unknown metric or linkage.
    """
    if linkage not in LINKAGES:
        raise ConfigurationError(f"Unsupported linkage '{linkage}'.", sorted(LINKAGES))
    dist = pairwise_distances(X, metric=metric)
    n = dist.shape[0]
    item_labels = tuple(str(x) for x in (labels if labels is not None else range(n)))
    if len(item_labels) != n:
        raise DataError("labels length must match the number of items.")

    work = dist.copy()
    np.fill_diagonal(work, np.inf)
    active = np.ones(n, dtype=bool)
    slot_id = np.arange(n)
    slot_size = np.ones(n, dtype=int)

    merges = np.zeros((n - 1, 2), dtype=int)
    heights = np.zeros(n - 1, dtype=float)
    sizes = np.zeros(n - 1, dtype=int)

    upper = np.triu(np.ones((n, n), dtype=bool), k=1)
    for step in range(n - 1):
        masked = np.where(upper & active[:, None] & active[None, :], work, np.inf)
        flat = int(np.argmin(masked))
        i, j = divmod(flat, n)
        height = float(masked[i, j])

        a, b = sorted((int(slot_id[i]), int(slot_id[j])))
        merges[step] = (a, b)
        heights[step] = height
        sizes[step] = slot_size[i] + slot_size[j]

        new_row = _lance_williams(linkage, work[i], work[j], slot_size[i], slot_size[j])
        work[i, :] = new_row
        work[:, i] = new_row
        work[i, i] = np.inf
        active[j] = False
        work[j, :] = np.inf
        work[:, j] = np.inf
        slot_size[i] = sizes[step]
        slot_id[i] = n + step

    heights = np.maximum.accumulate(heights)
    logger.debug("Agglomerative clustering: n=%d linkage=%s metric=%s", n, linkage, metric)
    return Dendrogram(
        merges=merges,
        heights=heights,
        sizes=sizes,
        labels=item_labels,
        metric=metric,
        linkage=linkage,
    )


def cut_tree(dendrogram: Dendrogram, k: int) -> ClusterAssignment:
    """Cut at the (k-1)-th largest merge height, giving exactly ``k`` clusters.

    Labels are numbered from 0 in order of first appearance over the items.
    """
    n = dendrogram.n_leaves
    k_i = int(k)
    if k_i < 1 or k_i > n:
        raise ConfigurationError(f"k must lie in [1, {n}], got {k_i}.")

    parent = np.arange(2 * n - 1)

    def _find(x: int) -> int:
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = int(parent[x])
        return x

    for step in range(n - k_i):
        a, b = dendrogram.merges[step]
        new_id = n + step
        parent[_find(int(a))] = new_id
        parent[_find(int(b))] = new_id

    roots = [_find(i) for i in range(n)]
    relabel: dict[int, int] = {}
    out = []
    for r in roots:
        if r not in relabel:
            relabel[r] = len(relabel)
        out.append(relabel[r])
    return ClusterAssignment(
        labels=pd.Series(out, index=list(dendrogram.labels), name="cluster", dtype=int)
    )
