"""Restarted Lloyd k-means with per-restart derived seeds."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans

from biorank.core.types import KMeansResult
from biorank.core.utils import derive_seed, finite_2d
from biorank.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _lloyd(arr: np.ndarray, k: int, init, max_iter: int, random_state: int) -> KMeans:
    km = KMeans(
        n_clusters=k,
        init=init,
        n_init=1,
        max_iter=int(max_iter),
        tol=0.0,
        algorithm="lloyd",
        random_state=random_state,
    )
    km.fit(arr)
    return km


def _grow_centers(X: np.ndarray, centers: np.ndarray, k: int) -> np.ndarray:
    """Extend ``centers`` to ``k`` rows, each time adding the item farthest from its nearest center."""
    out = np.asarray(centers, dtype=float)
    while out.shape[0] < k:
        d2 = ((X[:, None, :] - out[None, :, :]) ** 2).sum(axis=2).min(axis=1)
        out = np.vstack([out, X[int(np.argmax(d2))]])
    return out[:k]


def kmeans(
    X: np.ndarray,
    k: int,
    n_restarts: int = 25,
    max_iter: int = 300,
    seed: int = 0,
    labels: Sequence[str] | None = None,
    init_centers: np.ndarray | None = None,
) -> KMeansResult:
    """Best-of-``n_restarts`` Lloyd k-means by total within-cluster sum of squares.

    Every restart starts from a fresh k-means++ initialization seeded by
    ``derive_seed(seed, "kmeans", k, restart)`` and iterates until the
    assignment stops changing or ``max_iter`` is reached. Ties in inertia keep
    the earliest restart. ``init_centers`` (k x features) adds one extra
    restart, numbered ``n_restarts``, started from those centers.
    """
    arr = finite_2d("X", X)
    n = arr.shape[0]
    k_i = int(k)
    if k_i < 2:
        raise ConfigurationError(f"k must be >= 2, got {k_i}.")
    if k_i > n:
        raise ConfigurationError(f"k={k_i} exceeds the number of items ({n}).")
    if int(n_restarts) < 1:
        raise ConfigurationError("n_restarts must be >= 1.")

    starts: list[tuple[int, object, int]] = [
        (restart, "k-means++", derive_seed(seed, "kmeans", k_i, restart))
        for restart in range(int(n_restarts))
    ]
    if init_centers is not None:
        init = np.asarray(init_centers, dtype=float)
        if init.shape != (k_i, arr.shape[1]):
            raise ConfigurationError(
                f"init_centers must have shape {(k_i, arr.shape[1])}, got {init.shape}."
            )
        starts.append((int(n_restarts), init, derive_seed(seed, "kmeans", k_i, "warm")))

    index = [str(x) for x in (labels if labels is not None else range(n))]

    def _result(restart: int, init: object, state: int) -> KMeansResult:
        km = _lloyd(arr, k_i, init, max_iter, state)
        return KMeansResult(
            labels=pd.Series(km.labels_.astype(int), index=index, name="cluster"),
            centers=np.asarray(km.cluster_centers_, dtype=float),
            inertia=float(km.inertia_),
            n_iter=int(km.n_iter_),
            restart=restart,
            k=k_i,
        )

    best = _result(*starts[0])
    for start in starts[1:]:
        candidate = _result(*start)
        if candidate.inertia < best.inertia:
            best = candidate
    logger.debug("k-means k=%d best restart=%d inertia=%.4g", k_i, best.restart, best.inertia)
    return best


def elbow_curve(
    X: np.ndarray,
    k_range: Iterable[int],
    n_restarts: int = 25,
    max_iter: int = 300,
    seed: int = 0,
) -> pd.DataFrame:
    """Restart-best inertia per k, in ascending k; choosing k is left to the caller.

    Each k also gets a restart grown from the previous k's best centers, so
    the curve never increases with k.
    """
    arr = finite_2d("X", X)
    rows = []
    prev: KMeansResult | None = None
    for k in sorted({int(k) for k in k_range}):
        warm = _grow_centers(arr, prev.centers, k) if prev is not None else None
        res = kmeans(
            arr, k, n_restarts=n_restarts, max_iter=max_iter, seed=seed, init_centers=warm
        )
        rows.append({"k": k, "inertia": res.inertia, "n_iter": res.n_iter, "restart": res.restart})
        prev = res
    return pd.DataFrame(rows, columns=["k", "inertia", "n_iter", "restart"])
