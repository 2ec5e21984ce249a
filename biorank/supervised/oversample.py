"""Synthetic minority oversampling by neighbor interpolation (SMOTE)."""

from __future__ import annotations

import logging

import numpy as np
from imblearn.over_sampling import SMOTE
from sklearn.neighbors import NearestNeighbors

from biorank.core.types import OversampleResult
from biorank.core.utils import finite_2d
from biorank.errors import ConfigurationError, DataError

logger = logging.getLogger(__name__)


def class_counts(y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    labels = np.asarray(y).ravel()
    classes, counts = np.unique(labels, return_counts=True)
    if classes.size != 2:
        raise ConfigurationError(
            f"Oversampling needs exactly two classes, found {classes.size}.",
            [str(c) for c in classes],
        )
    return classes, counts


def smote(
    X: np.ndarray,
    y: np.ndarray,
    target_count: int | None = None,
    k_neighbors: int = 5,
    metric: str = "euclidean",
    seed: int = 0,
) -> OversampleResult:
    """Grow the minority class to ``target_count`` items with ``imblearn`` SMOTE.

    Each synthetic item is ``x_i + u * (x_nn - x_i)`` with ``x_nn`` one of the
    ``k_neighbors`` nearest minority neighbors of ``x_i`` under ``metric`` and
    ``u`` uniform in [0, 1).

    Raises:
        ConfigurationError: If the minority class has ``<= k_neighbors`` items,
            ``target_count`` is below the current minority size, or the labels
            are not two-class.
    """
    arr = finite_2d("X", X)
    labels = np.asarray(y).ravel()
    if labels.size != arr.shape[0]:
        raise DataError("X and y differ in length.")
    classes, counts = class_counts(labels)
    minority = classes[int(np.argmin(counts))]
    n_min = int(counts.min())
    k = int(k_neighbors)
    if k < 1:
        raise ConfigurationError("k_neighbors must be >= 1.")
    if n_min <= k:
        raise ConfigurationError(
            f"Minority class '{minority}' has {n_min} items; needs more than k_neighbors={k}."
        )
    target = int(counts.max()) if target_count is None else int(target_count)
    if target < n_min:
        raise ConfigurationError(
            f"target_count={target} is below the minority size ({n_min})."
        )

    sampler = SMOTE(
        sampling_strategy={minority: target},
        k_neighbors=NearestNeighbors(n_neighbors=k + 1, metric=metric),
        random_state=int(seed),
    )
    X_res, y_res = sampler.fit_resample(arr.copy(), labels)
    logger.info(
        "Oversampled class %s: %d -> %d (k_neighbors=%d)", minority, n_min, target, k
    )
    return OversampleResult(
        X=np.asarray(X_res, dtype=float),
        y=np.asarray(y_res),
        n_original=int(arr.shape[0]),
        minority_label=minority,
    )
