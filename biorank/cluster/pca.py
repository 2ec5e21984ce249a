"""Principal component analysis on standardized expression."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from biorank.core.types import PrincipalComponents, RankedGeneList
from biorank.core.utils import finite_2d
from biorank.errors import ConfigurationError, DataError, NumericError

logger = logging.getLogger(__name__)


def standardize(X: pd.DataFrame) -> pd.DataFrame:
    """Center each feature (column) and scale it to unit variance (ddof=1).

    Raises:
        ConfigurationError: Naming any zero-variance feature.
    """
    arr = finite_2d("X", X.to_numpy(dtype=float))
    if arr.shape[0] < 2:
        raise DataError("Standardization needs at least two samples.")
    sd = arr.std(axis=0, ddof=1)
    flat = [str(c) for c, s in zip(X.columns, sd) if not s > 0]
    if flat:
        raise ConfigurationError("Zero-variance features cannot be scaled.", flat)
    scaled = (arr - arr.mean(axis=0)) / sd
    return pd.DataFrame(scaled, index=X.index, columns=X.columns)


def _fix_signs(vectors: np.ndarray) -> np.ndarray:
    idx = np.argmax(np.abs(vectors), axis=0)
    signs = np.sign(vectors[idx, np.arange(vectors.shape[1])])
    signs[signs == 0] = 1.0
    return vectors * signs


def fit_pca(X: pd.DataFrame, n_components: int | None = None) -> PrincipalComponents:
    """PCA of a samples x features matrix that is already standardized.

    Uses an eigendecomposition of the covariance matrix when there are no more
    features than samples, otherwise the SVD of the centered matrix. Each
    loading vector is signed so its largest-magnitude entry is positive.
    """
    arr = finite_2d("X", X.to_numpy(dtype=float))
    n, p = arr.shape
    if n < 2:
        raise DataError("PCA needs at least two samples.")
    centered = arr - arr.mean(axis=0)
    total_var = float(np.sum(centered.var(axis=0, ddof=1)))

    max_comp = min(n - 1, p)
    n_comp = max_comp if n_components is None else int(n_components)
    if n_comp < 1 or n_comp > max_comp:
        raise ConfigurationError(f"n_components must lie in [1, {max_comp}], got {n_comp}.")

    if p <= n:
        cov = centered.T @ centered / float(n - 1)
        evals, evecs = np.linalg.eigh(cov)
        order = np.argsort(evals)[::-1]
        evals = evals[order]
        evecs = evecs[:, order]
    else:
        _, s, vt = np.linalg.svd(centered, full_matrices=False)
        evals = s**2 / float(n - 1)
        evecs = vt.T
    if not np.isfinite(evals).all():
        raise NumericError("PCA eigenvalues are not finite.")

    evals = np.clip(evals[:n_comp], 0.0, None)
    loadings = _fix_signs(evecs[:, :n_comp])
    scores = centered @ loadings
    names = [f"PC{i + 1}" for i in range(n_comp)]
    logger.info(
        "PCA: n=%d p=%d components=%d PC1 explained=%.3f",
        n,
        p,
        n_comp,
        evals[0] / total_var if total_var > 0 else 0.0,
    )
    return PrincipalComponents(
        eigenvalues=evals,
        loadings=pd.DataFrame(loadings, index=X.columns, columns=names),
        scores=pd.DataFrame(scores, index=X.index, columns=names),
        total_variance=total_var,
    )


def top_loading_genes(
    pcs: PrincipalComponents, component: int = 1, top_n: int = 200
) -> RankedGeneList:
    """Genes ranked by absolute loading on one component (1-based)."""
    n_comp = pcs.loadings.shape[1]
    if int(component) < 1 or int(component) > n_comp:
        raise ConfigurationError(f"component must lie in [1, {n_comp}].")
    col = pcs.loadings.iloc[:, int(component) - 1].abs()
    return RankedGeneList.from_scores(col).head(int(top_n))
