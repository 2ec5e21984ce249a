from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from biorank.cluster.pca import fit_pca, standardize, top_loading_genes
from biorank.errors import ConfigurationError


def _frame(n: int, p: int, seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    return pd.DataFrame(
        rng.normal(size=(n, p)),
        index=[f"s{i}" for i in range(n)],
        columns=[f"g{j}" for j in range(p)],
    )


@pytest.mark.parametrize("shape", [(10, 4), (5, 12)])
def test_variance_is_fully_accounted_for(shape):
    X = standardize(_frame(*shape))
    pcs = fit_pca(X)
    n = shape[0]
    assert np.all(np.diff(pcs.eigenvalues) <= 1e-10)
    assert np.isclose(pcs.eigenvalues.sum(), pcs.total_variance)
    assert np.isclose(pcs.total_variance, shape[1])
    score_var = (pcs.scores.to_numpy() ** 2).sum() / (n - 1)
    assert np.isclose(score_var, pcs.total_variance)
    assert np.isclose(pcs.explained_variance_ratio.sum(), 1.0)


def test_loadings_are_orthonormal_and_sign_fixed():
    pcs = fit_pca(standardize(_frame(20, 5, seed=3)))
    L = pcs.loadings.to_numpy()
    assert np.allclose(L.T @ L, np.eye(L.shape[1]), atol=1e-10)
    for j in range(L.shape[1]):
        assert L[np.argmax(np.abs(L[:, j])), j] > 0


def test_standardize_names_zero_variance_feature():
    X = _frame(6, 3)
    X["g1"] = 2.0
    with pytest.raises(ConfigurationError) as exc:
        standardize(X)
    assert exc.value.identifiers == ("g1",)


def test_top_loading_genes_picks_dominant_feature():
    rng = np.random.default_rng(4)
    signal = rng.normal(size=30)
    X = pd.DataFrame(
        {
            "driver": 10.0 * signal,
            "follower": 10.0 * signal + rng.normal(scale=0.1, size=30),
            "noise": rng.normal(size=30),
        }
    )
    pcs = fit_pca(X - X.mean())
    ranked = top_loading_genes(pcs, component=1, top_n=2)
    assert set(ranked.genes) == {"driver", "follower"}
    with pytest.raises(ConfigurationError):
        top_loading_genes(pcs, component=4)


def test_n_components_bounds():
    X = standardize(_frame(4, 6))
    assert fit_pca(X, n_components=2).loadings.shape == (6, 2)
    with pytest.raises(ConfigurationError):
        fit_pca(X, n_components=4)
