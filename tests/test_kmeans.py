from __future__ import annotations

import numpy as np
import pytest

from biorank.cluster.kmeans import elbow_curve, kmeans
from biorank.errors import ConfigurationError


def _blobs(seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    centers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    return np.vstack([c + rng.normal(scale=0.3, size=(15, 2)) for c in centers])


def test_three_blobs_are_recovered():
    X = _blobs()
    res = kmeans(X, 3, n_restarts=10, seed=1)
    labels = res.labels.to_numpy()
    for block in range(3):
        assert np.unique(labels[block * 15 : (block + 1) * 15]).size == 1
    assert np.unique(labels).size == 3
    assert res.centers.shape == (3, 2)


def test_same_seed_same_result():
    X = _blobs(2)
    a = kmeans(X, 4, n_restarts=5, seed=7)
    b = kmeans(X, 4, n_restarts=5, seed=7)
    assert a.inertia == b.inertia
    assert a.restart == b.restart
    assert np.array_equal(a.labels.to_numpy(), b.labels.to_numpy())


def test_best_restart_is_no_worse_than_single_restart():
    X = _blobs(3)
    single = kmeans(X, 5, n_restarts=1, seed=4)
    many = kmeans(X, 5, n_restarts=10, seed=4)
    assert many.inertia <= single.inertia


def test_elbow_curve_is_non_increasing_on_separated_blobs():
    curve = elbow_curve(_blobs(), list(range(2, 7)), n_restarts=10, seed=0)
    assert curve["k"].tolist() == [2, 3, 4, 5, 6]
    assert np.all(np.diff(curve["inertia"].to_numpy()) <= 1e-9)


def test_invalid_k():
    X = _blobs()
    with pytest.raises(ConfigurationError):
        kmeans(X, 1)
    with pytest.raises(ConfigurationError):
        kmeans(X[:3], 4)


def test_elbow_curve_is_non_increasing_on_unstructured_data():
    X = np.random.default_rng(8).uniform(size=(40, 3))
    curve = elbow_curve(X, [6, 2, 4, 3, 5], n_restarts=1, seed=2)
    assert curve["k"].tolist() == [2, 3, 4, 5, 6]
    inertia = curve["inertia"].to_numpy()
    assert np.all(inertia[1:] <= inertia[:-1] * (1.0 + 1e-12))


def test_init_centers_shape_is_checked():
    X = _blobs()
    with pytest.raises(ConfigurationError, match="init_centers"):
        kmeans(X, 3, n_restarts=1, init_centers=np.zeros((2, 2)))
    warm = kmeans(X, 3, n_restarts=1, init_centers=np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]]))
    assert warm.inertia <= kmeans(X, 3, n_restarts=1).inertia + 1e-9


def test_single_restart_and_warm_start_selection():
    X = _blobs(4)
    single = kmeans(X, 3, n_restarts=1, seed=2)
    assert single.restart == 0
    assert np.isfinite(single.inertia)

    true_centers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    warm = kmeans(X, 3, n_restarts=1, seed=2, init_centers=true_centers)
    assert warm.restart in (0, 1)
    assert warm.inertia <= single.inertia
