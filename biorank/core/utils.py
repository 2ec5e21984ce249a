"""Small pure helpers for core computations."""

from __future__ import annotations

import hashlib

import numpy as np

from biorank.errors import DataError, NumericError


def finite_1d(name: str, values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size == 0:
        raise DataError(f"{name} must be non-empty.")
    if not np.isfinite(arr).all():
        raise NumericError(f"{name} must be finite.")
    return arr


def finite_2d(name: str, values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 2:
        raise DataError(f"{name} must be 2D, got shape {arr.shape}.")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise DataError(f"{name} must be non-empty, got shape {arr.shape}.")
    if not np.isfinite(arr).all():
        raise NumericError(f"{name} contains NaN/inf.")
    return arr


def derive_seed(root_seed: int, *keys: object) -> int:
    """Derive a per-unit seed from a root seed and unit keys.

    The result depends only on ``root_seed`` and ``keys``, never on execution
    order, and fits in 32 bits so it is accepted by both NumPy generators and
    scikit-learn ``random_state``.
    """
    payload = ":".join([str(int(root_seed))] + [str(k) for k in keys]).encode("utf-8")
    digest = hashlib.blake2b(payload, digest_size=4).digest()
    return int.from_bytes(digest, "little")


def unit_rng(root_seed: int, *keys: object) -> np.random.Generator:
    return np.random.default_rng(derive_seed(root_seed, *keys))


def duplicated_labels(labels) -> list[str]:
    seen: set[str] = set()
    dups: list[str] = []
    for lab in labels:
        key = str(lab)
        if key in seen and key not in dups:
            dups.append(key)
        seen.add(key)
    return dups
