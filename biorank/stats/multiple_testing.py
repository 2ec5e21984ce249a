"""Multiple-testing correction."""

from __future__ import annotations

import numpy as np


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values.

    NaN entries are passed through unchanged and do not count towards the
    number of hypotheses. The output has the input's shape.
    """
    arr = np.asarray(pvals, dtype=float)
    flat = arr.ravel()
    q = np.full_like(flat, np.nan)
    finite = np.isfinite(flat)
    if np.any(np.isinf(flat)):
        raise ValueError("p-values must be in [0,1] or NaN.")
    if np.any((flat[finite] < 0.0) | (flat[finite] > 1.0)):
        raise ValueError("p-values must be in [0,1] or NaN.")
    if np.any(finite):
        p = flat[finite]
        m = int(p.size)
        order = np.argsort(p, kind="mergesort")
        ranked = p[order]
        ranks = np.arange(1, m + 1, dtype=float)
        adj = ranked * (float(m) / ranks)
        adj = np.minimum.accumulate(adj[::-1])[::-1]
        adj = np.clip(adj, ranked, 1.0)
        q_valid = np.empty_like(adj)
        q_valid[order] = adj
        q[finite] = q_valid
    return q.reshape(arr.shape)
