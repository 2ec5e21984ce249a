"""Deterministic parallel helpers for per-gene and per-tree workloads."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import is_dataclass
from typing import Any, TypeVar

from joblib import Parallel, delayed

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def _item_seed(item: Any) -> int | None:
    if isinstance(item, dict):
        seed = item.get("seed")
        return int(seed) if seed is not None else None
    if is_dataclass(item) and hasattr(item, "seed"):
        seed = getattr(item, "seed")
        return int(seed) if seed is not None else None
    if hasattr(item, "seed"):
        seed = getattr(item, "seed")
        return int(seed) if seed is not None else None
    return None


def _validate_items_have_seed(items: list[Any]) -> None:
    missing = [idx for idx, item in enumerate(items) if _item_seed(item) is None]
    if missing:
        head = ",".join(str(i) for i in missing[:5])
        raise ValueError(
            "parallel_map requires every randomized item to carry a deterministic `seed` "
            f"(missing at indices: {head}{'...' if len(missing) > 5 else ''})."
        )


def _call_indexed(func: Callable[[T], R], indexed: tuple[int, T]) -> tuple[int, R]:
    idx, item = indexed
    return idx, func(item)


def parallel_map(
    func: Callable[[T], R],
    items: Iterable[T],
    *,
    n_jobs: int = 1,
    backend: str = "loky",
    batch_size: int | str = "auto",
    require_seed: bool = False,
) -> list[R]:
    """Apply `func` to items with deterministic, order-stable aggregation.

    Notes:
    - With ``require_seed=True`` every item must carry its own ``seed``, so
      results never depend on which worker ran which item.
    - Output order is always aligned to input order, independent of scheduling.
    """
    seq = list(items)
    if not seq:
        return []
    if require_seed:
        _validate_items_have_seed(seq)

    jobs = int(n_jobs)
    if jobs == 1 or len(seq) == 1:
        return [func(item) for item in seq]

    if backend not in {"loky", "multiprocessing", "threading"}:
        raise ValueError(f"Unsupported parallel backend '{backend}'.")

    logger.debug(
        "parallel_map n_items=%d n_jobs=%d backend=%s", len(seq), jobs, backend
    )
    rows = Parallel(n_jobs=jobs, backend=backend, batch_size=batch_size)(
        delayed(_call_indexed)(func, pair) for pair in enumerate(seq)
    )
    rows.sort(key=lambda x: x[0])
    return [row for _, row in rows]


def chunked(seq: list[T], n_chunks: int) -> list[list[T]]:
    """Split ``seq`` into at most ``n_chunks`` contiguous, non-empty chunks."""
    n = len(seq)
    if n == 0:
        return []
    k = max(1, min(int(n_chunks), n))
    bounds = [round(i * n / k) for i in range(k + 1)]
    return [seq[bounds[i] : bounds[i + 1]] for i in range(k) if bounds[i + 1] > bounds[i]]
