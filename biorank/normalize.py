"""Median-of-ratios count normalization."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from biorank.config import FilterConfig
from biorank.core.types import CountMatrix, NormalizationResult, SampleMetadata
from biorank.errors import ConfigurationError, DataError, NumericError

logger = logging.getLogger(__name__)


def filter_by_expression(
    counts: CountMatrix,
    min_count: int = 1,
    min_fraction: float = 0.3,
) -> tuple[pd.DataFrame, dict[str, int]]:
    """Keep genes with ``count >= min_count`` in at least ``min_fraction`` of samples.

    Returns:
        Tuple of (filtered counts, filter summary counts).

    Raises:
        ConfigurationError: If the parameters are invalid or no gene survives.
    """
    if not 0.0 <= float(min_fraction) <= 1.0:
        raise ConfigurationError("min_fraction must lie in [0, 1].")
    if int(min_count) < 0:
        raise ConfigurationError("min_count must be non-negative.")

    values = counts.counts.to_numpy(dtype=float)
    n_samples = values.shape[1]
    detect_frac = np.sum(values >= float(min_count), axis=1) / float(n_samples)
    keep = detect_frac >= float(min_fraction)

    summary = {
        "total": int(values.shape[0]),
        "filtered_low_expression": int(np.sum(~keep)),
        "kept": int(np.sum(keep)),
    }
    if not np.any(keep):
        raise ConfigurationError(
            f"Expression filter (min_count={min_count}, min_fraction={min_fraction}) "
            "removed all genes."
        )
    return counts.counts.loc[keep].copy(), summary


def estimate_size_factors(counts: pd.DataFrame) -> pd.Series:
    """Median-of-ratios size factors, rescaled to geometric mean 1.

    Genes with a zero count in any sample have a zero geometric mean and are
    left out of the ratio medians.

    Raises:
        DataError: If a sample has zero total count.
        NumericError: If no gene has a non-zero geometric mean.
    """
    values = counts.to_numpy(dtype=float)
    totals = values.sum(axis=0)
    zero_samples = [str(s) for s, t in zip(counts.columns, totals) if t <= 0]
    if zero_samples:
        raise DataError("Samples with zero total count.", zero_samples)

    usable = np.all(values > 0, axis=1)
    if not np.any(usable):
        raise NumericError(
            "No gene has a non-zero geometric mean across samples; "
            "size factors are undefined."
        )
    geo = np.exp(np.log(values[usable]).mean(axis=1, keepdims=True))
    raw_sf = np.median(values[usable] / geo, axis=0)
    sf = raw_sf / np.exp(np.mean(np.log(raw_sf)))
    if not np.all(np.isfinite(sf)) or np.any(sf <= 0):
        raise NumericError("Size factor estimation produced non-positive values.")
    return pd.Series(sf, index=counts.columns, name="size_factor")


def normalize_counts(
    counts: CountMatrix,
    metadata: SampleMetadata | None = None,
    config: FilterConfig | None = None,
) -> NormalizationResult:
    """Filter (optionally), estimate size factors and scale counts.

    ``normalized * size_factor`` reproduces the (filtered) raw counts.
    """
    cfg = config or FilterConfig()
    if metadata is not None:
        metadata.check_alignment(counts.sample_ids)

    if cfg.enabled:
        raw, summary = filter_by_expression(
            counts, min_count=cfg.min_count, min_fraction=cfg.min_fraction
        )
    else:
        raw = counts.counts.copy()
        summary = {"total": int(raw.shape[0]), "filtered_low_expression": 0, "kept": int(raw.shape[0])}

    logger.info(
        "Expression filter: total=%d kept=%d", summary["total"], summary["kept"]
    )
    sf = estimate_size_factors(raw)
    normalized = raw.astype(float).div(sf, axis=1)
    return NormalizationResult(size_factors=sf, normalized=normalized, filter_counts=summary)
