from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from biorank.config import FilterConfig
from biorank.core.types import CountMatrix, SampleMetadata
from biorank.errors import ConfigurationError, DataError, NumericError
from biorank.normalize import estimate_size_factors, filter_by_expression, normalize_counts


def test_size_factors_have_unit_geometric_mean(two_group_data):
    counts, meta = two_group_data
    res = normalize_counts(counts, meta)
    sf = res.size_factors.to_numpy()
    assert np.all(sf > 0)
    assert np.isclose(np.exp(np.mean(np.log(sf))), 1.0)


def test_normalized_times_size_factor_reproduces_counts(two_group_data):
    counts, meta = two_group_data
    res = normalize_counts(counts, meta)
    back = res.normalized.mul(res.size_factors, axis=1)
    assert np.allclose(back.to_numpy(), counts.counts.loc[res.normalized.index].to_numpy())


def test_within_sample_gene_order_is_preserved(two_group_data):
    counts, meta = two_group_data
    res = normalize_counts(counts, meta)
    for sample in counts.sample_ids:
        raw_order = np.argsort(counts.counts[sample].to_numpy(), kind="mergesort")
        norm_order = np.argsort(res.normalized[sample].to_numpy(), kind="mergesort")
        assert np.array_equal(raw_order, norm_order)


def test_scaled_library_recovers_scale_ratio():
    base = pd.DataFrame(
        {"s1": [10, 20, 30, 40], "s2": [20, 40, 60, 80]}, index=["a", "b", "c", "d"]
    )
    sf = estimate_size_factors(base)
    assert np.isclose(sf["s2"] / sf["s1"], 2.0)


def test_zero_total_sample_is_rejected():
    df = pd.DataFrame({"s1": [1, 2], "s2": [0, 0]}, index=["a", "b"])
    with pytest.raises(DataError) as exc:
        estimate_size_factors(df)
    assert exc.value.identifiers == ("s2",)


def test_no_gene_with_positive_geometric_mean():
    df = pd.DataFrame({"s1": [1, 0], "s2": [0, 3]}, index=["a", "b"])
    with pytest.raises(NumericError):
        estimate_size_factors(df)


def test_filter_reports_counts_and_rejects_empty_result():
    cm = CountMatrix(
        counts=pd.DataFrame(
            {"s1": [0, 5, 7], "s2": [0, 6, 0], "s3": [1, 4, 0]}, index=["low", "ok", "sparse"]
        )
    )
    kept, summary = filter_by_expression(cm, min_count=1, min_fraction=0.5)
    assert list(kept.index) == ["ok"]
    assert summary == {"total": 3, "filtered_low_expression": 2, "kept": 1}
    with pytest.raises(ConfigurationError, match="removed all genes"):
        filter_by_expression(cm, min_count=100, min_fraction=0.5)


def test_disabled_filter_keeps_every_gene(two_group_data):
    counts, meta = two_group_data
    res = normalize_counts(counts, meta, FilterConfig(enabled=False))
    assert res.filter_counts["kept"] == counts.shape[0]


def test_metadata_mismatch_is_a_data_error(two_group_data):
    counts, _ = two_group_data
    meta = SampleMetadata(
        table=pd.DataFrame({"group": ["A", "B"]}, index=["A1", "B1"])
    )
    with pytest.raises(DataError, match="not in metadata"):
        normalize_counts(counts, meta)
