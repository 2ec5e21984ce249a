from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from biorank.core.types import CountMatrix, RankedGeneList, SampleMetadata
from biorank.errors import BiorankError, DataError


def _counts(values, genes=("g1", "g2"), samples=("s1", "s2", "s3")) -> pd.DataFrame:
    return pd.DataFrame(values, index=list(genes), columns=list(samples))


def test_count_matrix_rejects_duplicate_gene_ids():
    df = _counts([[1, 2, 3], [4, 5, 6]], genes=("g1", "g1"))
    with pytest.raises(DataError, match="Duplicate gene IDs") as exc:
        CountMatrix(counts=df)
    assert exc.value.identifiers == ("g1",)


def test_count_matrix_rejects_negative_and_fractional_counts():
    with pytest.raises(DataError, match="negative"):
        CountMatrix(counts=_counts([[1, -2, 3], [4, 5, 6]]))
    with pytest.raises(DataError, match="non-integer"):
        CountMatrix(counts=_counts([[1.5, 2, 3], [4, 5, 6]]))


def test_count_matrix_values_is_a_copy():
    cm = CountMatrix(counts=_counts([[1, 2, 3], [4, 5, 6]]))
    vals = cm.values()
    vals[0, 0] = 99
    assert cm.counts.iloc[0, 0] == 1
    assert cm.shape == (2, 3)
    assert cm.sample_ids == ["s1", "s2", "s3"]


def test_sample_metadata_alignment_names_offending_samples():
    meta = SampleMetadata(table=pd.DataFrame({"group": ["a", "b"]}, index=["s1", "s2"]))
    with pytest.raises(DataError) as exc:
        meta.check_alignment(["s1", "s2", "s3"])
    assert exc.value.identifiers == ("s3",)
    with pytest.raises(DataError, match="metadata but not in counts"):
        meta.check_alignment(["s1"])


def test_sample_metadata_requires_group_column():
    with pytest.raises(DataError, match="group column"):
        SampleMetadata(table=pd.DataFrame({"condition": ["a"]}, index=["s1"]))


def test_ranked_gene_list_orders_ties_by_gene_id():
    ranked = RankedGeneList.from_scores(pd.Series({"b": 1.0, "a": 1.0, "c": 2.0, "d": np.nan}))
    assert ranked.genes == ("c", "a", "b")
    assert np.allclose(ranked.scores, [2.0, 1.0, 1.0])
    assert len(ranked.head(2)) == 2


def test_ranked_gene_list_rejects_ascending_scores_and_duplicates():
    with pytest.raises(DataError, match="descending"):
        RankedGeneList(genes=("a", "b"), scores=np.array([1.0, 2.0]))
    with pytest.raises(DataError, match="duplicate"):
        RankedGeneList(genes=("a", "a"), scores=np.array([2.0, 1.0]))


def test_ranked_gene_list_keeps_supplied_order_for_equal_scores():
    ranked = RankedGeneList(genes=("z", "m", "a"), scores=np.array([0.5, 0.0, 0.0]))
    assert ranked.genes == ("z", "m", "a")
    with pytest.raises(DataError, match="descending"):
        RankedGeneList(genes=("z", "m", "a"), scores=np.array([0.0, 0.0, 0.5]))


def test_error_identifier_list_is_truncated():
    err = BiorankError("bad", [f"g{i}" for i in range(15)])
    assert len(err.identifiers) == 15
    assert str(err).endswith("g9...]")
    assert isinstance(err, ValueError)
