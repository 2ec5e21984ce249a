from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from biorank.core.types import CountMatrix, SampleMetadata

DE_GENES = [f"g{i:02d}" for i in range(1, 6)]


def make_two_group_counts() -> tuple[CountMatrix, SampleMetadata]:
    """20 genes x 6 samples, 3 vs 3; g01-g05 shifted 4x upward in group B.

    Every gene carries the same +-3% noise pattern, rotated across samples so
    both groups see each noise level once.
    """
    pattern = np.array([1.00, 1.03, 0.97])
    genes = [f"g{i:02d}" for i in range(1, 21)]
    samples = ["A1", "A2", "A3", "B1", "B2", "B3"]
    rows = []
    for i, gene in enumerate(genes):
        base = 100.0 + 25.0 * i
        a = base * np.roll(pattern, i)
        b = base * np.roll(pattern, i + 1)
        if gene in DE_GENES:
            b = 4.0 * b
        rows.append(np.round(np.concatenate([a, b])).astype(int))
    counts = pd.DataFrame(rows, index=genes, columns=samples)
    meta = pd.DataFrame({"group": ["A", "A", "A", "B", "B", "B"]}, index=samples)
    return CountMatrix(counts=counts), SampleMetadata(table=meta)


@pytest.fixture
def two_group_data() -> tuple[CountMatrix, SampleMetadata]:
    return make_two_group_counts()


@pytest.fixture
def de_genes() -> list[str]:
    return list(DE_GENES)
