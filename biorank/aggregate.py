"""Curation join of top-N gene lists from several ranking sources.

Sources are truncated and unioned with provenance; scores are not compared or
re-weighted across sources.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import pandas as pd

from biorank.core.types import ClusterAssignment, RankedGeneList
from biorank.errors import ConfigurationError


@dataclass(frozen=True)
class AggregatedCandidates:
    """``table``: one column per source, padded with the missing sentinel.

    ``provenance``: one row per gene (first-seen order) with the sources that
    listed it and their count.
    """

    table: pd.DataFrame
    provenance: pd.DataFrame
    missing: str


def _as_gene_list(source: RankedGeneList | Sequence[str]) -> list[str]:
    if isinstance(source, RankedGeneList):
        return list(source.genes)
    return [str(g) for g in source]


def cluster_members(
    assignment: ClusterAssignment,
    label: int,
    order_by: pd.Series | None = None,
) -> list[str]:
    """Members of one cluster, optionally ordered by a descending score."""
    members = assignment.members(label)
    if order_by is None:
        return members
    scores = order_by.reindex(members).fillna(float("-inf"))
    frame = pd.DataFrame({"gene": members, "score": scores.to_numpy(dtype=float)})
    frame = frame.sort_values(["score", "gene"], ascending=[False, True])
    return list(frame["gene"])


def aggregate_rankings(
    sources: Mapping[str, RankedGeneList | Sequence[str]],
    top_n: int = 200,
    missing: str = "NA",
) -> AggregatedCandidates:
    if not sources:
        raise ConfigurationError("aggregate_rankings needs at least one source.")
    if int(top_n) < 1:
        raise ConfigurationError("top_n must be >= 1.")

    truncated = {str(name): _as_gene_list(src)[: int(top_n)] for name, src in sources.items()}
    depth = max((len(genes) for genes in truncated.values()), default=0)
    table = pd.DataFrame(
        {
            name: genes + [missing] * (depth - len(genes))
            for name, genes in truncated.items()
        },
        index=pd.RangeIndex(1, depth + 1, name="rank"),
    )

    seen: dict[str, list[str]] = {}
    for name, genes in truncated.items():
        for g in genes:
            seen.setdefault(g, []).append(name)
    provenance = pd.DataFrame(
        {
            "gene": list(seen),
            "sources": [";".join(srcs) for srcs in seen.values()],
            "n_sources": [len(srcs) for srcs in seen.values()],
        }
    )
    return AggregatedCandidates(table=table, provenance=provenance, missing=missing)
