"""Core records and helpers."""

from biorank.core.types import (
    ClusterAssignment,
    CountMatrix,
    Dendrogram,
    DifferentialResult,
    EnrichmentResult,
    KMeansResult,
    NormalizationResult,
    OversampleResult,
    PrincipalComponents,
    RankedGeneList,
    SampleMetadata,
)
from biorank.core.utils import derive_seed

__all__ = [
    "CountMatrix",
    "SampleMetadata",
    "NormalizationResult",
    "DifferentialResult",
    "Dendrogram",
    "ClusterAssignment",
    "PrincipalComponents",
    "KMeansResult",
    "OversampleResult",
    "RankedGeneList",
    "EnrichmentResult",
    "derive_seed",
]
