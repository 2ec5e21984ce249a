"""biorank public API."""

from biorank._version import __version__
from biorank.aggregate import aggregate_rankings
from biorank.config import PipelineConfig, load_json_config
from biorank.core.types import CountMatrix, RankedGeneList, SampleMetadata
from biorank.differential import run_differential, significant_genes
from biorank.errors import ConfigurationError, DataError, NumericError
from biorank.normalize import normalize_counts
from biorank.stats.multiple_testing import bh_fdr


def run_pipeline(*args, **kwargs):
    """Lazy wrapper to avoid importing every stage at import time."""
    from biorank.pipeline.driver import run_pipeline as _run_pipeline

    return _run_pipeline(*args, **kwargs)


__all__ = [
    "__version__",
    "CountMatrix",
    "SampleMetadata",
    "RankedGeneList",
    "PipelineConfig",
    "ConfigurationError",
    "DataError",
    "NumericError",
    "load_json_config",
    "normalize_counts",
    "run_differential",
    "significant_genes",
    "bh_fdr",
    "aggregate_rankings",
    "run_pipeline",
]
