"""Statistical utilities for biorank."""

from biorank.stats.enrichment import gsea_prerank, ranked_list_from_results
from biorank.stats.multiple_testing import bh_fdr

__all__ = ["bh_fdr", "gsea_prerank", "ranked_list_from_results"]
