"""Unsupervised structure discovery."""

from biorank.cluster.hierarchical import agglomerative, cut_tree, pairwise_distances
from biorank.cluster.kmeans import elbow_curve, kmeans
from biorank.cluster.pca import fit_pca, standardize, top_loading_genes

__all__ = [
    "pairwise_distances",
    "agglomerative",
    "cut_tree",
    "standardize",
    "fit_pca",
    "top_loading_genes",
    "kmeans",
    "elbow_curve",
]
