"""Oversampling and ensemble feature ranking."""

from biorank.supervised.forest import EnsembleResult, fit_ensemble, rank_features
from biorank.supervised.oversample import smote

__all__ = ["smote", "fit_ensemble", "rank_features", "EnsembleResult"]
