"""Random-forest ensemble with impurity-based feature ranking.

Importance variant: mean decrease in Gini impurity as reported by
``RandomForestClassifier.feature_importances_``. Each tree's impurity
decreases are normalized to sum to one, averaged over the trees that split,
and the average is renormalized to sum to one (all zeros if no tree ever
split).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier

from biorank.core.types import RankedGeneList
from biorank.core.utils import finite_2d
from biorank.errors import ConfigurationError, DataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnsembleResult:
    """Fitted ensemble; ``oob_error_curve[t]`` is the OOB error after ``t + 1`` trees."""

    importances: pd.Series
    oob_error_curve: np.ndarray
    classes: np.ndarray
    model: RandomForestClassifier = field(repr=False)
    seed: int = 0

    @property
    def oob_error(self) -> float:
        return float(self.oob_error_curve[-1]) if self.oob_error_curve.size else float("nan")

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Majority vote over trees; a tied vote goes to the first class."""
        arr = finite_2d("X", X)
        votes = np.zeros((arr.shape[0], self.classes.size), dtype=int)
        rows = np.arange(arr.shape[0])
        for tree in self.model.estimators_:
            votes[rows, tree.predict(arr).astype(int)] += 1
        return self.classes[np.argmax(votes, axis=1)]

    def ranked(self) -> RankedGeneList:
        return rank_features(self)


def oob_error_curve(
    model: RandomForestClassifier, X: np.ndarray, encoded: np.ndarray
) -> np.ndarray:
    """Out-of-bag majority-vote error after each tree is added.

    Entries stay NaN until at least one item has received an OOB vote.
    """
    n = X.shape[0]
    n_classes = int(model.n_classes_)
    votes = np.zeros((n, n_classes), dtype=int)
    curve = np.full(len(model.estimators_), np.nan)
    for t, (tree, drawn) in enumerate(zip(model.estimators_, model.estimators_samples_)):
        in_bag = np.zeros(n, dtype=bool)
        in_bag[drawn] = True
        oob = np.flatnonzero(~in_bag)
        if oob.size:
            pred = tree.predict(X[oob]).astype(int)
            votes[oob, pred] += 1
        voted = votes.sum(axis=1) > 0
        if np.any(voted):
            wrong = np.argmax(votes[voted], axis=1) != encoded[voted]
            curve[t] = float(np.mean(wrong))
    n_never = int(np.sum(votes.sum(axis=1) == 0))
    if n_never:
        logger.warning("%d items were never out-of-bag; excluded from OOB error.", n_never)
    return curve


def fit_ensemble(
    X: np.ndarray,
    y: np.ndarray,
    feature_names: Sequence[str] | None = None,
    n_trees: int = 500,
    max_samples: int | None = None,
    max_features: str | int | float | None = "sqrt",
    min_samples_leaf: int = 1,
    seed: int = 0,
    n_jobs: int = 1,
) -> EnsembleResult:
    """Fit a bootstrap random forest of ``n_trees`` Gini trees.

    ``seed`` fixes every bootstrap draw and split feature subset, so results
    do not depend on ``n_jobs``. Items left out of a tree's bootstrap vote on
    that tree's out-of-bag predictions.
    """
    arr = finite_2d("X", X)
    labels = np.asarray(y).ravel()
    if labels.size != arr.shape[0]:
        raise DataError("X and y differ in length.")
    classes, encoded = np.unique(labels, return_inverse=True)
    if classes.size != 2:
        raise ConfigurationError(
            f"Ensemble ranking needs binary labels, found {classes.size} classes."
        )
    if int(n_trees) < 1:
        raise ConfigurationError("n_trees must be >= 1.")
    n, p = arr.shape
    names = [str(c) for c in (feature_names if feature_names is not None else range(p))]
    if len(names) != p:
        raise DataError("feature_names length must match the number of features.")
    if max_samples is not None and not 1 <= int(max_samples) <= n:
        raise ConfigurationError(f"max_samples must be in [1, {n}], got {max_samples}.")

    model = RandomForestClassifier(
        n_estimators=int(n_trees),
        criterion="gini",
        max_features=max_features,
        min_samples_leaf=int(min_samples_leaf),
        bootstrap=True,
        max_samples=None if max_samples is None else int(max_samples),
        random_state=int(seed),
        n_jobs=n_jobs,
    )
    model.fit(arr, encoded)

    curve = oob_error_curve(model, arr, encoded)
    importances = pd.Series(
        np.asarray(model.feature_importances_, dtype=float), index=names, name="importance"
    )
    final_oob = curve[-1]
    logger.info(
        "Ensemble: trees=%d features=%d oob_error=%s",
        len(model.estimators_),
        p,
        "nan" if math.isnan(final_oob) else f"{final_oob:.3f}",
    )
    return EnsembleResult(
        importances=importances,
        oob_error_curve=curve,
        classes=classes,
        model=model,
        seed=int(seed),
    )


def rank_features(result: EnsembleResult) -> RankedGeneList:
    """Features by importance, highest first; equal importances keep feature order."""
    imp = result.importances
    order = np.argsort(-imp.to_numpy(dtype=float), kind="mergesort")
    return RankedGeneList(
        genes=tuple(str(imp.index[i]) for i in order),
        scores=imp.to_numpy(dtype=float)[order],
    )
