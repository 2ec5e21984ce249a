"""Two-group negative-binomial differential testing with shrunk dispersions.

The model per gene is ``y_ij ~ NB(mu_ij, alpha_i)`` with
``log(mu_ij) = log(s_j) + b0 + b1 * [sample j in treatment group]``.
Dispersions are estimated per gene, shrunk towards a parametric
mean-dispersion trend, and the group coefficient is Wald-tested. Genes with
only zeros in one group get a likelihood-ratio test instead, with the
reported fold change held finite by a weak normal prior.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import optimize, special, stats

from biorank.config import DifferentialConfig
from biorank.core.types import DifferentialResult, NormalizationResult, SampleMetadata
from biorank.errors import ConfigurationError, DataError, NumericError
from biorank.parallel import chunked, parallel_map
from biorank.stats.multiple_testing import bh_fdr

logger = logging.getLogger(__name__)

LN2 = math.log(2.0)
RIDGE = 1e-6
LFC_PRIOR_SD = 10.0
MU_FLOOR = 1e-6
TEST_CODES = {"none": 0.0, "wald": 1.0, "lrt": 2.0}
_TEST_NAMES = {code: name for name, code in TEST_CODES.items()}


def build_design(
    groups: pd.Series, reference: str | None = None
) -> tuple[np.ndarray, str, str]:
    """Intercept + treatment-indicator design for exactly two groups.

    Raises:
        DataError: If there are not exactly two groups or a group has fewer
            than two replicates.
    """
    labels = groups.astype(str)
    levels = sorted(labels.unique())
    if len(levels) != 2:
        raise DataError(
            f"Differential testing needs exactly two groups, found {len(levels)}.", levels
        )
    ref = str(reference) if reference is not None else levels[0]
    if ref not in levels:
        raise ConfigurationError(f"Reference group '{ref}' not present.", levels)
    treat = levels[1] if ref == levels[0] else levels[0]
    counts = labels.value_counts()
    short = [lvl for lvl in levels if int(counts[lvl]) < 2]
    if short:
        raise DataError("Groups with fewer than two replicates.", short)
    indicator = (labels.to_numpy() == treat).astype(float)
    design = np.column_stack([np.ones(indicator.size), indicator])
    return design, ref, treat


def nb_loglik(y: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    r = 1.0 / float(alpha)
    return float(
        np.sum(
            special.gammaln(y + r)
            - special.gammaln(r)
            - special.gammaln(y + 1.0)
            + special.xlogy(y, mu / (mu + r))
            + r * np.log(r / (mu + r))
        )
    )


def _cox_reid(design: np.ndarray, mu: np.ndarray, alpha: float) -> float:
    w = mu / (1.0 + alpha * mu)
    info = design.T @ (w[:, None] * design)
    sign, logdet = np.linalg.slogdet(info)
    if sign <= 0:
        return -np.inf
    return -0.5 * float(logdet)


def _group_mean_mu(y: np.ndarray, sf: np.ndarray, design: np.ndarray) -> np.ndarray:
    norm = y / sf
    treat = design[:, 1] > 0.5
    means = np.where(treat, norm[treat].mean(), norm[~treat].mean())
    return np.maximum(sf * means, MU_FLOOR)


def moments_dispersion(
    y: np.ndarray, sf: np.ndarray, min_disp: float = 1e-8, max_disp: float = 10.0
) -> float:
    """Method-of-moments dispersion ``(var - mean * mean(1/s)) / mean^2`` on normalized counts."""
    norm = y / sf
    mean = float(norm.mean())
    if mean <= 0:
        return float("nan")
    var = float(norm.var(ddof=1))
    est = (var - mean * float(np.mean(1.0 / sf))) / mean**2
    return float(np.clip(est, min_disp, max_disp))


def estimate_gene_dispersion(
    y: np.ndarray,
    sf: np.ndarray,
    design: np.ndarray,
    min_disp: float = 1e-8,
    max_disp: float = 10.0,
) -> float:
    """Cox-Reid adjusted profile-likelihood dispersion for one gene.

    The bounded search result is compared against the moments estimate and
    the one with the higher adjusted likelihood is kept. All-zero genes have
    no dispersion estimate and return NaN.
    """
    if not np.any(y > 0):
        return float("nan")
    mu = _group_mean_mu(y, sf, design)

    def _neg(log_alpha: float) -> float:
        a = math.exp(log_alpha)
        return -(nb_loglik(y, mu, a) + _cox_reid(design, mu, a))

    res = optimize.minimize_scalar(
        _neg,
        bounds=(math.log(min_disp), math.log(max_disp)),
        method="bounded",
        options={"xatol": 1e-4},
    )
    if not np.isfinite(res.x):
        raise NumericError("Dispersion optimization returned a non-finite value.")
    best = float(res.x)
    start = math.log(moments_dispersion(y, sf, min_disp, max_disp))
    if _neg(start) < float(res.fun):
        best = start
    return float(np.clip(math.exp(best), min_disp, max_disp))


@dataclass(frozen=True)
class DispersionTrend:
    """``alpha(mu) = asympt_disp + extra_pois / mu`` or a constant fallback."""

    asympt_disp: float
    extra_pois: float
    kind: str = "parametric"

    def __call__(self, means: np.ndarray) -> np.ndarray:
        m = np.maximum(np.asarray(means, dtype=float), MU_FLOOR)
        return self.asympt_disp + self.extra_pois / m


def fit_dispersion_trend(
    base_means: np.ndarray,
    dispersions: np.ndarray,
    min_disp: float = 1e-8,
    max_iter: int = 10,
) -> DispersionTrend:
    """Gamma-family (identity link) fit of dispersion against 1/mean.

    Genes whose estimate sits within two decades of ``min_disp`` are left out.
    Falls back to the mean estimate when fewer than three genes remain or the
    fitted coefficients are not positive.
    """
    means = np.asarray(base_means, dtype=float)
    disp = np.asarray(dispersions, dtype=float)
    use = np.isfinite(disp) & np.isfinite(means) & (means > 0) & (disp >= 100.0 * min_disp)

    finite = disp[np.isfinite(disp)]
    fallback = DispersionTrend(
        asympt_disp=float(np.mean(finite)) if finite.size else float(min_disp),
        extra_pois=0.0,
        kind="mean",
    )
    if int(use.sum()) < 3:
        return fallback

    coefs = np.array([0.1, 1.0])
    for _ in range(int(max_iter)):
        x = np.column_stack([np.ones(int(use.sum())), 1.0 / means[use]])
        fitted = np.maximum(x @ coefs, min_disp)
        w = 1.0 / fitted**2
        xtw = x.T * w
        try:
            new = np.linalg.solve(xtw @ x, xtw @ disp[use])
        except np.linalg.LinAlgError:
            return fallback
        if np.any(new <= 0):
            return fallback
        change = float(np.sum(np.log(new / coefs) ** 2))
        coefs = new
        ratio = disp / np.maximum(coefs[0] + coefs[1] / np.maximum(means, MU_FLOOR), min_disp)
        use = use & (ratio > 1e-4) & (ratio < 15.0)
        if change < 1e-6 or int(use.sum()) < 3:
            break
    return DispersionTrend(asympt_disp=float(coefs[0]), extra_pois=float(coefs[1]))


def shrink_dispersions(
    raw: np.ndarray,
    fitted: np.ndarray,
    n_samples: int,
    n_coef: int = 2,
    min_disp: float = 1e-8,
    max_disp: float = 10.0,
) -> tuple[np.ndarray, float]:
    """Empirical-Bayes shrinkage of log-dispersions towards the trend.

    Returns:
        Tuple of (final dispersions, prior variance of log-dispersion).
    """
    raw = np.asarray(raw, dtype=float)
    fitted = np.maximum(np.asarray(fitted, dtype=float), min_disp)
    df = max(1, int(n_samples) - int(n_coef))
    sampling_var = float(special.polygamma(1, df / 2.0))

    usable = np.isfinite(raw) & (raw >= 100.0 * min_disp)
    if int(usable.sum()) >= 3:
        resid = np.log(raw[usable]) - np.log(fitted[usable])
        mad = float(np.median(np.abs(resid - np.median(resid))))
        var_resid = (1.4826 * mad) ** 2
    else:
        var_resid = 0.0
    prior_var = max(var_resid - sampling_var, 0.25)

    out = np.full(raw.shape, np.nan)
    ok = np.isfinite(raw)
    log_raw = np.log(np.maximum(raw[ok], min_disp))
    log_fit = np.log(fitted[ok])
    post = (log_raw / sampling_var + log_fit / prior_var) / (
        1.0 / sampling_var + 1.0 / prior_var
    )
    outlier = log_raw > log_fit + 2.0 * math.sqrt(prior_var)
    post = np.where(outlier, log_raw, post)
    out[ok] = np.clip(np.exp(post), min_disp, max_disp)
    return out, prior_var


def fit_nb_glm(
    y: np.ndarray,
    design: np.ndarray,
    offset: np.ndarray,
    alpha: float,
    max_iter: int = 100,
    tol: float = 1e-8,
    lfc_prior_sd: float | None = None,
) -> tuple[np.ndarray, np.ndarray, bool]:
    """IRLS fit of a negative-binomial GLM with log link and fixed dispersion.

    ``lfc_prior_sd`` puts a zero-centered normal prior (log2 scale) on the
    group coefficient, which keeps it finite when one group is all zero.

    Returns:
        Tuple of (coefficients, standard errors, converged) on the natural-log
        scale.
    """
    sf = np.exp(offset)
    norm = y / sf
    treat = design[:, 1] > 0.5
    b0 = math.log(norm[~treat].mean() + 0.1)
    b1 = math.log(norm[treat].mean() + 0.1) - b0
    beta = np.array([b0, b1])
    penalty = np.full(design.shape[1], RIDGE)
    if lfc_prior_sd is not None:
        penalty[1:] += 1.0 / (float(lfc_prior_sd) * LN2) ** 2
    ridge = np.diag(penalty)

    dev_old = np.inf
    converged = False
    for _ in range(int(max_iter)):
        eta = np.clip(design @ beta + offset, -30.0, 30.0)
        mu = np.exp(eta)
        w = mu / (1.0 + alpha * mu)
        z = eta - offset + (y - mu) / mu
        info = design.T @ (w[:, None] * design) + ridge
        try:
            beta = np.linalg.solve(info, design.T @ (w * z))
        except np.linalg.LinAlgError as exc:
            raise NumericError(f"Singular information matrix in GLM fit: {exc}") from exc
        mu_new = np.exp(np.clip(design @ beta + offset, -30.0, 30.0))
        dev = -2.0 * nb_loglik(y, mu_new, alpha)
        if not np.isfinite(dev):
            raise NumericError("GLM deviance became non-finite.")
        if abs(dev - dev_old) / (abs(dev) + 0.1) < tol:
            converged = True
            break
        dev_old = dev

    mu = np.exp(np.clip(design @ beta + offset, -30.0, 30.0))
    w = mu / (1.0 + alpha * mu)
    info = design.T @ (w[:, None] * design) + ridge
    try:
        cov = np.linalg.inv(info)
    except np.linalg.LinAlgError as exc:
        raise NumericError(f"Singular information matrix in GLM fit: {exc}") from exc
    se = np.sqrt(np.maximum(np.diag(cov), 0.0))
    return beta, se, converged


def _dispersion_chunk(payload: dict) -> np.ndarray:
    y = payload["counts"]
    return np.array(
        [
            estimate_gene_dispersion(
                y[i], payload["sf"], payload["design"], payload["min_disp"], payload["max_disp"]
            )
            for i in range(y.shape[0])
        ]
    )


def _intercept_loglik(y: np.ndarray, offset: np.ndarray, alpha: float) -> float:
    """Maximized NB log-likelihood of an intercept-only model; 0 for an all-zero group."""
    if not np.any(y > 0):
        return 0.0
    start = math.log(float(np.mean(y / np.exp(offset))))

    def _neg(b0: float) -> float:
        mu = np.exp(np.clip(b0 + offset, -30.0, 30.0))
        return -nb_loglik(y, mu, alpha)

    res = optimize.minimize_scalar(_neg, bracket=(start - 1.0, start + 1.0))
    return -float(res.fun)


def nb_lrt(
    y: np.ndarray, design: np.ndarray, offset: np.ndarray, alpha: float
) -> tuple[float, float]:
    """Likelihood-ratio test of the group coefficient at a fixed dispersion.

    The full model is fitted per group, so a group with only zeros contributes
    its limiting log-likelihood of 0 and the statistic stays finite.

    Returns:
        Tuple of (deviance difference, chi-square p-value on 1 df).
    """
    treat = design[:, 1] > 0.5
    full = _intercept_loglik(y[treat], offset[treat], alpha) + _intercept_loglik(
        y[~treat], offset[~treat], alpha
    )
    null = _intercept_loglik(y, offset, alpha)
    dev = max(0.0, 2.0 * (full - null))
    return dev, float(stats.chi2.sf(dev, 1))


def _glm_chunk(payload: dict) -> np.ndarray:
    """Per gene: [log2FoldChange, lfcSE, stat, pvalue, converged, test code]."""
    y = payload["counts"]
    disp = payload["dispersion"]
    design = payload["design"]
    offset = np.log(payload["sf"])
    treat = design[:, 1] > 0.5
    out = np.full((y.shape[0], 6), np.nan)
    out[:, 5] = TEST_CODES["none"]
    for i in range(y.shape[0]):
        norm = y[i] / payload["sf"]
        if np.allclose(norm, norm[0], rtol=0.0, atol=1e-12):
            out[i, 0] = 0.0 if norm[0] > 0 else np.nan
            out[i, 4] = 1.0
            continue
        alpha = float(disp[i])
        separated = not np.any(y[i, treat] > 0) or not np.any(y[i, ~treat] > 0)
        if separated:
            beta, se, conv = fit_nb_glm(
                y[i],
                design,
                offset,
                alpha,
                payload["max_iter"],
                payload["tol"],
                lfc_prior_sd=payload.get("lfc_prior_sd", LFC_PRIOR_SD),
            )
            dev, pval = nb_lrt(y[i], design, offset, alpha)
            stat = math.copysign(math.sqrt(dev), beta[1])
            out[i] = [beta[1] / LN2, se[1] / LN2, stat, pval, float(conv), TEST_CODES["lrt"]]
            continue
        beta, se, conv = fit_nb_glm(
            y[i], design, offset, alpha, payload["max_iter"], payload["tol"]
        )
        stat = beta[1] / se[1] if se[1] > 0 else np.nan
        pval = 2.0 * stats.norm.sf(abs(stat)) if np.isfinite(stat) else np.nan
        out[i] = [beta[1] / LN2, se[1] / LN2, stat, pval, float(conv), TEST_CODES["wald"]]
    return out


def welch_ttest(normalized: pd.DataFrame, treat_mask: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Two-sample Welch t-test per gene; NaN unless both groups have >= 2 distinct values."""
    values = normalized.to_numpy(dtype=float)
    mask = np.asarray(treat_mask, dtype=bool)
    stat = np.full(values.shape[0], np.nan)
    pval = np.full(values.shape[0], np.nan)
    for i in range(values.shape[0]):
        a = values[i, ~mask]
        b = values[i, mask]
        if np.unique(a).size < 2 or np.unique(b).size < 2:
            continue
        res = stats.ttest_ind(b, a, equal_var=False)
        stat[i] = float(res.statistic)
        pval[i] = float(res.pvalue)
    return stat, pval


def run_differential(
    norm: NormalizationResult,
    metadata: SampleMetadata,
    config: DifferentialConfig | None = None,
    n_jobs: int = 1,
) -> DifferentialResult:
    """Dispersion estimation, NB Wald or LRT test, BH correction and t-test cross-check."""
    cfg = config or DifferentialConfig()
    sample_ids = [str(s) for s in norm.normalized.columns]
    metadata.check_alignment(sample_ids)
    groups = metadata.groups(sample_ids)
    design, ref, treat = build_design(groups, cfg.reference)

    sf = norm.size_factors.loc[norm.normalized.columns].to_numpy(dtype=float)
    counts = np.round(norm.normalized.to_numpy(dtype=float) * sf[None, :])
    genes = [str(g) for g in norm.normalized.index]
    n_chunks = max(1, abs(int(n_jobs))) * 4
    index_chunks = chunked(list(range(len(genes))), n_chunks)

    base = {
        "sf": sf,
        "design": design,
        "min_disp": float(cfg.min_disp),
        "max_disp": float(cfg.max_disp),
        "max_iter": int(cfg.max_iter),
        "tol": float(cfg.tol),
    }
    raw_parts = parallel_map(
        _dispersion_chunk,
        [{**base, "counts": counts[idx]} for idx in index_chunks],
        n_jobs=n_jobs,
    )
    disp_raw = np.concatenate(raw_parts)

    base_mean = norm.normalized.mean(axis=1).to_numpy(dtype=float)
    trend = fit_dispersion_trend(base_mean, disp_raw, min_disp=cfg.min_disp)
    disp_fit = trend(base_mean)
    disp_final, prior_var = shrink_dispersions(
        disp_raw,
        disp_fit,
        n_samples=len(sample_ids),
        n_coef=design.shape[1],
        min_disp=cfg.min_disp,
        max_disp=cfg.max_disp,
    )
    logger.info(
        "Dispersion trend (%s): asympt=%.4g extra_pois=%.4g prior_var=%.3f",
        trend.kind,
        trend.asympt_disp,
        trend.extra_pois,
        prior_var,
    )

    glm_parts = parallel_map(
        _glm_chunk,
        [
            {**base, "counts": counts[idx], "dispersion": disp_final[idx]}
            for idx in index_chunks
        ],
        n_jobs=n_jobs,
    )
    glm = np.vstack(glm_parts)

    pvalue = glm[:, 3]
    t_stat, t_p = welch_ttest(norm.normalized, design[:, 1] > 0.5)
    table = pd.DataFrame(
        {
            "baseMean": base_mean,
            "log2FoldChange": glm[:, 0],
            "lfcSE": glm[:, 1],
            "stat": glm[:, 2],
            "pvalue": pvalue,
            "padj": bh_fdr(pvalue),
            "dispGeneEst": disp_raw,
            "dispFit": disp_fit,
            "dispersion": disp_final,
            "converged": glm[:, 4] > 0.5,
            "test": [_TEST_NAMES[code] for code in glm[:, 5]],
            "ttest_stat": t_stat,
            "ttest_pvalue": t_p,
            "ttest_padj": bh_fdr(t_p),
        },
        index=pd.Index(genes, name="gene"),
    )
    n_na = int(np.isnan(pvalue).sum())
    if n_na:
        logger.warning("%d genes have an undefined p-value (zero variance); kept as NaN.", n_na)
    n_nc = int((~table["converged"]).sum())
    if n_nc:
        logger.warning("%d genes did not converge in the GLM fit.", n_nc)
    n_lrt = int((table["test"] == "lrt").sum())
    if n_lrt:
        logger.info("%d genes with an all-zero group tested by likelihood ratio.", n_lrt)

    return DifferentialResult(
        table=table,
        reference=ref,
        treatment=treat,
        metadata={
            "trend": {
                "kind": trend.kind,
                "asympt_disp": trend.asympt_disp,
                "extra_pois": trend.extra_pois,
            },
            "prior_var": prior_var,
        },
    )


def significant_genes(
    result: DifferentialResult,
    alpha: float = 0.05,
    lfc_threshold: float = 0.0,
    policy: str = "primary",
) -> list[str]:
    """Genes called significant under a combination policy.

    ``policy`` is ``"primary"`` (NB Wald only), ``"union"`` or
    ``"intersection"`` of the Wald and t-test significance sets. Genes are
    returned ordered by primary ``padj`` then gene ID.
    """
    if policy not in {"primary", "union", "intersection"}:
        raise ConfigurationError(f"Unknown significance policy '{policy}'.")
    table = result.table
    lfc_ok = np.abs(table["log2FoldChange"].to_numpy(dtype=float)) >= float(lfc_threshold)
    primary = (table["padj"].to_numpy(dtype=float) < float(alpha)) & lfc_ok
    cross = (table["ttest_padj"].to_numpy(dtype=float) < float(alpha)) & lfc_ok
    if policy == "primary":
        keep = primary
    elif policy == "union":
        keep = primary | cross
    else:
        keep = primary & cross
    hits = table.loc[keep, ["padj"]].copy()
    hits["gene"] = hits.index.astype(str)
    hits["padj"] = hits["padj"].fillna(np.inf)
    hits = hits.sort_values(["padj", "gene"])
    return list(hits["gene"])
