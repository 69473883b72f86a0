"""
Empirical Bayes moderation of per-feature residual variances (limma-style).

Model:
    s²_g | σ²_g ~ σ²_g χ²_{d_g} / d_g          sampling distribution
    1/σ²_g      ~ χ²_{d0} / (d0 s0²)          scaled inverse-χ² prior

The hyperparameters (d0, s0²) are estimated by matching the first two
moments of log(s²_g) across all features. The posterior variance is then a
degrees-of-freedom weighted average:

    s²_post,g = (d0 s0² + d_g s²_g) / (d0 + d_g)

Estimating the prior is a reduction over every feature, so no posterior can be
computed before all features have been fitted. The two stages are explicit:
`estimate_prior` (barrier) followed by `squeeze_var` (per feature).

References:
    Smyth (2004) Linear models and empirical Bayes methods for assessing
    differential expression in microarray experiments. SAGMB 3(1):3
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy.special import digamma, polygamma

from rnaseqde.exceptions import InsufficientDataError
from rnaseqde.stats.linear_model import LinearModelFit

logger = logging.getLogger(__name__)

__all__ = [
    'EmpiricalBayesPrior',
    'ModeratedVariances',
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'moderate_variances',
]


@dataclass(frozen=True)
class EmpiricalBayesPrior:
    """Scaled inverse-χ² prior on the feature variances.

    Attributes:
        df_prior: Prior degrees of freedom d0 (np.inf = complete shrinkage)
        s2_prior: Prior variance s0²
    """
    df_prior: float
    s2_prior: float

    def shrinkage_weight(self, df_residual: float) -> float:
        """Fraction of the posterior contributed by the prior."""
        if np.isinf(self.df_prior):
            return 1.0
        return self.df_prior / (self.df_prior + df_residual)


@dataclass(frozen=True)
class ModeratedVariances:
    """Posterior variances for every feature.

    Attributes:
        s2_post: Moderated variances (n_features,)
        df_total: df_residual + df_prior per feature
        prior: The fitted prior
    """
    s2_post: NDArray[np.float64]
    df_total: NDArray[np.float64]
    prior: EmpiricalBayesPrior


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y.

    Newton iteration on 1/trigamma(y), which is convex and nearly linear,
    starting from y = 0.5 + 1/x.

    Args:
        x: Target trigamma value (must be positive)
        tol: Relative convergence tolerance
        max_iter: Maximum Newton iterations

    Returns:
        y with trigamma(y) ≈ x (np.inf for x ≤ 0)
    """
    if x <= 0:
        return np.inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + dif
        if -dif / y < tol:
            break
    else:
        logger.warning("trigamma_inverse: iteration limit reached for x=%g", x)

    return float(y)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> EmpiricalBayesPrior:
    """
    Estimate (d0, s0²) by the method of moments on log variances.

    Algorithm:
        1. e = log(s²) − digamma(df/2) + log(df/2)
        2. evar = var(e) − mean(trigamma(df/2))
        3. d0 = 2 × trigamma⁻¹(evar)            (∞ when evar ≤ 0)
        4. s0² = exp(mean(e) + digamma(d0/2) − log(d0/2)), or the mean
           variance when d0 = ∞

    Zero variances are floored at 1e-5 × median(s²) so log() stays finite.

    Args:
        sigma2: Residual variances (n_features,)
        df: Residual degrees of freedom, scalar or per feature

    Returns:
        EmpiricalBayesPrior

    Raises:
        InsufficientDataError: If fewer than 3 features have positive finite
            variance
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    ok = np.isfinite(sigma2) & (sigma2 >= 0) & np.isfinite(df) & (df > 0)
    n_positive = int(np.sum(ok & (sigma2 > 0)))
    if n_positive < 3:
        raise InsufficientDataError(
            f"Variance prior needs at least 3 features with positive variance, got {n_positive}"
        )

    x = sigma2[ok]
    d = df[ok]

    median = np.median(x)
    if median == 0:
        median = np.median(x[x > 0])
    x = np.maximum(x, 1e-5 * median)

    half_df = d / 2.0
    e = np.log(x) - digamma(half_df) + np.log(half_df)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1)) - float(np.mean(polygamma(1, half_df)))

    if evar > 0:
        d0 = 2.0 * trigamma_inverse(evar)
        s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    else:
        # Pooled variance is the MLE of the scale when d0 = ∞
        d0 = np.inf
        s0_sq = float(np.mean(x))

    return EmpiricalBayesPrior(df_prior=float(d0), s2_prior=s0_sq)


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    prior: EmpiricalBayesPrior,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Posterior variances under a fitted prior.

    Formula:
        s²_post = (d0 × s0² + df × s²) / (d0 + df)

    With d0 = ∞ every posterior equals s0².

    Returns:
        (s2_post, df_total) with df_total = d0 + df
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)
    d0 = prior.df_prior
    s0_sq = prior.s2_prior

    if np.isinf(d0):
        return np.full_like(sigma2, s0_sq), np.full_like(sigma2, np.inf)

    s2_post = (d0 * s0_sq + df * sigma2) / (d0 + df)
    return s2_post, d0 + df


def moderate_variances(model_fit: LinearModelFit) -> ModeratedVariances:
    """
    Run both stages over a completed set of feature fits.

    Args:
        model_fit: Fits for all features

    Returns:
        ModeratedVariances aligned to model_fit.fits
    """
    sigma2 = model_fit.sigma2
    df_residual = model_fit.df_residual

    # Barrier: prior from all features
    prior = fit_f_dist(sigma2, df_residual)
    s2_post, df_total = squeeze_var(sigma2, df_residual, prior)

    if np.isinf(prior.df_prior):
        warnings.warn(
            "Variance dispersion is no larger than sampling error; "
            "all feature variances shrink fully to the prior."
        )
        logger.info(f"EB prior: d0=Inf, s0²={prior.s2_prior:.6g}")
    else:
        weight = prior.shrinkage_weight(float(np.median(df_residual)))
        logger.info(
            f"EB prior: d0={prior.df_prior:.2f}, s0²={prior.s2_prior:.6g} "
            f"({100 * weight:.1f}% prior weight)"
        )

    return ModeratedVariances(s2_post=s2_post, df_total=df_total, prior=prior)
