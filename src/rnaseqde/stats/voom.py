"""
Mean-variance modelling and precision weights (voom).

Count data are heteroscedastic: low-count features have larger log-scale
variance than high-count features. voom estimates that trend non-parametrically
and converts it into one precision weight per observation, so the weighted
linear model downstream sees approximately homoscedastic data.

Algorithm:
    1. Per-feature unweighted least squares of logCPM on the design
       → fitted values and residual standard deviation s_g
    2. Average log-count per feature
           x_g = mean_s(logCPM[g, s]) + mean_s(log2(lib_s + 1)) − log2(10^6)
    3. LOWESS trend of sqrt(s_g) against x_g, over features with s_g > 0
    4. For every observation, predict sqrt(sd) at its fitted log-count
           fitted_logcount[g, s] = fitted[g, s] + log2(lib_s + 1) − log2(10^6)
       and set weight = 1 / predicted_sqrt_sd^4 = 1 / predicted_sd^2

The per-feature fit in step 1 is local; the trend fit in step 3 is a global
reduction over all features and therefore runs only after every feature's
residual SD is available.

References:
    - Law et al. (2014) voom: precision weights unlock linear model analysis
      tools for RNA-seq read counts. Genome Biology 15:R29
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from statsmodels.nonparametric.smoothers_lowess import lowess

from rnaseqde.exceptions import InsufficientDataError, ValidationError
from rnaseqde.stats.design_matrix import Design
from rnaseqde.stats.linear_model import ols_fit

logger = logging.getLogger(__name__)

__all__ = ['VoomResult', 'MIN_TREND_FEATURES', 'fit_mean_variance_trend', 'voom']

MIN_TREND_FEATURES = 10

_EPS = 1e-8


@dataclass(frozen=True)
class VoomResult:
    """Precision weights and mean-variance trend.

    Attributes:
        log_cpm: Expression values the weights apply to (features × samples)
        weights: Precision weights, strictly positive, same shape as log_cpm
        trend_x: Sorted average log-count values of the fitted trend
        trend_y: Fitted sqrt(residual SD) at trend_x
        average_log_count: Per-feature x_g used for the trend fit
        sqrt_sd: Per-feature sqrt(residual SD)
        library_sizes: Per-sample library sizes
        feature_ids: Row identifiers
        sample_ids: Column identifiers
    """

    log_cpm: NDArray[np.float64]
    weights: NDArray[np.float64]
    trend_x: NDArray[np.float64]
    trend_y: NDArray[np.float64]
    average_log_count: NDArray[np.float64]
    sqrt_sd: NDArray[np.float64]
    library_sizes: NDArray[np.float64]
    feature_ids: pd.Index
    sample_ids: pd.Index

    def weights_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.weights, index=self.feature_ids, columns=self.sample_ids)


def _interp_extrap(x: NDArray[np.float64], xp: NDArray[np.float64], fp: NDArray[np.float64]) -> NDArray[np.float64]:
    """Linear interpolation, constant beyond the observed range."""
    return np.interp(x, xp, fp, left=fp[0], right=fp[-1])


def fit_mean_variance_trend(
    average_log_count: NDArray[np.float64],
    sqrt_sd: NDArray[np.float64],
    span: float = 0.5,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    LOWESS trend of sqrt(residual SD) against average log-count.

    Only features with positive, finite residual SD enter the fit.

    Args:
        average_log_count: Per-feature x values
        sqrt_sd: Per-feature sqrt(residual SD)
        span: LOWESS smoother span (fraction of points per local fit)

    Returns:
        (trend_x, trend_y): strictly increasing x and the fitted curve,
        clipped to be positive

    Raises:
        InsufficientDataError: If fewer than MIN_TREND_FEATURES features have
            positive variance
    """
    if not 0 < span <= 1:
        raise ValueError(f"span must be in (0, 1], got {span}")

    ok = np.isfinite(average_log_count) & np.isfinite(sqrt_sd) & (sqrt_sd > 0)
    n_ok = int(ok.sum())
    if n_ok < MIN_TREND_FEATURES:
        raise InsufficientDataError(
            f"Mean-variance trend needs at least {MIN_TREND_FEATURES} features "
            f"with positive variance, got {n_ok}"
        )

    fitted = lowess(
        sqrt_sd[ok],
        average_log_count[ok],
        frac=span,
        it=3,
        return_sorted=True,
    )
    fitted = fitted[np.isfinite(fitted[:, 1])]
    if fitted.shape[0] == 0:
        raise InsufficientDataError("LOWESS trend fit produced no finite values")
    trend_x = fitted[:, 0]
    trend_y = np.clip(fitted[:, 1], _EPS, None)

    # np.interp needs strictly increasing x
    trend_x, idx = np.unique(trend_x, return_index=True)
    trend_y = trend_y[idx]
    if trend_x.size < 2:
        trend_x = np.array([trend_x[0] - 1.0, trend_x[0] + 1.0])
        trend_y = np.array([trend_y[0], trend_y[0]])

    return trend_x, trend_y


def voom(
    log_cpm: NDArray[np.float64],
    design: Design,
    library_sizes: NDArray[np.float64],
    span: float = 0.5,
    feature_ids: pd.Index | None = None,
    sample_ids: pd.Index | None = None,
) -> VoomResult:
    """
    Estimate precision weights from the mean-variance relationship.

    Args:
        log_cpm: Filtered log2(CPM + 1) (features × samples)
        design: Design matrix aligned to the columns of log_cpm
        library_sizes: Per-sample total counts (unfiltered)
        span: LOWESS span for the trend
        feature_ids: Optional row identifiers
        sample_ids: Optional column identifiers

    Returns:
        VoomResult with weights of the same shape as log_cpm

    Raises:
        ValidationError: If shapes are inconsistent
        InsufficientDataError: If too few features have positive variance

    Examples:
        >>> vr = voom(filtered.normalized.log_cpm, design, filtered.normalized.library_sizes)
        >>> vr.weights.shape == filtered.normalized.log_cpm.shape
        True
    """
    log_cpm = np.asarray(log_cpm, dtype=np.float64)
    library_sizes = np.asarray(library_sizes, dtype=np.float64)
    n_features, n_samples = log_cpm.shape

    if design.n_samples != n_samples:
        raise ValidationError(
            f"Design has {design.n_samples} rows but expression has {n_samples} samples"
        )
    if library_sizes.shape != (n_samples,):
        raise ValidationError(
            f"library_sizes must have one entry per sample ({n_samples}), got {library_sizes.shape}"
        )

    # Stage 1: per-feature unweighted fit
    fitted, sigma = ols_fit(log_cpm, design.X)

    # Average log-count scale
    log_lib = np.log2(library_sizes + 1.0)
    offset = log_lib - np.log2(1e6)
    average_log_count = log_cpm.mean(axis=1) + offset.mean()
    sqrt_sd = np.sqrt(sigma)

    # Barrier: global trend over all features
    trend_x, trend_y = fit_mean_variance_trend(average_log_count, sqrt_sd, span=span)

    # Stage 2: per-observation weights
    fitted_log_count = fitted + offset[None, :]
    predicted = _interp_extrap(fitted_log_count.ravel(), trend_x, trend_y).reshape(fitted.shape)
    predicted = np.clip(predicted, _EPS, None)
    weights = 1.0 / predicted ** 4

    n_used = int(np.sum(sqrt_sd > 0))
    logger.info(
        f"voom: trend fitted on {n_used}/{n_features} features "
        f"(span={span}); weights range {weights.min():.3g}-{weights.max():.3g}"
    )

    return VoomResult(
        log_cpm=log_cpm,
        weights=weights,
        trend_x=trend_x,
        trend_y=trend_y,
        average_log_count=average_log_count,
        sqrt_sd=sqrt_sd,
        library_sizes=library_sizes,
        feature_ids=feature_ids if feature_ids is not None else pd.RangeIndex(n_features),
        sample_ids=sample_ids if sample_ids is not None else design.sample_ids,
    )
