"""
Per-feature weighted least squares.

Each feature g is fitted independently:

    minimise  sum_s w[g, s] (y[g, s] − X[s, :] β_g)^2

Solved through the QR decomposition of W^½X. For every feature we keep the
coefficients, the residual variance s²_g = RSS_w / (n − rank), the residual
degrees of freedom and the diagonal of (X'WX)⁻¹ (the unscaled coefficient
variances used by the moderated t-statistic).

Parallelism:
    The fits share no state, so they run as a plain parallel map over feature
    index (joblib) and are reassembled in original feature order. No
    accumulator is shared between workers; each FeatureFit is write-once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.linalg import solve_triangular

from rnaseqde.exceptions import DesignMatrixError, ValidationError

logger = logging.getLogger(__name__)

__all__ = ['FeatureFit', 'LinearModelFit', 'fit_feature', 'fit_linear_model', 'ols_fit']


@dataclass(frozen=True)
class FeatureFit:
    """Weighted least-squares fit for one feature.

    Attributes:
        feature_id: Feature identifier
        coefficients: Estimates, one per design column
        sigma2: Residual variance (weighted RSS / df_residual)
        df_residual: Residual degrees of freedom (samples − design rank)
        unscaled_variances: Diagonal of (X'WX)⁻¹
        average_expression: Mean log-expression over samples
    """

    feature_id: str
    coefficients: NDArray[np.float64]
    sigma2: float
    df_residual: int
    unscaled_variances: NDArray[np.float64]
    average_expression: float


@dataclass(frozen=True)
class LinearModelFit:
    """All per-feature fits, in original feature order."""

    fits: list[FeatureFit]
    col_names: list[str]
    feature_ids: pd.Index

    @property
    def n_features(self) -> int:
        return len(self.fits)

    @property
    def coefficients(self) -> NDArray[np.float64]:
        """(n_features, n_params)"""
        return np.vstack([f.coefficients for f in self.fits])

    @property
    def unscaled_variances(self) -> NDArray[np.float64]:
        return np.vstack([f.unscaled_variances for f in self.fits])

    @property
    def sigma2(self) -> NDArray[np.float64]:
        return np.array([f.sigma2 for f in self.fits], dtype=np.float64)

    @property
    def df_residual(self) -> NDArray[np.float64]:
        return np.array([f.df_residual for f in self.fits], dtype=np.float64)

    @property
    def average_expression(self) -> NDArray[np.float64]:
        return np.array([f.average_expression for f in self.fits], dtype=np.float64)

    def coefficients_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.coefficients, index=self.feature_ids, columns=self.col_names)


def ols_fit(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Unweighted least squares of every row of y on X.

    With a shared, unweighted design all rows are solved in one lstsq call.

    Args:
        y: Response (features × samples)
        X: Design (samples × params)

    Returns:
        (fitted, sigma): fitted values (features × samples) and residual
        standard deviation per feature

    Raises:
        DesignMatrixError: If residual df ≤ 0
    """
    n_samples = X.shape[0]
    rank = np.linalg.matrix_rank(X)
    df_residual = n_samples - rank
    if df_residual <= 0:
        raise DesignMatrixError(
            f"No residual degrees of freedom: {n_samples} samples, design rank {rank}"
        )

    beta, _, _, _ = np.linalg.lstsq(X, y.T, rcond=None)
    fitted = (X @ beta).T
    rss = np.sum((y - fitted) ** 2, axis=1)
    sigma = np.sqrt(rss / df_residual)
    return fitted, sigma


def _intercept_combination(X: NDArray[np.float64]) -> NDArray[np.float64] | None:
    """Exact coefficients c with X @ c == 1, or None if no such c exists."""
    c, _, _, _ = np.linalg.lstsq(X, np.ones(X.shape[0]), rcond=None)
    c = np.round(c, 8) + 0.0
    if not np.allclose(X @ c, 1.0, rtol=0.0, atol=1e-12):
        return None
    return c


def fit_feature(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    weights: NDArray[np.float64],
    feature_id: str = "",
) -> FeatureFit:
    """
    Weighted least squares for a single feature.

    Args:
        y: Log-expression for this feature (n_samples,)
        X: Design matrix (n_samples, n_params)
        weights: Precision weights for this feature (n_samples,), positive
        feature_id: Identifier carried into the result

    Returns:
        FeatureFit

    Raises:
        DesignMatrixError: If the residual degrees of freedom are ≤ 0
        ValidationError: If any weight is not strictly positive
    """
    y = np.asarray(y, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)
    if np.any(~np.isfinite(weights)) or np.any(weights <= 0):
        raise ValidationError(f"Feature {feature_id}: precision weights must be strictly positive")

    n_samples, n_params = X.shape
    sw = np.sqrt(weights)
    Xw = X * sw[:, None]
    yw = y * sw

    rank = np.linalg.matrix_rank(Xw)
    df_residual = n_samples - rank
    if df_residual <= 0:
        raise DesignMatrixError(
            f"Feature {feature_id}: residual df = {df_residual} "
            f"({n_samples} samples, design rank {rank})"
        )
    if rank < n_params:
        raise DesignMatrixError(
            f"Feature {feature_id}: weighted design is rank-deficient (rank {rank} < {n_params})"
        )

    # Centre y when X spans the intercept; a constant y then has exactly zero contrasts.
    intercept_combination = _intercept_combination(X)
    offset = 0.0
    if intercept_combination is not None:
        offset = float(y[0]) if np.ptp(y) == 0 else float(np.average(y, weights=weights))
        yw = (y - offset) * sw

    Q, R = np.linalg.qr(Xw)
    coefficients = solve_triangular(R, Q.T @ yw)
    residuals = yw - Xw @ coefficients
    if intercept_combination is not None:
        coefficients = coefficients + offset * intercept_combination
    sigma2 = float(residuals @ residuals) / df_residual

    # (X'WX)^-1 = R^-1 R^-T
    R_inv = solve_triangular(R, np.eye(n_params))
    unscaled_variances = np.sum(R_inv ** 2, axis=1)

    return FeatureFit(
        feature_id=str(feature_id),
        coefficients=coefficients,
        sigma2=sigma2,
        df_residual=int(df_residual),
        unscaled_variances=unscaled_variances,
        average_expression=float(np.mean(y)),
    )


def fit_linear_model(
    log_cpm: NDArray[np.float64],
    X: NDArray[np.float64],
    weights: NDArray[np.float64] | None = None,
    feature_ids: pd.Index | None = None,
    col_names: list[str] | None = None,
    n_jobs: int = 1,
) -> LinearModelFit:
    """
    Fit the weighted linear model to every feature.

    Args:
        log_cpm: Log-expression (features × samples)
        X: Design matrix (samples × params)
        weights: Precision weights, same shape as log_cpm. Unit weights if None.
        feature_ids: Row identifiers
        col_names: Design column names
        n_jobs: joblib workers (1 = sequential, -1 = all cores)

    Returns:
        LinearModelFit with one FeatureFit per row, in row order

    Raises:
        ValidationError: If shapes are inconsistent
        DesignMatrixError: If residual df ≤ 0
    """
    log_cpm = np.asarray(log_cpm, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    n_features, n_samples = log_cpm.shape

    if X.shape[0] != n_samples:
        raise ValidationError(
            f"Design has {X.shape[0]} rows but expression has {n_samples} samples"
        )
    if weights is None:
        weights = np.ones_like(log_cpm)
    weights = np.asarray(weights, dtype=np.float64)
    if weights.shape != log_cpm.shape:
        raise ValidationError(
            f"weights shape {weights.shape} does not match expression shape {log_cpm.shape}"
        )
    if feature_ids is None:
        feature_ids = pd.Index([str(i) for i in range(n_features)])
    if col_names is None:
        col_names = [f"x{j}" for j in range(X.shape[1])]

    rank = np.linalg.matrix_rank(X)
    if n_samples - rank <= 0:
        raise DesignMatrixError(
            f"No residual degrees of freedom: {n_samples} samples, design rank {rank}"
        )

    def process_feature(i: int) -> FeatureFit:
        return fit_feature(log_cpm[i], X, weights[i], feature_id=feature_ids[i])

    if n_jobs == 1:
        fits = [process_feature(i) for i in range(n_features)]
    else:
        from joblib import Parallel, delayed

        fits = Parallel(n_jobs=n_jobs)(
            delayed(fit_feature)(log_cpm[i], X, weights[i], feature_ids[i])
            for i in range(n_features)
        )

    logger.info(
        f"Weighted linear model fitted for {n_features} features "
        f"({len(col_names)} coefficients, residual df={n_samples - rank})"
    )

    return LinearModelFit(fits=list(fits), col_names=list(col_names), feature_ids=pd.Index(feature_ids))
