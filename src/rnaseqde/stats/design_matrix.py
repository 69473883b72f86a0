"""
Design matrix construction for the two-group (plus covariates) linear model.

Builds X = [intercept | group_indicators | covariate_columns] with indicator
(dummy) coding of the grouping relative to a declared baseline level.

Design matrix structure (intercept kept):
    column 0            intercept, 1 for every sample
    columns 1..L-1      one indicator per non-baseline group level
    remaining columns   covariates (categorical → indicators relative to the
                        first sorted level, numeric → centered values)

With the intercept suppressed every group level gets its own indicator
(cell-means coding) and coefficients are per-group mean log-expression.

A rank-deficient design (e.g., a covariate identical to the grouping) is an
error: no column is ever dropped silently.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from rnaseqde.exceptions import DesignMatrixError

__all__ = ['Design', 'build_design_matrix']


@dataclass(frozen=True)
class Design:
    """Design matrix with its column bookkeeping.

    Attributes:
        X: Design matrix (n_samples, n_params), full column rank.
        col_names: Human-readable names for all columns.
        sample_ids: Samples (rows), aligned to the count columns.
        baseline: Reference group level.
        levels: Ordered group levels, baseline first.
        group_cols: Column indices of the group indicators.
        covariate_cols: Column indices of covariate columns.
        has_intercept: Whether column 0 is an intercept.
    """

    X: NDArray[np.float64]
    col_names: list[str]
    sample_ids: pd.Index
    baseline: str
    levels: list[str]
    group_cols: list[int]
    covariate_cols: list[int]
    has_intercept: bool = True

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.X))

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.rank

    @property
    def default_coefficient(self) -> str:
        """First non-baseline group indicator."""
        for idx in self.group_cols:
            name = self.col_names[idx]
            if name != self._indicator_name(self.baseline):
                return name
        raise DesignMatrixError("Design has no non-baseline group coefficient")

    def coefficient_index(self, name: str | int | None = None) -> int:
        """
        Resolve a coefficient selector to a column index.

        Accepts a column name, a group level (mapped to its indicator), an
        integer index, or None for the default coefficient.
        """
        if name is None:
            name = self.default_coefficient
        if isinstance(name, (int, np.integer)):
            if not 0 <= name < self.n_params:
                raise DesignMatrixError(
                    f"Coefficient index {name} out of range for {self.n_params} columns"
                )
            return int(name)
        if name in self.col_names:
            return self.col_names.index(name)
        indicator = self._indicator_name(name)
        if indicator in self.col_names:
            return self.col_names.index(indicator)
        raise DesignMatrixError(
            f"Unknown coefficient '{name}'. Columns: {self.col_names}"
        )

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.sample_ids, columns=self.col_names)

    @staticmethod
    def _indicator_name(level: str) -> str:
        return f"group[{level}]"


def _encode_covariate(series: pd.Series) -> tuple[NDArray[np.float64], list[str]]:
    """Indicator-code a categorical covariate or center a numeric one."""
    col = str(series.name)
    if not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series):
        series = series.astype(str)
        levels = sorted(series.unique())
        dummies = pd.get_dummies(
            pd.Categorical(series, categories=levels), prefix=col, prefix_sep="[", drop_first=True, dtype=float
        )
        names = [f"{name}]" for name in dummies.columns]
        return dummies.to_numpy(dtype=np.float64), names

    values = series.to_numpy(dtype=np.float64)
    return (values - values.mean()).reshape(-1, 1), [col]


def build_design_matrix(
    sample_metadata: pd.DataFrame,
    group_column: str = "group",
    baseline: str | None = None,
    covariates: Sequence[str] | None = None,
    intercept: bool = True,
) -> Design:
    """
    Build the design matrix from sample metadata.

    Args:
        sample_metadata: One row per sample, in count-column order.
        group_column: Column holding the grouping label.
        baseline: Reference level. Defaults to the first sorted level.
        covariates: Additional metadata columns to adjust for.
        intercept: Include an intercept column (default True). If False,
            every group level gets its own indicator.

    Returns:
        Design with full-rank X and column bookkeeping.

    Raises:
        DesignMatrixError: If the grouping column is missing, any sample has
            no group label, the baseline is not a level, a covariate is
            missing/has missing values, the design is rank-deficient, or
            there are no residual degrees of freedom.

    Examples:
        >>> meta = pd.DataFrame({'group': ['ctrl', 'ctrl', 'trt', 'trt']},
        ...                     index=['s1', 's2', 's3', 's4'])
        >>> design = build_design_matrix(meta, baseline='ctrl')
        >>> design.col_names
        ['(Intercept)', 'group[trt]']
    """
    import statsmodels.api as sm

    covariates = list(covariates or [])

    if group_column not in sample_metadata.columns:
        raise DesignMatrixError(
            f"Grouping column '{group_column}' not found in sample metadata "
            f"(columns: {list(sample_metadata.columns)})"
        )

    groups = sample_metadata[group_column]
    missing = groups.isna()
    if missing.any():
        raise DesignMatrixError(
            f"{int(missing.sum())} sample(s) have no '{group_column}' label: "
            f"{list(sample_metadata.index[missing.values][:5])}"
        )
    groups = groups.astype(str)

    levels = sorted(groups.unique())
    if baseline is None:
        baseline = levels[0]
    baseline = str(baseline)
    if baseline not in levels:
        raise DesignMatrixError(
            f"Baseline level '{baseline}' not found in '{group_column}' levels {levels}"
        )
    if len(levels) < 2:
        raise DesignMatrixError(
            f"Grouping '{group_column}' has a single level ({baseline}); need at least two"
        )
    levels = [baseline] + [lvl for lvl in levels if lvl != baseline]

    # --- Group part ---
    group_cat = pd.Categorical(groups, categories=levels)
    indicators = pd.get_dummies(group_cat, drop_first=intercept, dtype=float)
    indicators.columns = [Design._indicator_name(str(lvl)) for lvl in indicators.columns]
    indicators.index = sample_metadata.index

    if intercept:
        X_group = sm.add_constant(indicators, has_constant="add")
        X_group = X_group.rename(columns={"const": "(Intercept)"})
        group_cols = list(range(1, X_group.shape[1]))
    else:
        X_group = indicators
        group_cols = list(range(X_group.shape[1]))

    col_names = list(X_group.columns)
    X = X_group.to_numpy(dtype=np.float64)

    # --- Covariate part ---
    covariate_cols: list[int] = []
    for cov in covariates:
        if cov not in sample_metadata.columns:
            raise DesignMatrixError(f"Covariate '{cov}' not found in sample metadata")
        series = sample_metadata[cov]
        if series.isna().any():
            raise DesignMatrixError(
                f"Covariate '{cov}' has {int(series.isna().sum())} missing value(s)"
            )
        block, names = _encode_covariate(series)
        start = X.shape[1]
        X = np.hstack([X, block])
        col_names.extend(names)
        covariate_cols.extend(range(start, X.shape[1]))

    n_samples, n_params = X.shape

    # --- Validate rank ---
    rank = np.linalg.matrix_rank(X)
    if rank < n_params:
        raise DesignMatrixError(
            f"Design matrix is rank-deficient: rank={rank}, n_params={n_params}. "
            f"Columns: {col_names}. A covariate may be collinear with the "
            f"grouping or another covariate."
        )

    if n_samples - rank < 1:
        raise DesignMatrixError(
            f"Insufficient residual df: {n_samples} samples - {rank} params = "
            f"{n_samples - rank}. Reduce covariates or increase sample size."
        )
    if n_samples - rank == 1:
        warnings.warn(
            "Design leaves a single residual degree of freedom; "
            "variance estimates and moderated statistics will be unstable."
        )

    return Design(
        X=X,
        col_names=col_names,
        sample_ids=pd.Index(sample_metadata.index),
        baseline=baseline,
        levels=[str(lvl) for lvl in levels],
        group_cols=group_cols,
        covariate_cols=covariate_cols,
        has_intercept=intercept,
    )
