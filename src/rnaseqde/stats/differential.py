"""
Moderated t-tests, FDR control and the ranked results table.

Implements the final stages of the voom/limma workflow:
- Moderated t-statistics for one coefficient of interest
- Two-sided p-values from the t-distribution with d0 + d_g degrees of freedom
- Benjamini-Hochberg adjusted p-values
- Results table sorted by p-value (ties broken by feature ID)

and `run_differential_expression`, which drives the whole chain:

    counts → CPM/logCPM → filter → design → voom weights → weighted fits
           → [barrier] variance prior → moderated t → BH → ranked table

Every stage returns a new object; nothing is reassigned or mutated in place.

References:
    - Smyth (2004) SAGMB 3(1):3 (moderated t)
    - Law et al. (2014) Genome Biology 15:R29 (voom)
    - Benjamini & Hochberg (1995) JRSS-B 57(1):289-300
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from rnaseqde.core.countmatrix import CountMatrix
from rnaseqde.stats.design_matrix import Design, build_design_matrix
from rnaseqde.stats.empirical_bayes import EmpiricalBayesPrior, ModeratedVariances, moderate_variances
from rnaseqde.stats.linear_model import LinearModelFit, fit_linear_model
from rnaseqde.stats.normalization import normalize_counts
from rnaseqde.stats.voom import VoomResult, voom

logger = logging.getLogger(__name__)

__all__ = [
    'RESULT_COLUMNS',
    'ModeratedStatistics',
    'DifferentialResult',
    'fdr_correction',
    'moderated_t_test',
    'rank_results',
    'classify_features',
    'run_differential_expression',
]

RESULT_COLUMNS = ['feature_id', 'logFC', 'AveExpr', 't', 'P.Value', 'adj.P.Val']


@dataclass(frozen=True)
class ModeratedStatistics:
    """Final statistics for one feature.

    Attributes:
        feature_id: Feature identifier
        log_fc: Coefficient of interest (log2 fold change)
        ave_expr: Average log2(CPM + 1)
        t: Moderated t-statistic
        p_value: Two-sided raw p-value
        adj_p_value: Benjamini-Hochberg adjusted p-value
    """

    feature_id: str
    log_fc: float
    ave_expr: float
    t: float
    p_value: float
    adj_p_value: float

    def to_dict(self) -> dict:
        return {
            'feature_id': self.feature_id,
            'logFC': self.log_fc,
            'AveExpr': self.ave_expr,
            't': self.t,
            'P.Value': self.p_value,
            'adj.P.Val': self.adj_p_value,
        }


@dataclass
class DifferentialResult:
    """Complete differential expression results.

    Attributes:
        statistics: Per-feature statistics, ranked by p-value
        coefficient: Name of the tested design column
        prior: Empirical Bayes prior used for moderation
        design: Design matrix
        n_removed: Features removed by the expression filter
        voom_result: Precision weights and mean-variance trend
        parameters: Run parameters for provenance
    """

    statistics: list[ModeratedStatistics]
    coefficient: str
    prior: EmpiricalBayesPrior
    design: Design | None = None
    n_removed: int = 0
    voom_result: VoomResult | None = None
    parameters: dict = field(default_factory=dict)

    def to_dataframe(self) -> pd.DataFrame:
        """Ranked table with columns feature_id, logFC, AveExpr, t, P.Value, adj.P.Val."""
        if not self.statistics:
            return pd.DataFrame(columns=RESULT_COLUMNS)
        return pd.DataFrame([s.to_dict() for s in self.statistics], columns=RESULT_COLUMNS)

    def significant_features(
        self,
        fdr: float = 0.05,
        lfc: float = 0.0,
        direction: Literal["up", "down", "both"] = "both",
    ) -> list[str]:
        """Feature IDs passing both cutoffs, in rank order."""
        calls = classify_features(self.to_dataframe(), fdr=fdr, lfc=lfc)
        if direction == "up":
            keep = calls == 1
        elif direction == "down":
            keep = calls == -1
        else:
            keep = calls != 0
        return calls.index[keep].tolist()


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    Benjamini-Hochberg: with p-values sorted ascending, rank i of m becomes
    p_(i) m / i; a running minimum from the largest rank down enforces
    monotonicity; values are clipped to [0, 1] and returned in input order.
    NaN p-values are ignored and stay NaN.

    Args:
        pvalues: Array of raw p-values.
        method:
            - "BH": Benjamini-Hochberg (controls FDR)
            - "BY": Benjamini-Yekutieli (controls FDR under dependence)
            - "bonferroni": Bonferroni (controls FWER)
        alpha: Significance threshold (only affects the unused reject flags).

    Returns:
        Array of adjusted p-values.

    Examples:
        >>> fdr_correction(np.array([0.01, 0.02, 0.03, 0.5]))
        array([0.04, 0.04, 0.04, 0.5 ])
    """
    from statsmodels.stats.multitest import multipletests

    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    method_map = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}
    _, adj_pvals[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        alpha=alpha,
        method=method_map.get(method, method),
    )

    return np.clip(adj_pvals, 0.0, 1.0)


def moderated_t_test(
    model_fit: LinearModelFit,
    moderated: ModeratedVariances,
    coefficient: int,
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    """
    Moderated t-statistics and two-sided p-values for one coefficient.

        t_g = β_gj / sqrt(s²_post,g × (X'W_gX)⁻¹_jj),   df = d_g + d0

    Args:
        model_fit: Per-feature fits
        moderated: Posterior variances from the Empirical Bayes stage
        coefficient: Column index of the coefficient of interest

    Returns:
        (log_fc, t, p_value) arrays in feature order
    """
    log_fc = model_fit.coefficients[:, coefficient]
    unscaled = model_fit.unscaled_variances[:, coefficient]

    se = np.sqrt(moderated.s2_post * unscaled)
    with np.errstate(divide='ignore', invalid='ignore'):
        t = np.where(se > 0, log_fc / se, 0.0)

    df_total = moderated.df_total
    finite_df = np.isfinite(df_total)
    p_value = np.empty_like(t)
    p_value[finite_df] = 2.0 * scipy_stats.t.sf(np.abs(t[finite_df]), df_total[finite_df])
    p_value[~finite_df] = 2.0 * scipy_stats.norm.sf(np.abs(t[~finite_df]))

    return log_fc, t, np.clip(p_value, 0.0, 1.0)


def rank_results(
    feature_ids: Sequence[str],
    log_fc: NDArray[np.float64],
    ave_expr: NDArray[np.float64],
    t: NDArray[np.float64],
    p_value: NDArray[np.float64],
    adj_p_value: NDArray[np.float64],
) -> list[ModeratedStatistics]:
    """
    Assemble per-feature statistics sorted ascending by raw p-value.

    Ties are broken by feature ID so the order is deterministic.
    """
    order = sorted(range(len(feature_ids)), key=lambda i: (p_value[i], str(feature_ids[i])))
    return [
        ModeratedStatistics(
            feature_id=str(feature_ids[i]),
            log_fc=float(log_fc[i]),
            ave_expr=float(ave_expr[i]),
            t=float(t[i]),
            p_value=float(p_value[i]),
            adj_p_value=float(adj_p_value[i]),
        )
        for i in order
    ]


def classify_features(table: pd.DataFrame, fdr: float = 0.05, lfc: float = 0.0) -> pd.Series:
    """
    Call each feature up (+1), down (−1) or not significant (0).

    A feature is called when adj.P.Val < fdr and |logFC| > lfc.

    Returns:
        Integer Series indexed by feature_id, in table order
    """
    if lfc < 0:
        raise ValueError(f"lfc must be non-negative, got {lfc}")

    significant = (table['adj.P.Val'] < fdr) & (table['logFC'].abs() > lfc)
    calls = np.where(significant, np.sign(table['logFC']), 0).astype(int)
    return pd.Series(calls, index=pd.Index(table['feature_id'], name='feature_id'), name='call')


def run_differential_expression(
    counts: CountMatrix,
    group_column: str = "group",
    baseline: str | None = None,
    covariates: Sequence[str] | None = None,
    intercept: bool = True,
    coefficient: str | int | None = None,
    min_cpm: float = 1.0,
    min_sample_fraction: float = 0.5,
    lowess_span: float = 0.5,
    n_jobs: int = 1,
) -> DifferentialResult:
    """
    Run the full voom / weighted least squares / moderated t pipeline.

    Args:
        counts: Raw counts with sample metadata
        group_column: Metadata column with the grouping label
        baseline: Reference group level
        covariates: Metadata columns to adjust for
        intercept: Include an intercept column
        coefficient: Design column to test (name, group level or index).
            Defaults to the first non-baseline group indicator.
        min_cpm: Expression filter CPM threshold
        min_sample_fraction: Expression filter minimum sample fraction
        lowess_span: Span of the voom mean-variance trend
        n_jobs: joblib workers for the per-feature fit

    Returns:
        DifferentialResult with the ranked table and intermediates

    Raises:
        ValidationError: Degenerate input (e.g., zero-total sample)
        InsufficientDataError: Too few features after filtering or for the trend
        DesignMatrixError: Rank-deficient design, missing labels, no residual df

    Examples:
        >>> result = run_differential_expression(counts, baseline="control")
        >>> table = result.to_dataframe()
        >>> table.head()
    """
    from rnaseqde.quality.filtering import filter_features

    # Build the design first: metadata errors surface before any numerics
    design = build_design_matrix(
        counts.sample_metadata,
        group_column=group_column,
        baseline=baseline,
        covariates=covariates,
        intercept=intercept,
    )
    coef_idx = design.coefficient_index(coefficient)
    coef_name = design.col_names[coef_idx]

    normalized = normalize_counts(counts)
    filtered = filter_features(
        counts, normalized, min_cpm=min_cpm, min_sample_fraction=min_sample_fraction
    )

    voom_result = voom(
        filtered.normalized.log_cpm,
        design,
        filtered.normalized.library_sizes,
        span=lowess_span,
        feature_ids=filtered.counts.feature_ids,
        sample_ids=filtered.counts.sample_ids,
    )

    model_fit = fit_linear_model(
        voom_result.log_cpm,
        design.X,
        voom_result.weights,
        feature_ids=filtered.counts.feature_ids,
        col_names=design.col_names,
        n_jobs=n_jobs,
    )

    moderated = moderate_variances(model_fit)

    log_fc, t, p_value = moderated_t_test(model_fit, moderated, coef_idx)
    adj_p_value = fdr_correction(p_value)

    statistics = rank_results(
        model_fit.feature_ids,
        log_fc,
        model_fit.average_expression,
        t,
        p_value,
        adj_p_value,
    )

    n_sig = int(np.sum(adj_p_value < 0.05))
    logger.info(
        f"Tested '{coef_name}' on {model_fit.n_features} features: "
        f"{n_sig} with adj.P.Val < 0.05"
    )

    return DifferentialResult(
        statistics=statistics,
        coefficient=coef_name,
        prior=moderated.prior,
        design=design,
        n_removed=filtered.n_removed,
        voom_result=voom_result,
        parameters={
            'group_column': group_column,
            'baseline': design.baseline,
            'covariates': list(covariates or []),
            'intercept': intercept,
            'coefficient': coef_name,
            'min_cpm': min_cpm,
            'min_sample_fraction': min_sample_fraction,
            'lowess_span': lowess_span,
        },
    )
