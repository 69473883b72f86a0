"""
Statistical core of the voom / limma-style differential expression workflow.

Exports:
- Library-size normalization (CPM, logCPM)
- Design matrix construction
- voom precision weights
- Per-feature weighted least squares
- Empirical Bayes variance moderation
- Moderated t-tests, FDR correction and ranked results
"""

from .normalization import NormalizedExpression, cpm, log_cpm, normalize_counts
from .design_matrix import Design, build_design_matrix
from .voom import VoomResult, voom
from .linear_model import FeatureFit, LinearModelFit, fit_feature, fit_linear_model
from .empirical_bayes import (
    EmpiricalBayesPrior,
    ModeratedVariances,
    fit_f_dist,
    squeeze_var,
    moderate_variances,
)
from .differential import (
    ModeratedStatistics,
    DifferentialResult,
    fdr_correction,
    moderated_t_test,
    rank_results,
    classify_features,
    run_differential_expression,
)

__all__ = [
    "NormalizedExpression",
    "cpm",
    "log_cpm",
    "normalize_counts",
    "Design",
    "build_design_matrix",
    "VoomResult",
    "voom",
    "FeatureFit",
    "LinearModelFit",
    "fit_feature",
    "fit_linear_model",
    "EmpiricalBayesPrior",
    "ModeratedVariances",
    "fit_f_dist",
    "squeeze_var",
    "moderate_variances",
    "ModeratedStatistics",
    "DifferentialResult",
    "fdr_correction",
    "moderated_t_test",
    "rank_results",
    "classify_features",
    "run_differential_expression",
]
