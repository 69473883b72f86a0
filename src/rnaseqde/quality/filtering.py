"""
Low-expression filtering for count matrices.

A feature is kept when it is expressed (CPM strictly above `min_cpm`) in at
least ceil(min_sample_fraction × n_samples) samples. Features with too few
reads carry almost no information about differential expression and distort
the mean-variance trend, so they are removed before modelling.

Engineering Design:
    - Pure functions: input matrices are never modified, a boolean keep-mask
      selects rows into new matrices
    - Row order of the kept features is the original row order
    - Idempotent: re-filtering a filtered matrix with the same parameters
      removes nothing (CPM can only rise when rows are removed)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict

import numpy as np
from numpy.typing import NDArray

from rnaseqde.core.countmatrix import CountMatrix
from rnaseqde.core.transform import Transform
from rnaseqde.exceptions import InsufficientDataError, ValidationError
from rnaseqde.stats.normalization import NormalizedExpression, normalize_counts

logger = logging.getLogger(__name__)

__all__ = ['ExpressionFilter', 'FilterResult', 'compute_keep_mask', 'filter_features']


@dataclass(frozen=True)
class FilterResult:
    """Filtered counts and expression with provenance.

    Attributes:
        counts: Filtered CountMatrix
        normalized: Filtered CPM / logCPM (library sizes from the unfiltered data)
        keep_mask: Boolean mask over the input features
        n_removed: Number of features removed
        parameters: Filter parameters used
    """
    counts: CountMatrix
    normalized: NormalizedExpression
    keep_mask: NDArray[np.bool_]
    n_removed: int
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_kept(self) -> int:
        return int(self.keep_mask.sum())


def _check_params(min_cpm: float, min_sample_fraction: float) -> None:
    if min_cpm < 0:
        raise ValueError(f"min_cpm must be non-negative, got {min_cpm}")
    if not 0 < min_sample_fraction <= 1:
        raise ValueError(
            f"min_sample_fraction must be in (0, 1], got {min_sample_fraction}"
        )


def compute_keep_mask(
    cpm: NDArray[np.float64],
    min_cpm: float = 1.0,
    min_sample_fraction: float = 0.5,
) -> NDArray[np.bool_]:
    """
    Core filtering rule: which features to keep.

    Args:
        cpm: Counts per million (features × samples)
        min_cpm: A sample "expresses" a feature when CPM > min_cpm
        min_sample_fraction: Fraction of samples that must express the feature

    Returns:
        Boolean keep-mask over features
    """
    _check_params(min_cpm, min_sample_fraction)

    n_samples = cpm.shape[1]
    # Round before ceil so that e.g. 0.3 × 10 counts as 3, not 4
    thresh_samples = max(1, math.ceil(round(min_sample_fraction * n_samples, 9)))
    expressed_in_samples = (cpm > min_cpm).sum(axis=1)

    return expressed_in_samples >= thresh_samples


def filter_features(
    counts: CountMatrix,
    normalized: NormalizedExpression | None = None,
    min_cpm: float = 1.0,
    min_sample_fraction: float = 0.5,
) -> FilterResult:
    """
    Remove low-expression features.

    Args:
        counts: Raw counts
        normalized: CPM/logCPM of `counts`. Computed if None.
        min_cpm: CPM threshold (default 1.0)
        min_sample_fraction: Minimum fraction of samples above threshold

    Returns:
        FilterResult with new (smaller) matrices and the number removed

    Raises:
        InsufficientDataError: If no feature passes the filter
        ValueError: If parameters are out of range

    Examples:
        >>> result = filter_features(counts, min_cpm=1.0, min_sample_fraction=0.25)
        >>> print(f"Removed {result.n_removed} low-count features")
    """
    if normalized is None:
        normalized = normalize_counts(counts)

    if normalized.shape != counts.shape:
        raise ValueError(
            f"normalized shape {normalized.shape} does not match counts shape {counts.shape}"
        )

    keep_mask = compute_keep_mask(normalized.cpm, min_cpm, min_sample_fraction)
    n_kept = int(keep_mask.sum())
    n_removed = counts.n_features - n_kept

    logger.info(
        f"Expression filter (CPM > {min_cpm} in >= {min_sample_fraction:.0%} of samples): "
        f"kept {n_kept}/{counts.n_features} features, removed {n_removed}"
    )

    if n_kept == 0:
        raise InsufficientDataError(
            f"No features pass the expression filter (min_cpm={min_cpm}, "
            f"min_sample_fraction={min_sample_fraction}) out of {counts.n_features}"
        )

    return FilterResult(
        counts=counts.select_features(keep_mask),
        normalized=normalized.select_features(keep_mask),
        keep_mask=keep_mask,
        n_removed=n_removed,
        parameters={"min_cpm": min_cpm, "min_sample_fraction": min_sample_fraction},
    )


class ExpressionFilter(Transform):
    """
    Transform form of the CPM filter, for composing with other transforms.

    CPM is recomputed from the matrix passed to apply().

    Examples:
        >>> expression_filter = ExpressionFilter(min_cpm=1.0, min_sample_fraction=0.5)
        >>> filtered = expression_filter.apply(counts)
    """

    def __init__(self, min_cpm: float = 1.0, min_sample_fraction: float = 0.5):
        _check_params(min_cpm, min_sample_fraction)
        super().__init__(
            name="ExpressionFilter",
            params={"min_cpm": min_cpm, "min_sample_fraction": min_sample_fraction},
        )
        self.min_cpm = min_cpm
        self.min_sample_fraction = min_sample_fraction

    def validate(self, matrix: CountMatrix) -> list[str]:
        errors = super().validate(matrix)
        if matrix.n_samples > 0 and np.any(matrix.library_sizes == 0):
            errors.append("Samples with zero total count have no CPM")
        return errors

    def apply(self, matrix: CountMatrix) -> CountMatrix:
        errors = self.validate(matrix)
        if errors:
            raise ValidationError(f"{self.name}: " + "; ".join(errors))
        return filter_features(
            matrix,
            min_cpm=self.min_cpm,
            min_sample_fraction=self.min_sample_fraction,
        ).counts
