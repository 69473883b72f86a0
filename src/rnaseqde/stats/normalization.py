"""
Library-size normalization for RNA-seq counts.

Counts per million (CPM) rescale each sample by its total count so that
libraries sequenced to different depths become comparable:

    CPM[g, s]    = counts[g, s] / sum_g counts[g, s] × 10^6
    logCPM[g, s] = log2(CPM[g, s] + 1)

Each column of the CPM matrix sums to exactly 10^6 (up to rounding). The
transform is pure: output has the same shape, feature order and sample order
as the input.

References:
    - Robinson et al. (2010) Bioinformatics 26(1):139-140 (edgeR)
    - Law et al. (2014) Genome Biology 15:R29 (voom)
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from rnaseqde.core.countmatrix import CountMatrix
from rnaseqde.exceptions import ValidationError

__all__ = [
    'NormalizedExpression',
    'cpm',
    'log_cpm',
    'normalize_counts',
]

CPM_SCALE = 1e6


@dataclass(frozen=True)
class NormalizedExpression:
    """Library-size normalized expression for one count matrix.

    Attributes:
        cpm: Counts per million (features × samples)
        log_cpm: log2(CPM + 1) (features × samples)
        library_sizes: Total counts per sample
        feature_ids: Row identifiers, same order as the source counts
        sample_ids: Column identifiers, same order as the source counts
    """

    cpm: NDArray[np.float64]
    log_cpm: NDArray[np.float64]
    library_sizes: NDArray[np.float64]
    feature_ids: pd.Index
    sample_ids: pd.Index

    @property
    def shape(self) -> tuple[int, int]:
        return self.cpm.shape

    def select_features(self, mask: NDArray[np.bool_]) -> NormalizedExpression:
        """Subset rows, keeping the original library sizes."""
        return NormalizedExpression(
            cpm=self.cpm[mask, :].copy(),
            log_cpm=self.log_cpm[mask, :].copy(),
            library_sizes=self.library_sizes.copy(),
            feature_ids=self.feature_ids[mask],
            sample_ids=self.sample_ids,
        )


def _library_sizes(counts: NDArray[np.float64], sample_ids=None) -> NDArray[np.float64]:
    library_sizes = counts.sum(axis=0).astype(np.float64)
    zero = library_sizes == 0
    if np.any(zero):
        if sample_ids is not None:
            names = list(np.asarray(sample_ids)[zero][:5])
        else:
            names = list(np.flatnonzero(zero)[:5])
        raise ValidationError(
            f"{int(zero.sum())} sample(s) have zero total count; CPM is undefined: {names}"
        )
    return library_sizes


def cpm(counts: NDArray[np.float64], library_sizes: NDArray[np.float64] | None = None) -> NDArray[np.float64]:
    """
    Counts per million.

    Args:
        counts: Raw counts (features × samples)
        library_sizes: Per-sample totals. Computed from counts if None.

    Returns:
        CPM matrix with the same shape as counts

    Raises:
        ValidationError: If any sample has a zero total count
    """
    counts = np.asarray(counts, dtype=np.float64)
    if library_sizes is None:
        library_sizes = _library_sizes(counts)
    return counts / library_sizes[None, :] * CPM_SCALE


def log_cpm(counts: NDArray[np.float64], library_sizes: NDArray[np.float64] | None = None) -> NDArray[np.float64]:
    """log2(CPM + 1)."""
    return np.log2(cpm(counts, library_sizes) + 1.0)


def normalize_counts(matrix: CountMatrix) -> NormalizedExpression:
    """
    Convert a CountMatrix to CPM and log2(CPM + 1).

    Args:
        matrix: Raw counts

    Returns:
        NormalizedExpression aligned to the input rows and columns

    Raises:
        ValidationError: If any sample has a zero total count

    Examples:
        >>> norm = normalize_counts(counts)
        >>> np.allclose(norm.cpm.sum(axis=0), 1e6)
        True
    """
    library_sizes = _library_sizes(matrix.data, matrix.sample_ids)
    values = cpm(matrix.data, library_sizes)

    return NormalizedExpression(
        cpm=values,
        log_cpm=np.log2(values + 1.0),
        library_sizes=library_sizes,
        feature_ids=matrix.feature_ids,
        sample_ids=matrix.sample_ids,
    )
