"""
Quality control for count matrices.

- ExpressionFilter / filter_features: remove low-expression features by CPM
"""

from rnaseqde.quality.filtering import (
    ExpressionFilter,
    FilterResult,
    compute_keep_mask,
    filter_features,
)

__all__ = [
    'ExpressionFilter',
    'FilterResult',
    'compute_keep_mask',
    'filter_features',
]
