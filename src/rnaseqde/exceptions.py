"""
Error kinds raised by the differential expression pipeline.

Every stage raises immediately when it cannot produce a complete result;
nothing downstream runs on partial output.

    ValidationError        malformed or degenerate input (zero-total sample,
                           negative counts, metadata/matrix mismatch)
    InsufficientDataError  too few features survive filtering, or too few to
                           fit the mean-variance trend / variance prior
    DesignMatrixError      rank-deficient design, missing group labels,
                           non-positive residual degrees of freedom
    EnrichmentError        empty universe or a gene set with no tested members
    AnnotationLookupError  external annotation service failed after retries
"""

from __future__ import annotations

__all__ = [
    'RnaSeqDEError',
    'ValidationError',
    'InsufficientDataError',
    'DesignMatrixError',
    'EnrichmentError',
    'AnnotationLookupError',
]


class RnaSeqDEError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(RnaSeqDEError, ValueError):
    """Input data is malformed or degenerate."""


class InsufficientDataError(RnaSeqDEError):
    """Not enough features remain to carry out a stage."""


class DesignMatrixError(RnaSeqDEError, ValueError):
    """Design matrix cannot support the requested linear model."""


class EnrichmentError(RnaSeqDEError):
    """Over-representation test cannot be computed."""


class AnnotationLookupError(RnaSeqDEError):
    """Gene-set annotation lookup failed after all retries."""
