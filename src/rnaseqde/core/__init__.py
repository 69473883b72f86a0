"""
Core data structures for the differential expression pipeline.

1. CountMatrix: feature × sample counts with aligned sample metadata
2. Transform: abstract base class for immutable matrix transformations

Design Philosophy:
    - Immutability: all operations return new instances
    - Alignment: sample metadata always follows the count columns
"""

from rnaseqde.core.countmatrix import CountMatrix
from rnaseqde.core.transform import Transform

__all__ = [
    'CountMatrix',
    'Transform',
]
