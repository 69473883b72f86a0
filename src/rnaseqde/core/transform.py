"""
Base transformation framework for immutable count-matrix operations.

Every preprocessing step (filtering, subsetting) is a pure function of its
input: it returns a new CountMatrix and never reassigns or mutates the one it
was given. Chaining transforms therefore yields an explicit sequence of
independent matrices rather than one "current" matrix overwritten in place.

Examples:
    >>> from rnaseqde.core.transform import Transform
    >>>
    >>> class DropZeroRows(Transform):
    ...     def __init__(self):
    ...         super().__init__(name="DropZeroRows", params={})
    ...
    ...     def apply(self, matrix):
    ...         return matrix.select_features(matrix.data.sum(axis=1) > 0)
    >>>
    >>> filtered = DropZeroRows().apply(counts)   # counts is unchanged
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from rnaseqde.core.countmatrix import CountMatrix

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all count-matrix transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "ExpressionFilter")
        params: Parameters used for this transformation (JSON-serializable,
            recorded in run summaries)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params

    @abstractmethod
    def apply(self, matrix: CountMatrix) -> CountMatrix:
        """
        Execute transformation and return a new matrix.

        Must never modify the input matrix.

        Args:
            matrix: Input CountMatrix

        Returns:
            New CountMatrix with transformation applied
        """

    def validate(self, matrix: CountMatrix) -> list[str]:
        """
        Check preconditions before applying transformation.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.data.size == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def __repr__(self) -> str:
        """
        String representation for logging.

        Examples:
            >>> print(ExpressionFilter(min_cpm=1.0, min_sample_fraction=0.5))
            ExpressionFilter(min_cpm=1.0, min_sample_fraction=0.5)
        """
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
