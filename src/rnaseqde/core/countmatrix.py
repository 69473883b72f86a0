"""
Core data structure for RNA-seq count matrices.

CountMatrix couples the raw feature-by-sample counts with the sample
annotations (group label, covariates) that the design matrix is built from.

Biological Context:
    Differential expression starts from an already-assembled count table:
    - Rows = features (genes, transcripts)
    - Columns = samples (libraries)
    - Values = non-negative integer read counts

    Sample metadata (condition, batch, sex, ...) must line up with the columns
    exactly, otherwise the linear model silently compares the wrong libraries.

Engineering Design:
    - Immutable: subsetting returns new instances, inputs are never modified
    - Validated: constructor rejects negative, missing or non-integer counts
    - Aligned: metadata is reordered to the column order of the counts
    - Row order is stable through every downstream transform

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from rnaseqde.core.countmatrix import CountMatrix
    >>>
    >>> counts = np.array([[10, 20], [30, 40]])
    >>> matrix = CountMatrix(
    ...     data=counts,
    ...     feature_ids=pd.Index(["ENSG001", "ENSG002"]),
    ...     sample_ids=pd.Index(["S1", "S2"]),
    ...     sample_metadata=pd.DataFrame({'group': ['ctrl', 'trt']}, index=['S1', 'S2']),
    ... )
    >>> matrix.library_sizes
    array([40., 60.])
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd

from rnaseqde.exceptions import ValidationError

__all__ = ['CountMatrix']


class CountMatrix:
    """
    Immutable container for a count matrix and its aligned sample metadata.

    Attributes:
        data: Count matrix (features × samples), float64 holding integer values
        feature_ids: Row identifiers (e.g., Ensembl gene IDs)
        sample_ids: Column identifiers
        sample_metadata: Sample annotations indexed by sample ID, same order
            as the columns

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - sample_metadata.index equals sample_ids
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: Optional[pd.DataFrame] = None,
    ):
        """
        Initialize CountMatrix with validation.

        Args:
            data: Counts (features × samples). Must be finite, non-negative
                and integer-valued.
            feature_ids: Row identifiers, unique
            sample_ids: Column identifiers, unique
            sample_metadata: Per-sample annotations keyed by sample ID. Rows
                are reordered to match sample_ids. If None, an empty frame
                indexed by sample_ids is used.

        Raises:
            ValidationError: If shapes disagree, IDs are duplicated, counts are
                negative/missing/non-integer, or metadata does not cover
                exactly the sample IDs.
        """
        if not isinstance(feature_ids, pd.Index):
            feature_ids = pd.Index(feature_ids)
        if not isinstance(sample_ids, pd.Index):
            sample_ids = pd.Index(sample_ids)

        data = np.array(data, dtype=np.float64)
        if data.ndim != 2:
            raise ValidationError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape
        if len(feature_ids) != n_features:
            raise ValidationError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValidationError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if feature_ids.has_duplicates:
            dupes = feature_ids[feature_ids.duplicated()].unique().tolist()[:5]
            raise ValidationError(f"Duplicate feature IDs: {dupes}")
        if sample_ids.has_duplicates:
            dupes = sample_ids[sample_ids.duplicated()].unique().tolist()[:5]
            raise ValidationError(f"Duplicate sample IDs: {dupes}")

        # Count validation
        if not np.all(np.isfinite(data)):
            raise ValidationError(
                f"Counts contain {int(np.sum(~np.isfinite(data)))} missing or infinite values"
            )
        if np.any(data < 0):
            raise ValidationError(
                f"Counts contain {int(np.sum(data < 0))} negative values"
            )
        if not np.all(data == np.round(data)):
            raise ValidationError("Counts must be integer-valued")

        sample_metadata = self._align_metadata(sample_metadata, sample_ids)

        self._data = data
        self._data.setflags(write=False)
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata

    @staticmethod
    def _align_metadata(
        sample_metadata: Optional[pd.DataFrame],
        sample_ids: pd.Index,
    ) -> pd.DataFrame:
        """Reorder metadata rows to the column order of the counts."""
        if sample_metadata is None:
            return pd.DataFrame(index=sample_ids.copy())

        if not isinstance(sample_metadata, pd.DataFrame):
            raise ValidationError(
                f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}"
            )
        if sample_metadata.index.has_duplicates:
            raise ValidationError("sample_metadata has duplicate sample IDs")

        missing = sample_ids.difference(sample_metadata.index)
        extra = sample_metadata.index.difference(sample_ids)
        if len(missing) or len(extra):
            raise ValidationError(
                f"sample_metadata must have exactly one row per count column: "
                f"{len(missing)} samples missing metadata {list(missing[:5])}, "
                f"{len(extra)} metadata rows without counts {list(extra[:5])}"
            )

        return sample_metadata.loc[sample_ids].copy()

    @property
    def data(self) -> np.ndarray:
        """Count matrix (features × samples), read-only."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        return self._sample_metadata

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @property
    def library_sizes(self) -> np.ndarray:
        """Total counts per sample."""
        return self._data.sum(axis=0)

    def select_features(self, mask: np.ndarray | pd.Series) -> CountMatrix:
        """
        Subset matrix by features (rows), preserving row order.

        Args:
            mask: Boolean array/Series indicating which features to keep.
                If Series, uses values and ignores index.

        Returns:
            New CountMatrix with selected features

        Raises:
            ValueError: If mask length doesn't match n_features

        Examples:
            >>> keep = matrix.data.sum(axis=1) > 0
            >>> expressed = matrix.select_features(keep)
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return CountMatrix(
            data=self._data[mask, :].copy(),
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """Counts as a DataFrame (features × samples)."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    @classmethod
    def from_dataframe(
        cls,
        counts: pd.DataFrame,
        sample_metadata: Optional[pd.DataFrame] = None,
    ) -> CountMatrix:
        """Build from a features × samples DataFrame."""
        return cls(
            data=counts.to_numpy(dtype=np.float64),
            feature_ids=pd.Index(counts.index.astype(str)),
            sample_ids=pd.Index(counts.columns.astype(str)),
            sample_metadata=sample_metadata,
        )

    def __repr__(self) -> str:
        if self.n_features == 0 or self.n_samples == 0:
            return f"CountMatrix({self.n_features} features × {self.n_samples} samples)"
        return (
            f"CountMatrix({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}"
        )

    def __str__(self) -> str:
        return self.__repr__()
