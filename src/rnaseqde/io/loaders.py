"""
Loaders for count matrices, sample metadata and gene-set files.

Expected formats:
    Counts (CSV or TSV, optionally gzipped):
    ```
    feature_id,S1,S2,S3,S4
    ENSG00000000003,612,1056,733,901
    ENSG00000000005,0,1,0,3
    ```
    - First column: feature IDs (header may be empty)
    - Remaining columns: sample IDs with non-negative integer counts

    Sample metadata (CSV or TSV):
    ```
    sample_id,group,batch
    S1,control,A
    S2,treated,A
    ```
    - First column: sample IDs matching the count columns (any order)

    Gene sets (GMT): one set per line, tab-separated
    ```
    SET_ID<TAB>description<TAB>GENE1<TAB>GENE2...
    ```

The delimiter is chosen from the file suffix: .tsv/.tab/.txt → tab, otherwise
comma.

Examples:
    >>> from rnaseqde.io.loaders import load_counts, load_sample_metadata
    >>> metadata = load_sample_metadata(Path("samples.csv"))
    >>> counts = load_counts(Path("counts.tsv"), sample_metadata=metadata)
    >>> print(f"Loaded {counts.n_features} features x {counts.n_samples} samples")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from rnaseqde.core.countmatrix import CountMatrix
from rnaseqde.exceptions import ValidationError

logger = logging.getLogger(__name__)

__all__ = ['load_counts', 'load_sample_metadata', 'read_gmt']

_TAB_SUFFIXES = {'.tsv', '.tab', '.txt'}


def _delimiter_for(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes if s.lower() not in ('.gz', '.bz2', '.xz')]
    if suffixes and suffixes[-1] in _TAB_SUFFIXES:
        return '\t'
    return ','


def _check_file(path: Path) -> Path:
    if not isinstance(path, Path):
        path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")
    return path


def _read_table(path: Path) -> pd.DataFrame:
    try:
        df = pd.read_csv(path, sep=_delimiter_for(path), index_col=0)
    except pd.errors.EmptyDataError as e:
        raise ValidationError(f"File is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise ValidationError(f"Failed to parse {path}: {e}") from e

    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    return df


def load_counts(path: Path, sample_metadata: Optional[pd.DataFrame] = None) -> CountMatrix:
    """
    Load a feature × sample count matrix.

    Args:
        path: CSV/TSV file, first column feature IDs
        sample_metadata: Optional metadata indexed by sample ID, aligned to
            the count columns

    Returns:
        CountMatrix

    Raises:
        FileNotFoundError: If path does not exist
        ValidationError: If the table is empty, non-numeric, or not valid
            counts (negative, missing, non-integer, duplicate IDs)
    """
    path = _check_file(path)
    df = _read_table(path)

    if df.shape[0] == 0:
        raise ValidationError(f"Count table contains no features (rows): {path}")
    if df.shape[1] == 0:
        raise ValidationError(f"Count table contains no samples (columns): {path}")

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValidationError(
            f"Count table has non-numeric sample columns: {non_numeric[:5]}"
        )

    matrix = CountMatrix.from_dataframe(df, sample_metadata=sample_metadata)
    logger.info(f"Loaded counts from {path}: {matrix.n_features} features x {matrix.n_samples} samples")
    return matrix


def load_sample_metadata(path: Path) -> pd.DataFrame:
    """
    Load a sample annotation table indexed by sample ID.

    Raises:
        FileNotFoundError: If path does not exist
        ValidationError: If the table is empty or sample IDs repeat
    """
    path = _check_file(path)
    df = _read_table(path)

    if df.shape[0] == 0:
        raise ValidationError(f"Sample metadata contains no rows: {path}")
    if df.index.has_duplicates:
        dupes = df.index[df.index.duplicated()].unique().tolist()[:5]
        raise ValidationError(f"Sample metadata has duplicate sample IDs: {dupes}")

    df.index.name = 'sample_id'
    return df


def read_gmt(path: Path) -> Dict[str, List[str]]:
    """
    Parse a GMT gene-set file.

    Blank lines are skipped. Lines with fewer than three tab-separated fields
    (ID, description, at least one gene) are rejected.

    Returns:
        set_id → member genes, in file order (duplicate genes removed)

    Raises:
        ValidationError: On malformed lines or repeated set IDs
    """
    path = _check_file(path)
    gene_sets: Dict[str, List[str]] = {}

    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, start=1):
            line = line.rstrip('\r\n')
            if not line.strip():
                continue
            fields = line.split('\t')
            if len(fields) < 3:
                raise ValidationError(
                    f"{path}:{line_no}: expected 'id<TAB>description<TAB>genes...', "
                    f"got {len(fields)} field(s)"
                )
            set_id = fields[0].strip()
            if set_id in gene_sets:
                raise ValidationError(f"{path}:{line_no}: duplicate gene set ID '{set_id}'")
            genes = [g.strip() for g in fields[2:] if g.strip()]
            gene_sets[set_id] = list(dict.fromkeys(genes))

    logger.info(f"Read {len(gene_sets)} gene sets from {path}")
    return gene_sets
