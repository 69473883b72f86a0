"""
Writers for differential expression and enrichment tables.

Both tables are written as plain CSV (no index column) so they load directly
in R, Excel or pandas. Parent directories are created as needed and existing
files are overwritten.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence, Union

import pandas as pd

from rnaseqde.stats.differential import RESULT_COLUMNS, DifferentialResult
from rnaseqde.validation.enrichment_tests import EnrichmentResult, results_to_dataframe

logger = logging.getLogger(__name__)

__all__ = ['write_results_table', 'write_enrichment_table']


def _prepare(path: Path) -> Path:
    if not isinstance(path, Path):
        path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def write_results_table(result: Union[DifferentialResult, pd.DataFrame], path: Path) -> Path:
    """
    Write the ranked results table.

    Columns: feature_id, logFC, AveExpr, t, P.Value, adj.P.Val

    Args:
        result: DifferentialResult or an already-rendered table
        path: Output CSV path

    Returns:
        The path written
    """
    table = result.to_dataframe() if isinstance(result, DifferentialResult) else result
    missing = [c for c in RESULT_COLUMNS if c not in table.columns]
    if missing:
        raise ValueError(f"Results table is missing columns: {missing}")

    path = _prepare(path)
    try:
        table.to_csv(path, index=False)
    except OSError as e:
        raise OSError(f"Failed to write results table {path}: {e}") from e

    logger.info(f"Wrote {len(table)} features to {path}")
    return path


def write_enrichment_table(
    results: Union[Sequence[EnrichmentResult], pd.DataFrame],
    path: Path,
) -> Path:
    """
    Write one enrichment table.

    Columns: set_id, set_size, overlap, p_value, expected, fold_enrichment,
    adj_p_value
    """
    table = results if isinstance(results, pd.DataFrame) else results_to_dataframe(results)

    path = _prepare(path)
    try:
        table.to_csv(path, index=False)
    except OSError as e:
        raise OSError(f"Failed to write enrichment table {path}: {e}") from e

    logger.info(f"Wrote {len(table)} gene sets to {path}")
    return path
