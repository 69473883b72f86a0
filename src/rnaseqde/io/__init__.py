"""
I/O for count matrices, sample metadata, gene sets and result tables.

Key Functions:
    - load_counts: Count matrix from CSV/TSV into a CountMatrix
    - load_sample_metadata: Sample annotations indexed by sample ID
    - read_gmt: Gene sets from a GMT file
    - write_results_table: Ranked differential expression table
    - write_enrichment_table: Gene-set enrichment table

Examples:
    >>> from rnaseqde.io import load_counts, load_sample_metadata, write_results_table
    >>> metadata = load_sample_metadata(Path("samples.csv"))
    >>> counts = load_counts(Path("counts.csv"), sample_metadata=metadata)
"""

from rnaseqde.io.loaders import load_counts, load_sample_metadata, read_gmt
from rnaseqde.io.writers import write_results_table, write_enrichment_table

__all__ = [
    'load_counts',
    'load_sample_metadata',
    'read_gmt',
    'write_results_table',
    'write_enrichment_table',
]
