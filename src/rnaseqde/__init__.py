"""
rnaseqde - Differential expression analysis for RNA-seq count data

A voom / limma-style pipeline: library-size normalization, low-expression
filtering, precision weights from the mean-variance trend, per-gene weighted
linear models, Empirical Bayes variance moderation, moderated t-tests with
Benjamini-Hochberg FDR control, and hypergeometric gene-set enrichment.
"""

__version__ = "0.1.0"

from rnaseqde.core.countmatrix import CountMatrix
from rnaseqde.core.transform import Transform

__all__ = [
    "CountMatrix",
    "Transform",
]
