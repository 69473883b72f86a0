"""
Gene-set enrichment of differential expression results.

Modules:
    annotation_providers: Gene → gene-set lookups (GMT file, mygene.info)
    enrichment_tests: Hypergeometric over-representation with FDR correction

Examples:
    >>> from rnaseqde.validation import StaticGeneSetResolver, build_gene_sets
    >>> from rnaseqde.validation import run_directional_enrichment
    >>>
    >>> membership = StaticGeneSetResolver.from_gmt(Path("sets.gmt")).resolve(table['feature_id'])
    >>> gene_sets, universe = build_gene_sets(membership, table['feature_id'])
    >>> results = run_directional_enrichment(table, gene_sets, universe)
"""

from rnaseqde.validation.annotation_providers import (
    GeneSetResolver,
    StaticGeneSetResolver,
    MyGeneSetResolver,
    resolver_from_config,
)
from rnaseqde.validation.enrichment_tests import (
    GeneSet,
    EnrichmentResult,
    HypergeometricTest,
    select_query_genes,
    build_gene_sets,
    run_enrichment,
    run_directional_enrichment,
    results_to_dataframe,
)

__all__ = [
    'GeneSetResolver',
    'StaticGeneSetResolver',
    'MyGeneSetResolver',
    'resolver_from_config',
    'GeneSet',
    'EnrichmentResult',
    'HypergeometricTest',
    'select_query_genes',
    'build_gene_sets',
    'run_enrichment',
    'run_directional_enrichment',
    'results_to_dataframe',
]
