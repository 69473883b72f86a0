"""
CLI for gene-level differential expression of RNA-seq counts.

Runs the voom / limma-style pipeline:
- CPM normalization and low-expression filtering
- Design matrix from sample metadata (group + covariates)
- voom precision weights and per-gene weighted least squares
- Empirical Bayes variance moderation and moderated t-tests
- Benjamini-Hochberg FDR control
- Optional hypergeometric gene-set enrichment of up/down genes

Outputs (in --output):
    results.csv           ranked table (feature_id, logFC, AveExpr, t, P.Value, adj.P.Val)
    enrichment_up.csv     gene sets over-represented among up-regulated genes
    enrichment_down.csv   gene sets over-represented among down-regulated genes
    run_summary.json      parameters, filter/prior statistics, call counts

Usage:
    rnaseqde differential \\
        --counts data/counts.tsv \\
        --metadata data/samples.csv \\
        --output results/ \\
        --group-column condition \\
        --baseline control \\
        --gene-sets genesets/hallmark.gmt
"""

from __future__ import annotations

import argparse
import json
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rnaseqde.cli._validators import (
    _fraction,
    _non_negative_float,
    _non_negative_int,
    _positive_float,
    _positive_int,
)
from rnaseqde.exceptions import RnaSeqDEError

logger = logging.getLogger(__name__)


def setup_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the differential subcommand to the parser."""
    parser = subparsers.add_parser(
        "differential",
        help="Gene-level differential expression (voom + moderated t)",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Input / output (may also come from --config)
    parser.add_argument(
        "--counts", "-c",
        type=Path,
        default=None,
        help="Count matrix CSV/TSV (features × samples, first column = feature ID)",
    )
    parser.add_argument(
        "--metadata", "-m",
        type=Path,
        default=None,
        help="Sample metadata CSV/TSV (first column = sample ID)",
    )
    parser.add_argument(
        "--output", "-o",
        type=Path,
        default=None,
        help="Output directory for results",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML/JSON config file; explicit CLI flags override its values",
    )

    # Filter
    parser.add_argument(
        "--min-cpm",
        type=_non_negative_float,
        default=1.0,
        help="Feature is expressed in a sample when CPM > this value (default: 1.0)",
    )
    parser.add_argument(
        "--min-sample-fraction",
        type=_fraction,
        default=0.5,
        help="Minimum fraction of samples in which a feature must be expressed (default: 0.5)",
    )

    # Model
    parser.add_argument(
        "--group-column",
        default="group",
        help="Metadata column holding the group label (default: group)",
    )
    parser.add_argument(
        "--baseline",
        default=None,
        help="Reference group level (default: first level in sorted order)",
    )
    parser.add_argument(
        "--covariates",
        nargs="+",
        default=None,
        help="Metadata columns to adjust for",
    )
    parser.add_argument(
        "--coefficient",
        default=None,
        help="Design column or group level to test "
             "(default: first non-baseline group)",
    )
    parser.add_argument(
        "--no-intercept",
        action="store_true",
        help="Cell-means design (one indicator per group level)",
    )
    parser.add_argument(
        "--lowess-span",
        type=_fraction,
        default=0.5,
        help="LOWESS span for the voom mean-variance trend (default: 0.5)",
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=1,
        help="Parallel workers for per-gene model fits (-1 = all cores, default: 1)",
    )

    # Significance
    parser.add_argument(
        "--fdr",
        type=_fraction,
        default=0.05,
        help="Adjusted p-value cutoff for calling genes (default: 0.05)",
    )
    parser.add_argument(
        "--lfc",
        type=_non_negative_float,
        default=1.0,
        help="|log2 fold change| cutoff for calling genes (default: 1.0)",
    )

    # Enrichment
    parser.add_argument(
        "--gene-sets", "-g",
        type=Path,
        default=None,
        help="GMT file of gene sets for enrichment of up/down genes",
    )
    parser.add_argument(
        "--use-mygene",
        action="store_true",
        help="Fetch GO/KEGG gene sets from mygene.info when --gene-sets is not given",
    )
    parser.add_argument(
        "--species",
        default="human",
        help="Species for mygene.info lookups (default: human)",
    )
    parser.add_argument(
        "--min-set-size",
        type=_positive_int,
        default=1,
        help="Skip gene sets with fewer tested members (default: 1)",
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=1000,
        help="Genes per mygene.info request (default: 1000)",
    )
    parser.add_argument(
        "--max-workers",
        type=_positive_int,
        default=4,
        help="Concurrent mygene.info requests (default: 4)",
    )
    parser.add_argument(
        "--max-retries",
        type=_non_negative_int,
        default=2,
        help="Retries per mygene.info batch on transient errors (default: 2)",
    )
    parser.add_argument(
        "--timeout",
        type=_positive_float,
        default=30.0,
        help="Seconds to wait for each mygene.info batch (default: 30)",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Debug logging",
    )

    parser.set_defaults(func=run_differential)


def _json_float(value: float) -> Optional[float]:
    """Non-finite floats are not valid JSON."""
    if value is None or not math.isfinite(value):
        return None
    return float(value)


def _run_enrichment_stage(table, config, output_dir: Path) -> Dict[str, Any]:
    """Resolve gene sets and test up/down genes. Raises RnaSeqDEError on failure."""
    from rnaseqde.io.writers import write_enrichment_table
    from rnaseqde.validation import (
        build_gene_sets,
        resolver_from_config,
        run_directional_enrichment,
    )

    enr = config.enrichment
    resolver = resolver_from_config(
        gene_sets=enr.gene_sets,
        use_mygene=enr.use_mygene,
        batch_size=enr.batch_size,
        max_workers=enr.max_workers,
        max_retries=enr.max_retries,
        timeout=enr.timeout,
        species=enr.species,
    )
    if resolver is None:
        return {'status': 'skipped'}

    tested = table['feature_id'].tolist()
    membership = resolver.resolve(tested)
    gene_sets, universe = build_gene_sets(membership, tested, min_set_size=enr.min_set_size)

    by_direction = run_directional_enrichment(
        table,
        gene_sets,
        universe,
        fdr=config.significance.fdr,
        lfc=config.significance.lfc,
    )

    summary: Dict[str, Any] = {
        'status': 'completed',
        'universe_size': len(universe),
        'n_gene_sets': len(gene_sets),
    }
    for direction, results in by_direction.items():
        path = write_enrichment_table(results, output_dir / f"enrichment_{direction}.csv")
        n_sig = sum(1 for r in results if r.adj_p_value < config.significance.fdr)
        summary[direction] = {'file': path.name, 'n_significant_sets': n_sig}
        print(f"  {direction:>4}: {n_sig} gene sets with adj. p < {config.significance.fdr}")

    return summary


def run_differential(args: argparse.Namespace) -> int:
    """Execute differential expression analysis."""
    from rnaseqde.cli.config import (
        AnalysisConfig,
        load_config,
        merge_config_with_args,
        validate_config,
    )
    from rnaseqde.io.loaders import load_counts, load_sample_metadata
    from rnaseqde.io.writers import write_results_table
    from rnaseqde.stats.differential import classify_features, run_differential_expression

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Load and merge config file if provided
    if args.config:
        print(f"Loading configuration from: {args.config}")
        try:
            config = load_config(args.config)
            validate_config(config)
            cli_args: List[str] = getattr(args, '_cli_args', None) or []
            args = merge_config_with_args(config, args, cli_args)
        except (FileNotFoundError, ValueError) as e:
            print(f"ERROR: Config file error: {e}")
            return 1

    # Validate required arguments (after config merge)
    for name in ('counts', 'metadata', 'output'):
        if getattr(args, name) is None:
            print(f"ERROR: --{name} is required (via CLI or config file)")
            return 1

    config = AnalysisConfig.from_args(args)
    try:
        validate_config(config)
    except ValueError as e:
        print(f"ERROR: Invalid parameters: {e}")
        return 1

    print("=" * 70)
    print("  RNA-seq Differential Expression (voom + moderated t)")
    print("=" * 70)
    started = datetime.now()
    print(f"Started: {started.strftime('%Y-%m-%d %H:%M:%S')}")
    print()

    output_dir = Path(config.output)
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"ERROR: Cannot create output directory {output_dir}: {e}")
        return 1

    model = config.model
    try:
        print(f"Loading metadata: {config.metadata}")
        metadata = load_sample_metadata(config.metadata)
        print(f"Loading counts: {config.counts}")
        counts = load_counts(config.counts, sample_metadata=metadata)
        print(f"  {counts.n_features} features × {counts.n_samples} samples")

        result = run_differential_expression(
            counts,
            group_column=model.group_column,
            baseline=model.baseline,
            covariates=model.covariates,
            intercept=model.intercept,
            coefficient=model.coefficient,
            min_cpm=config.filter.min_cpm,
            min_sample_fraction=config.filter.min_sample_fraction,
            lowess_span=model.lowess_span,
            n_jobs=model.n_jobs,
        )
    except FileNotFoundError as e:
        logger.error(str(e))
        print(f"ERROR: {e}")
        return 1
    except RnaSeqDEError as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"ERROR: {type(e).__name__}: {e}")
        return 1

    table = result.to_dataframe()
    try:
        results_path = write_results_table(table, output_dir / "results.csv")
    except OSError as e:
        logger.error(str(e))
        print(f"ERROR: {e}")
        return 1

    calls = classify_features(table, fdr=config.significance.fdr, lfc=config.significance.lfc)
    n_up = int((calls == 1).sum())
    n_down = int((calls == -1).sum())

    print()
    print(f"Tested coefficient: {result.coefficient}")
    print(f"  Features tested: {len(table)} ({result.n_removed} removed by filter)")
    print(f"  Prior df: {result.prior.df_prior:.2f}, prior variance: {result.prior.s2_prior:.4g}")
    print(f"  Up: {n_up}, Down: {n_down} "
          f"(adj. p < {config.significance.fdr}, |logFC| > {config.significance.lfc})")
    print(f"  Results: {results_path}")

    # Enrichment failures do not affect the table already written
    exit_code = 0
    print()
    print("Gene-set enrichment")
    try:
        enrichment_summary = _run_enrichment_stage(table, config, output_dir)
        if enrichment_summary['status'] == 'skipped':
            print("  Skipped (no --gene-sets and --use-mygene not set)")
    except (RnaSeqDEError, OSError) as e:
        logger.error(f"Enrichment failed: {type(e).__name__}: {e}")
        print(f"  ERROR: {type(e).__name__}: {e}")
        enrichment_summary = {'status': 'failed', 'error': f"{type(e).__name__}: {e}"}
        exit_code = 1

    summary = {
        'started': started.isoformat(timespec='seconds'),
        'finished': datetime.now().isoformat(timespec='seconds'),
        'config': config.to_dict(),
        'coefficient': result.coefficient,
        'design_columns': list(result.design.col_names),
        'n_samples': counts.n_samples,
        'n_features_input': counts.n_features,
        'n_features_tested': len(table),
        'n_features_removed': result.n_removed,
        'prior': {
            'df_prior': _json_float(result.prior.df_prior),
            's2_prior': _json_float(result.prior.s2_prior),
        },
        'n_up': n_up,
        'n_down': n_down,
        'enrichment': enrichment_summary,
    }
    summary_path = output_dir / "run_summary.json"
    try:
        with open(summary_path, 'w') as f:
            json.dump(summary, f, indent=2)
    except OSError as e:
        logger.error(f"Failed to write run summary {summary_path}: {e}")
        print(f"ERROR: Failed to write run summary {summary_path}: {e}")
        return 1
    logger.info(f"Wrote run summary to {summary_path}")

    print()
    print(f"Finished: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return exit_code
