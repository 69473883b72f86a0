"""
rnaseqde CLI - Command-line interface for RNA-seq differential expression.

Commands:
    rnaseqde differential  - voom / moderated t differential expression with
                             optional gene-set enrichment
"""

import argparse
import sys
from typing import Optional, List

from rnaseqde import __version__


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for rnaseqde."""
    parser = argparse.ArgumentParser(
        prog="rnaseqde",
        description="Differential expression analysis for RNA-seq counts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  differential  voom precision weights, moderated t-tests, BH FDR and
                hypergeometric gene-set enrichment

Examples:
  rnaseqde differential --counts counts.csv --metadata samples.csv --output results/
  rnaseqde differential --config analysis.yaml --fdr 0.1
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from rnaseqde.cli import differential
    differential.setup_parser(subparsers)

    raw_args = list(args) if args is not None else sys.argv[1:]
    parsed_args = parser.parse_args(raw_args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    # Raw flags after the subcommand, used to detect explicit overrides of config values
    parsed_args._cli_args = raw_args[raw_args.index(parsed_args.command) + 1:]

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
