"""
Configuration file support for the rnaseqde CLI.

Supports YAML and JSON config files with CLI argument override.

Example (YAML):
    counts: data/counts.tsv
    metadata: data/samples.csv
    output: results/
    filter:
      min_cpm: 1.0
      min_sample_fraction: 0.5
    model:
      group_column: condition
      baseline: control
      covariates: [batch]
    significance:
      fdr: 0.05
      lfc: 1.0
    enrichment:
      gene_sets: genesets/hallmark.gmt
"""

import json
from argparse import Namespace
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


@dataclass
class FilterConfig:
    """Low-expression filter configuration."""
    min_cpm: float = 1.0
    min_sample_fraction: float = 0.5


@dataclass
class ModelConfig:
    """Design and model fitting configuration."""
    group_column: str = "group"
    baseline: Optional[str] = None
    covariates: List[str] = field(default_factory=list)
    intercept: bool = True
    coefficient: Optional[str] = None
    lowess_span: float = 0.5
    n_jobs: int = 1


@dataclass
class SignificanceConfig:
    """Cutoffs for calling a feature differentially expressed."""
    fdr: float = 0.05
    lfc: float = 1.0


@dataclass
class EnrichmentConfig:
    """Gene-set enrichment configuration."""
    gene_sets: Optional[Path] = None
    use_mygene: bool = False
    species: str = "human"
    min_set_size: int = 1
    batch_size: int = 1000
    max_workers: int = 4
    max_retries: int = 2
    timeout: float = 30.0


@dataclass
class AnalysisConfig:
    """
    Complete configuration for `rnaseqde differential`.

    Mirrors the CLI argument structure for consistency.
    """
    counts: Optional[Path] = None
    metadata: Optional[Path] = None
    output: Optional[Path] = None
    filter: FilterConfig = field(default_factory=FilterConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    significance: SignificanceConfig = field(default_factory=SignificanceConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "AnalysisConfig":
        """
        Build from a nested mapping (e.g., a loaded config file).

        Raises:
            ValueError: On unknown sections or keys
        """
        sections = {
            'filter': FilterConfig,
            'model': ModelConfig,
            'significance': SignificanceConfig,
            'enrichment': EnrichmentConfig,
        }
        kwargs: Dict[str, Any] = {}
        for key, value in config.items():
            if key in sections:
                section_cls = sections[key]
                allowed = {f.name for f in fields(section_cls)}
                unknown = set(value or {}) - allowed
                if unknown:
                    raise ValueError(f"Unknown keys in '{key}' section: {sorted(unknown)}")
                kwargs[key] = section_cls(**(value or {}))
            elif key in ('counts', 'metadata', 'output'):
                kwargs[key] = Path(value) if value is not None else None
            else:
                raise ValueError(f"Unknown config section: '{key}'")

        if 'enrichment' in kwargs and kwargs['enrichment'].gene_sets is not None:
            kwargs['enrichment'].gene_sets = Path(kwargs['enrichment'].gene_sets)
        return cls(**kwargs)

    @classmethod
    def from_args(cls, args: Namespace) -> "AnalysisConfig":
        """Build from parsed (and merged) CLI arguments."""
        return cls(
            counts=args.counts,
            metadata=args.metadata,
            output=args.output,
            filter=FilterConfig(
                min_cpm=args.min_cpm,
                min_sample_fraction=args.min_sample_fraction,
            ),
            model=ModelConfig(
                group_column=args.group_column,
                baseline=args.baseline,
                covariates=list(args.covariates or []),
                intercept=not args.no_intercept,
                coefficient=args.coefficient,
                lowess_span=args.lowess_span,
                n_jobs=args.n_jobs,
            ),
            significance=SignificanceConfig(fdr=args.fdr, lfc=args.lfc),
            enrichment=EnrichmentConfig(
                gene_sets=args.gene_sets,
                use_mygene=args.use_mygene,
                species=args.species,
                min_set_size=args.min_set_size,
                batch_size=args.batch_size,
                max_workers=args.max_workers,
                max_retries=args.max_retries,
                timeout=args.timeout,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serialisable view (paths as strings)."""
        def _convert(value):
            if isinstance(value, Path):
                return str(value)
            if isinstance(value, dict):
                return {k: _convert(v) for k, v in value.items()}
            if isinstance(value, list):
                return [_convert(v) for v in value]
            return value

        return _convert(asdict(self))


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> print(config['filter']['min_cpm'])
        1.0
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    if suffix not in ('.yaml', '.yml', '.json'):
        raise ValueError(
            f"Unsupported config format: {suffix}. "
            f"Use .yaml, .yml, or .json"
        )

    try:
        with open(config_path, 'r') as f:
            if suffix == '.json':
                config = json.load(f)
            else:
                config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


# (section, key) in the config file → argparse destination
_CONFIG_TO_ARG = {
    (None, 'counts'): 'counts',
    (None, 'metadata'): 'metadata',
    (None, 'output'): 'output',
    ('filter', 'min_cpm'): 'min_cpm',
    ('filter', 'min_sample_fraction'): 'min_sample_fraction',
    ('model', 'group_column'): 'group_column',
    ('model', 'baseline'): 'baseline',
    ('model', 'covariates'): 'covariates',
    ('model', 'coefficient'): 'coefficient',
    ('model', 'lowess_span'): 'lowess_span',
    ('model', 'n_jobs'): 'n_jobs',
    ('significance', 'fdr'): 'fdr',
    ('significance', 'lfc'): 'lfc',
    ('enrichment', 'gene_sets'): 'gene_sets',
    ('enrichment', 'use_mygene'): 'use_mygene',
    ('enrichment', 'species'): 'species',
    ('enrichment', 'min_set_size'): 'min_set_size',
    ('enrichment', 'batch_size'): 'batch_size',
    ('enrichment', 'max_workers'): 'max_workers',
    ('enrichment', 'max_retries'): 'max_retries',
    ('enrichment', 'timeout'): 'timeout',
}

_PATH_ARGS = {'counts', 'metadata', 'output', 'gene_sets'}

_SHORT_TO_LONG = {
    'c': 'counts',
    'm': 'metadata',
    'o': 'output',
    'g': 'gene_sets',
}


def _merge_value(cli_value: Any, config_value: Any, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    - If neither set, keep CLI default
    """
    if was_explicitly_set:
        return cli_value

    if config_value is not None:
        return config_value

    return cli_value


def _explicit_args(cli_args: Optional[List[str]]) -> set:
    explicit = set()
    for arg in cli_args or []:
        if arg.startswith('--'):
            explicit.add(arg[2:].split('=', 1)[0].replace('-', '_'))
        elif arg.startswith('-') and len(arg) == 2 and arg[1] in _SHORT_TO_LONG:
            explicit.add(_SHORT_TO_LONG[arg[1]])
    return explicit


def merge_config_with_args(
    config: Dict[str, Any],
    args: Namespace,
    cli_args: Optional[List[str]] = None,
) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments (argparse.Namespace)
        cli_args: Raw CLI arguments list (for detecting explicit values).
                  If None, assumes all args are defaults

    Returns:
        Updated Namespace with merged values

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> args = parser.parse_args(["--counts", "counts.csv", "--fdr", "0.1"])
        >>> merged = merge_config_with_args(config, args, ["--counts", "counts.csv", "--fdr", "0.1"])
        >>> # merged.fdr from CLI, merged.min_cpm from config
    """
    explicit = _explicit_args(cli_args)
    merged = Namespace(**vars(args))

    for (section, key), arg_name in _CONFIG_TO_ARG.items():
        source = config if section is None else (config.get(section) or {})
        if key not in source:
            continue

        config_value = source[key]
        if config_value is not None and arg_name in _PATH_ARGS:
            config_value = Path(config_value)

        setattr(
            merged,
            arg_name,
            _merge_value(getattr(merged, arg_name, None), config_value, arg_name in explicit),
        )

    # --no-intercept is a negated flag
    model = config.get('model') or {}
    if 'intercept' in model and 'no_intercept' not in explicit:
        merged.no_intercept = not bool(model['intercept'])

    return merged


def validate_config(config: Union[Dict[str, Any], AnalysisConfig]) -> None:
    """
    Validate configuration structure and values.

    Performs basic validation:
    - Known sections and keys only
    - Fractions in (0, 1], thresholds non-negative, cutoffs in range
    - Positive worker, batch and timeout settings

    Parameters:
        config: Configuration dictionary or AnalysisConfig

    Raises:
        ValueError: If configuration is invalid
    """
    if isinstance(config, dict):
        config = AnalysisConfig.from_dict(config)

    def _number(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    flt = config.filter
    if not _number(flt.min_cpm) or flt.min_cpm < 0:
        raise ValueError(f"filter.min_cpm must be a non-negative number, got: {flt.min_cpm}")
    if not _number(flt.min_sample_fraction) or not 0 < flt.min_sample_fraction <= 1:
        raise ValueError(
            f"filter.min_sample_fraction must be in (0, 1], got: {flt.min_sample_fraction}"
        )

    model = config.model
    if not model.group_column:
        raise ValueError("model.group_column must be a non-empty string")
    if not isinstance(model.covariates, list):
        raise ValueError(f"model.covariates must be a list, got: {model.covariates!r}")
    if not _number(model.lowess_span) or not 0 < model.lowess_span <= 1:
        raise ValueError(f"model.lowess_span must be in (0, 1], got: {model.lowess_span}")
    if not isinstance(model.n_jobs, int) or model.n_jobs == 0:
        raise ValueError(f"model.n_jobs must be a non-zero integer, got: {model.n_jobs}")

    sig = config.significance
    if not _number(sig.fdr) or not 0 < sig.fdr <= 1:
        raise ValueError(f"significance.fdr must be in (0, 1], got: {sig.fdr}")
    if not _number(sig.lfc) or sig.lfc < 0:
        raise ValueError(f"significance.lfc must be non-negative, got: {sig.lfc}")

    enr = config.enrichment
    for name in ('min_set_size', 'batch_size', 'max_workers'):
        value = getattr(enr, name)
        if not isinstance(value, int) or value < 1:
            raise ValueError(f"enrichment.{name} must be a positive integer, got: {value}")
    if not isinstance(enr.max_retries, int) or enr.max_retries < 0:
        raise ValueError(f"enrichment.max_retries must be >= 0, got: {enr.max_retries}")
    if not _number(enr.timeout) or enr.timeout <= 0:
        raise ValueError(f"enrichment.timeout must be positive, got: {enr.timeout}")
