"""
Pytest configuration and shared fixtures.

Synthetic RNA-seq counts are drawn from a negative binomial model with a
known set of differentially expressed genes, so end-to-end tests can check
that the pipeline ranks the true signal first.
"""

import numpy as np
import pandas as pd
import pytest

from rnaseqde.core.countmatrix import CountMatrix


def generate_negative_binomial_counts(
    n_genes: int = 400,
    n_per_group: int = 4,
    n_de: int = 40,
    fold_change: float = 4.0,
    dispersion: float = 0.05,
    n_zero: int = 10,
    seed: int = 42,
) -> tuple[CountMatrix, set, set]:
    """
    Generate a two-group count matrix with known differential expression.

    Args:
        n_genes: Number of genes (features)
        n_per_group: Samples per group ("control", "treated")
        n_de: Number of DE genes; first half up, second half down in "treated"
        fold_change: Linear fold change for DE genes
        dispersion: Negative binomial dispersion (var = mu + phi * mu^2)
        n_zero: Genes with zero counts in every sample (placed last)
        seed: Random seed for reproducibility

    Returns:
        (counts, up_genes, down_genes)
    """
    rng = np.random.default_rng(seed)
    n_samples = 2 * n_per_group

    base_mean = np.exp(rng.normal(5.0, 1.0, size=n_genes))
    size_factors = rng.uniform(0.8, 1.2, size=n_samples)
    is_treated = np.array([False] * n_per_group + [True] * n_per_group)

    mu = np.outer(base_mean, size_factors)
    half = n_de // 2
    mu[:half, is_treated] *= fold_change
    mu[half:n_de, is_treated] /= fold_change

    r = 1.0 / dispersion
    counts = rng.negative_binomial(r, r / (r + mu))
    counts[n_genes - n_zero:, :] = 0

    feature_ids = [f"gene{i:04d}" for i in range(n_genes)]
    sample_ids = [f"S{j + 1}" for j in range(n_samples)]
    metadata = pd.DataFrame(
        {
            "group": np.where(is_treated, "treated", "control"),
            "batch": ["A", "B"] * n_per_group,
        },
        index=sample_ids,
    )

    matrix = CountMatrix(
        data=counts,
        feature_ids=pd.Index(feature_ids),
        sample_ids=pd.Index(sample_ids),
        sample_metadata=metadata,
    )
    return matrix, set(feature_ids[:half]), set(feature_ids[half:n_de])


@pytest.fixture
def de_dataset():
    """(counts, up_genes, down_genes) with 400 genes, 4 vs 4 samples."""
    return generate_negative_binomial_counts()


@pytest.fixture
def de_counts(de_dataset):
    return de_dataset[0]


@pytest.fixture
def small_counts():
    """Tiny 3-feature, 4-sample matrix with a group column."""
    data = np.array([
        [10, 20, 30, 40],
        [0, 0, 0, 0],
        [5, 5, 5, 5],
    ])
    metadata = pd.DataFrame(
        {"group": ["ctrl", "ctrl", "trt", "trt"]},
        index=["S1", "S2", "S3", "S4"],
    )
    return CountMatrix(
        data=data,
        feature_ids=pd.Index(["g1", "g2", "g3"]),
        sample_ids=pd.Index(["S1", "S2", "S3", "S4"]),
        sample_metadata=metadata,
    )


@pytest.fixture
def equal_library_counts():
    """
    2 vs 2 samples with identical library sizes.

    Every sample column is a permutation of the same 30 values, so all
    library sizes match; the last feature ("flat") has the same count in
    every sample.
    """
    rng = np.random.default_rng(7)
    values = rng.integers(20, 500, size=30)
    columns = [rng.permutation(values) for _ in range(4)]
    data = np.vstack([np.column_stack(columns), np.full((1, 4), 100)])

    feature_ids = [f"g{i:02d}" for i in range(30)] + ["flat"]
    metadata = pd.DataFrame(
        {"group": ["A", "A", "B", "B"]},
        index=["S1", "S2", "S3", "S4"],
    )
    return CountMatrix(
        data=data,
        feature_ids=pd.Index(feature_ids),
        sample_ids=pd.Index(["S1", "S2", "S3", "S4"]),
        sample_metadata=metadata,
    )
