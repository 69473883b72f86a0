"""
Tests for moderated t-tests, BH correction and the end-to-end pipeline.

The end-to-end tests run on negative binomial counts with a planted set of
up- and down-regulated genes (see conftest.generate_negative_binomial_counts).
"""

import numpy as np
import pandas as pd
import pytest

from rnaseqde.core.countmatrix import CountMatrix
from rnaseqde.exceptions import DesignMatrixError, InsufficientDataError, ValidationError
from rnaseqde.stats.differential import (
    RESULT_COLUMNS,
    classify_features,
    fdr_correction,
    rank_results,
    run_differential_expression,
)


class TestFDRCorrection:

    def test_known_values(self):
        adj = fdr_correction(np.array([0.01, 0.02, 0.03, 0.5]))
        np.testing.assert_allclose(adj, [0.04, 0.04, 0.04, 0.5])

    def test_input_order_preserved(self):
        adj = fdr_correction(np.array([0.5, 0.01, 0.03, 0.02]))
        np.testing.assert_allclose(adj, [0.5, 0.04, 0.04, 0.04])

    def test_monotone_and_bounded(self):
        rng = np.random.default_rng(0)
        p = rng.uniform(size=500) ** 3
        adj = fdr_correction(p)

        order = np.argsort(p)
        assert np.all(np.diff(adj[order]) >= -1e-15)
        assert np.all(adj >= p)
        assert np.all((adj >= 0) & (adj <= 1))

    def test_deterministic(self):
        p = np.random.default_rng(1).uniform(size=100)
        np.testing.assert_array_equal(fdr_correction(p), fdr_correction(p.copy()))

    def test_nan_stays_nan(self):
        adj = fdr_correction(np.array([0.01, np.nan, 0.02]))
        assert np.isnan(adj[1])
        np.testing.assert_allclose(adj[[0, 2]], [0.02, 0.02])

    def test_all_nan(self):
        assert np.all(np.isnan(fdr_correction(np.array([np.nan, np.nan]))))

    def test_bonferroni(self):
        adj = fdr_correction(np.array([0.01, 0.4]), method="bonferroni")
        np.testing.assert_allclose(adj, [0.02, 0.8])


class TestRankResults:

    def test_sorted_by_p_then_feature_id(self):
        stats = rank_results(
            ["b", "a", "c"],
            np.array([1.0, 2.0, 3.0]),
            np.zeros(3),
            np.zeros(3),
            np.array([0.1, 0.1, 0.01]),
            np.array([0.15, 0.15, 0.03]),
        )
        assert [s.feature_id for s in stats] == ["c", "a", "b"]
        assert stats[1].log_fc == 2.0


class TestClassifyFeatures:

    def _table(self):
        return pd.DataFrame({
            'feature_id': ["up", "down", "weak", "ns"],
            'logFC': [2.0, -3.0, 0.5, 5.0],
            'AveExpr': [5.0] * 4,
            't': [0.0] * 4,
            'P.Value': [0.001] * 3 + [0.5],
            'adj.P.Val': [0.01, 0.01, 0.01, 0.6],
        })

    def test_calls(self):
        calls = classify_features(self._table(), fdr=0.05, lfc=1.0)
        assert calls.to_dict() == {"up": 1, "down": -1, "weak": 0, "ns": 0}
        assert calls.name == 'call'

    def test_zero_lfc_keeps_any_change(self):
        calls = classify_features(self._table(), fdr=0.05, lfc=0.0)
        assert calls["weak"] == 1

    def test_negative_lfc_rejected(self):
        with pytest.raises(ValueError, match="lfc"):
            classify_features(self._table(), lfc=-1.0)


class TestRunDifferentialExpression:

    def test_table_shape_and_columns(self, de_counts):
        result = run_differential_expression(de_counts, baseline="control")
        table = result.to_dataframe()

        assert list(table.columns) == RESULT_COLUMNS
        assert len(table) == de_counts.n_features - result.n_removed
        assert table['feature_id'].is_unique
        assert result.coefficient == "group[treated]"

    def test_sorted_by_p_value(self, de_counts):
        table = run_differential_expression(de_counts, baseline="control").to_dataframe()
        assert table['P.Value'].is_monotonic_increasing

    def test_zero_count_features_absent(self, de_counts):
        table = run_differential_expression(de_counts, baseline="control").to_dataframe()
        zero_ids = set(de_counts.feature_ids[-10:])
        assert zero_ids.isdisjoint(table['feature_id'])

    def test_planted_signal_ranked_first(self, de_dataset):
        counts, up, down = de_dataset
        table = run_differential_expression(counts, baseline="control").to_dataframe()
        top = table.head(20)

        correct = sum(
            (fid in up and lfc > 0) or (fid in down and lfc < 0)
            for fid, lfc in zip(top['feature_id'], top['logFC'])
        )
        assert correct >= 16
        assert table['adj.P.Val'].iloc[0] < 0.05

    def test_adjusted_values_are_valid(self, de_counts):
        table = run_differential_expression(de_counts, baseline="control").to_dataframe()
        assert (table['adj.P.Val'] >= table['P.Value'] - 1e-12).all()
        assert table['adj.P.Val'].between(0, 1).all()

    def test_flat_feature_has_zero_fold_change(self, equal_library_counts):
        table = run_differential_expression(equal_library_counts, baseline="A").to_dataframe()
        flat = table.set_index('feature_id').loc["flat"]
        assert flat['logFC'] == 0.0

    def test_significant_features_direction(self, de_dataset):
        counts, up, down = de_dataset
        result = run_differential_expression(counts, baseline="control")

        up_calls = result.significant_features(fdr=0.05, lfc=1.0, direction="up")
        down_calls = result.significant_features(fdr=0.05, lfc=1.0, direction="down")

        assert set(up_calls).isdisjoint(down_calls)
        assert len(set(up_calls) & up) > len(set(up_calls) & down)
        assert len(set(down_calls) & down) > len(set(down_calls) & up)

    def test_covariate_adjusted_run(self, de_counts):
        result = run_differential_expression(de_counts, baseline="control", covariates=["batch"])
        assert result.design.col_names == ["(Intercept)", "group[treated]", "batch[B]"]
        assert result.coefficient == "group[treated]"

    def test_cell_means_design_default_coefficient(self, de_counts):
        result = run_differential_expression(de_counts, baseline="control", intercept=False)
        assert result.coefficient == "group[treated]"

    def test_parallel_fit_matches_sequential(self, de_counts):
        seq = run_differential_expression(de_counts, baseline="control", n_jobs=1).to_dataframe()
        par = run_differential_expression(de_counts, baseline="control", n_jobs=2).to_dataframe()
        pd.testing.assert_frame_equal(seq, par)

    def test_collinear_covariate_raises(self, de_counts):
        metadata = de_counts.sample_metadata.copy()
        metadata["condition_copy"] = metadata["group"]
        counts = CountMatrix(
            data=de_counts.data,
            feature_ids=de_counts.feature_ids,
            sample_ids=de_counts.sample_ids,
            sample_metadata=metadata,
        )
        with pytest.raises(DesignMatrixError, match="rank-deficient"):
            run_differential_expression(counts, covariates=["condition_copy"])

    def test_zero_total_sample_raises(self, de_counts):
        data = np.array(de_counts.data)
        data[:, 0] = 0
        counts = CountMatrix(
            data=data,
            feature_ids=de_counts.feature_ids,
            sample_ids=de_counts.sample_ids,
            sample_metadata=de_counts.sample_metadata,
        )
        with pytest.raises(ValidationError, match="zero total"):
            run_differential_expression(counts)

    def test_everything_filtered_raises(self, de_counts):
        with pytest.raises(InsufficientDataError):
            run_differential_expression(de_counts, min_cpm=1e7)

    def test_prior_recorded(self, de_counts):
        result = run_differential_expression(de_counts, baseline="control")
        assert result.prior.s2_prior > 0
        assert result.parameters['baseline'] == "control"
