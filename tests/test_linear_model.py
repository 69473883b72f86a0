"""Tests for per-feature weighted least squares."""

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from rnaseqde.exceptions import DesignMatrixError, ValidationError
from rnaseqde.stats.linear_model import fit_feature, fit_linear_model, ols_fit


@pytest.fixture
def design_X():
    return np.array([
        [1, 0, 0.5],
        [1, 0, -1.0],
        [1, 0, 0.2],
        [1, 1, 0.3],
        [1, 1, -0.4],
        [1, 1, 0.9],
    ], dtype=float)


class TestFitFeature:

    def test_matches_statsmodels_wls(self, design_X):
        rng = np.random.default_rng(3)
        y = rng.normal(5, 1, size=6)
        w = rng.uniform(0.5, 2.0, size=6)

        fit = fit_feature(y, design_X, w, feature_id="g1")
        ref = sm.WLS(y, design_X, weights=w).fit()

        np.testing.assert_allclose(fit.coefficients, ref.params, rtol=1e-10)
        np.testing.assert_allclose(fit.sigma2, ref.scale, rtol=1e-10)
        assert fit.df_residual == 3
        # bse^2 = sigma^2 × diag((X'WX)^-1)
        np.testing.assert_allclose(fit.unscaled_variances * fit.sigma2, ref.bse ** 2, rtol=1e-8)

    def test_unit_weights_is_ols(self, design_X):
        rng = np.random.default_rng(4)
        y = rng.normal(size=6)
        fit = fit_feature(y, design_X, np.ones(6))

        beta, *_ = np.linalg.lstsq(design_X, y, rcond=None)
        np.testing.assert_allclose(fit.coefficients, beta, rtol=1e-10)
        np.testing.assert_allclose(
            fit.unscaled_variances, np.diag(np.linalg.inv(design_X.T @ design_X)), rtol=1e-10
        )

    def test_average_expression(self, design_X):
        y = np.arange(6, dtype=float)
        fit = fit_feature(y, design_X, np.ones(6))
        assert fit.average_expression == pytest.approx(2.5)

    def test_constant_response_has_exactly_zero_slopes(self, design_X):
        w = np.random.default_rng(5).uniform(0.2, 3.0, size=6)
        fit = fit_feature(np.full(6, 7.318), design_X, w)

        assert fit.coefficients[0] == 7.318
        assert fit.coefficients[1] == 0.0
        assert fit.coefficients[2] == 0.0
        assert fit.sigma2 == 0.0

    def test_constant_response_cell_means_coefficients_equal(self):
        X = np.array([[1, 0], [1, 0], [1, 0], [0, 1], [0, 1], [0, 1]], dtype=float)
        w = np.random.default_rng(6).uniform(0.2, 3.0, size=6)
        fit = fit_feature(np.full(6, 4.91), X, w)

        np.testing.assert_array_equal(fit.coefficients, [4.91, 4.91])
        assert fit.coefficients[1] - fit.coefficients[0] == 0.0

    def test_design_without_intercept_span_matches_statsmodels(self):
        X = np.array([[0.5], [1.0], [1.5], [2.0], [2.5]])
        y = np.array([1.1, 1.9, 3.2, 3.9, 5.1])
        w = np.array([1.0, 2.0, 0.5, 1.5, 1.0])

        fit = fit_feature(y, X, w)
        ref = sm.WLS(y, X, weights=w).fit()
        np.testing.assert_allclose(fit.coefficients, ref.params, rtol=1e-10)
        np.testing.assert_allclose(fit.sigma2, ref.scale, rtol=1e-10)

    def test_non_positive_weight_rejected(self, design_X):
        with pytest.raises(ValidationError, match="strictly positive"):
            fit_feature(np.ones(6), design_X, np.array([1, 1, 0, 1, 1, 1.0]))

    def test_no_residual_df(self):
        X = np.array([[1, 0], [1, 1]], dtype=float)
        with pytest.raises(DesignMatrixError, match="residual df"):
            fit_feature(np.array([1.0, 2.0]), X, np.ones(2))

    def test_rank_deficient(self):
        X = np.array([[1, 1], [1, 1], [1, 1]], dtype=float)
        with pytest.raises(DesignMatrixError, match="rank-deficient"):
            fit_feature(np.array([1.0, 2.0, 3.0]), X, np.ones(3))


class TestFitLinearModel:

    def test_one_fit_per_feature_in_order(self, design_X):
        rng = np.random.default_rng(5)
        y = rng.normal(size=(8, 6))
        ids = pd.Index([f"g{i}" for i in range(8)])

        model = fit_linear_model(y, design_X, feature_ids=ids, col_names=["a", "b", "c"])

        assert model.n_features == 8
        assert [f.feature_id for f in model.fits] == list(ids)
        assert model.coefficients.shape == (8, 3)
        assert list(model.coefficients_frame().columns) == ["a", "b", "c"]

    def test_parallel_matches_sequential(self, design_X):
        rng = np.random.default_rng(6)
        y = rng.normal(size=(10, 6))
        w = rng.uniform(0.5, 2.0, size=(10, 6))

        seq = fit_linear_model(y, design_X, w, n_jobs=1)
        par = fit_linear_model(y, design_X, w, n_jobs=2)

        np.testing.assert_allclose(par.coefficients, seq.coefficients)
        np.testing.assert_allclose(par.sigma2, seq.sigma2)
        assert [f.feature_id for f in par.fits] == [f.feature_id for f in seq.fits]

    def test_weight_shape_mismatch(self, design_X):
        with pytest.raises(ValidationError, match="weights shape"):
            fit_linear_model(np.ones((3, 6)), design_X, np.ones((3, 5)))

    def test_design_row_mismatch(self, design_X):
        with pytest.raises(ValidationError, match="Design has"):
            fit_linear_model(np.ones((3, 5)), design_X)


class TestOlsFit:

    def test_residual_sd(self, design_X):
        rng = np.random.default_rng(8)
        y = rng.normal(size=(4, 6))
        fitted, sigma = ols_fit(y, design_X)

        ref = sm.OLS(y[0], design_X).fit()
        np.testing.assert_allclose(fitted[0], ref.fittedvalues, rtol=1e-10)
        np.testing.assert_allclose(sigma[0], np.sqrt(ref.scale), rtol=1e-10)
