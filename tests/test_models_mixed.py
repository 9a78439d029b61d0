"""Tests for BinomialMixedModel (logistic random-intercept GLMM)."""

from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from l50 import (
    BinomialMixedModel,
    CrossingModel,
    RefitError,
    UnsupportedModelError,
    fit_model,
    threshold_crossing,
)

_SEED = 42
_FORMULA = "mature ~ center(length)"


def _site_data(rng, n_sites=8, n_per_site=60, tau=0.8):
    site = np.repeat([f"s{i}" for i in range(n_sites)], n_per_site)
    codes = np.repeat(np.arange(n_sites), n_per_site)
    u = rng.normal(0.0, tau, size=n_sites)
    length = rng.uniform(10.0, 90.0, size=site.size)
    p = expit(0.15 * (length - 50.0) + u[codes])
    return pd.DataFrame(
        {"length": length, "site": site, "mature": rng.binomial(1, p).astype(float)}
    )


@pytest.fixture()
def rng():
    return np.random.default_rng(_SEED)


@pytest.fixture()
def data(rng):
    return _site_data(rng)


@pytest.fixture()
def glmm(data):
    return BinomialMixedModel.fit(_FORMULA, data, group="site", target="length")


class TestFit:
    def test_protocol(self, glmm):
        assert isinstance(glmm, CrossingModel)
        assert glmm.converged
        assert glmm.target == "length"
        assert glmm.covariates == ("length",)
        assert glmm.group_levels == tuple(f"s{i}" for i in range(8))

    def test_shapes(self, glmm):
        assert glmm.point_coefficients().shape == (2,)
        assert glmm.vc_mean.shape == (8,)
        assert glmm.random_effect_sd > 0.0

    def test_no_covariance(self, glmm):
        assert glmm.coefficient_covariance() is None

    def test_population_level_basis(self, glmm, data):
        basis = glmm.design_row({"length": 50.0})
        np.testing.assert_allclose(basis, [1.0, 50.0 - data["length"].mean()])

    def test_fit_model_kind(self, data):
        model = fit_model("mixed", _FORMULA, data, group="site", target="length")
        assert isinstance(model, BinomialMixedModel)

    def test_missing_group_column(self, data):
        with pytest.raises(ValueError, match="Group"):
            BinomialMixedModel.fit(_FORMULA, data, group="year", target="length")

    def test_single_level_group(self, data):
        data = data.assign(site="s0")
        with pytest.raises(ValueError, match="at least 2 levels"):
            BinomialMixedModel.fit(_FORMULA, data, group="site", target="length")

    def test_missing_group_label(self, data):
        data = data.copy()
        data.loc[:4, "site"] = None
        with pytest.raises(ValueError, match="missing values"):
            BinomialMixedModel.fit(_FORMULA, data, group="site", target="length")

    def test_group_as_fixed_effect(self, data):
        with pytest.raises(ValueError, match="fixed effect"):
            BinomialMixedModel.fit(
                "mature ~ length + C(site)", data, group="site", target="length"
            )


class TestSimulate:
    def test_conditional_ignores_rng_for_effects(self, glmm):
        # Same seed, same conditional draw: effects are fixed, Bernoulli
        # noise is the only randomness.
        a = glmm.simulate(conditional=True, rng=np.random.default_rng(1))
        b = glmm.simulate(conditional=True, rng=np.random.default_rng(1))
        np.testing.assert_array_equal(a["mature"], b["mature"])

    def test_unconditional_differs_from_conditional(self, glmm):
        cond = glmm.simulate(conditional=True, rng=np.random.default_rng(1))
        uncond = glmm.simulate(conditional=False, rng=np.random.default_rng(1))
        assert not np.array_equal(cond["mature"], uncond["mature"])

    def test_binary_and_non_mutating(self, glmm, data):
        original = data.copy()
        sim = glmm.simulate(conditional=False, rng=np.random.default_rng(2))
        assert set(np.unique(sim["mature"])) <= {0.0, 1.0}
        assert glmm.data.equals(original)

    def test_refit_is_new_instance(self, glmm):
        sim = glmm.simulate(conditional=False, rng=np.random.default_rng(3))
        refit = glmm.refit(sim)
        assert refit is not glmm
        assert refit.group == glmm.group

    def test_refit_failure_wrapped(self, glmm, data):
        with pytest.raises(RefitError):
            glmm.refit(data.drop(columns="site"))


class TestCrossings:
    def test_point_l50(self, glmm):
        table = threshold_crossing(glmm)
        assert table[0].solve.converged
        assert table[0].solve.target_value == pytest.approx(50.0, abs=6.0)

    def test_gaussian_mode_rejected(self, glmm):
        with pytest.raises(UnsupportedModelError, match="bootstrap"):
            threshold_crossing(glmm, mode="gaussian")

    def test_bootstrap_both_semantics(self, glmm):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", UserWarning)
            cond = threshold_crossing(
                glmm,
                mode="bootstrap",
                n_replicates=12,
                use_fitted_random_effects=True,
                max_drop_fraction=0.5,
                random_state=_SEED,
            )
            uncond = threshold_crossing(
                glmm,
                mode="bootstrap",
                n_replicates=12,
                use_fitted_random_effects=False,
                max_drop_fraction=0.5,
                random_state=_SEED,
            )
        assert cond[0].interval.conditional is True
        assert uncond[0].interval.conditional is False
        for table in (cond, uncond):
            interval = table[0].interval
            assert interval.replicate_count >= 6
            assert interval.lower < interval.upper
