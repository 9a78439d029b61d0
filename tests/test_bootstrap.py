"""Tests for BootstrapUncertaintyEstimator and ReplicateSet."""

from __future__ import annotations

import warnings

import numpy as np
import pytest
from _fakes import FlakyRefitModel, GaussianLineModel, GroupedLineModel

from l50 import (
    BootstrapUncertaintyEstimator,
    InsufficientReplicatesError,
    ReplicateSet,
)

_SEED = 42


@pytest.fixture()
def rng():
    return np.random.default_rng(_SEED)


@pytest.fixture()
def fitted_line(rng):
    return GaussianLineModel.fit(GaussianLineModel.simulate_truth(rng))


@pytest.fixture()
def grouped(rng):
    return GroupedLineModel.fit(GroupedLineModel.simulate_truth(rng))


# ------------------------------------------------------------------ #
# Replicates
# ------------------------------------------------------------------ #


class TestRunReplicates:
    def test_shape_and_counts(self, fitted_line):
        est = BootstrapUncertaintyEstimator()
        reps = est.run_replicates(
            fitted_line, [{}, {}], 30, (0.0, 150.0), False, random_state=_SEED
        )
        assert isinstance(reps, ReplicateSet)
        assert reps.values.shape == (30, 2)
        assert reps.n_kept == 30
        assert reps.n_dropped == 0
        assert reps.drop_reasons == {}
        assert reps.conditional is False
        assert not reps.timed_out

    def test_conditional_flag_recorded(self, grouped):
        est = BootstrapUncertaintyEstimator()
        reps = est.run_replicates(grouped, [{}], 5, (0.0, 150.0), True, random_state=_SEED)
        assert reps.conditional is True

    def test_deterministic_given_seed(self, fitted_line):
        est = BootstrapUncertaintyEstimator()
        a = est.run_replicates(fitted_line, [{}], 20, (0.0, 150.0), False, random_state=3)
        b = est.run_replicates(fitted_line, [{}], 20, (0.0, 150.0), False, random_state=3)
        np.testing.assert_array_equal(a.values, b.values)

    def test_independent_of_n_jobs(self, fitted_line):
        seq = BootstrapUncertaintyEstimator(n_jobs=1).run_replicates(
            fitted_line, [{}], 16, (0.0, 150.0), False, random_state=_SEED
        )
        par = BootstrapUncertaintyEstimator(n_jobs=4).run_replicates(
            fitted_line, [{}], 16, (0.0, 150.0), False, random_state=_SEED
        )
        np.testing.assert_array_equal(seq.values, par.values)

    def test_original_model_untouched(self, fitted_line):
        before = fitted_line.point_coefficients()
        data_before = fitted_line.data.copy()
        BootstrapUncertaintyEstimator().run_replicates(
            fitted_line, [{}], 10, (0.0, 150.0), False, random_state=_SEED
        )
        np.testing.assert_array_equal(fitted_line.point_coefficients(), before)
        assert fitted_line.data.equals(data_before)

    def test_per_row_bounds(self, fitted_line):
        reps = BootstrapUncertaintyEstimator().run_replicates(
            fitted_line,
            [{}, {}],
            10,
            [(0.0, 150.0), (0.0, 30.0)],
            False,
            random_state=_SEED,
        )
        assert np.all(reps.values[:, 1] <= 30.0)
        assert reps.n_unconverged == 10

    def test_bound_pair_count_checked(self, fitted_line):
        with pytest.raises(ValueError, match="bound pairs"):
            BootstrapUncertaintyEstimator().run_replicates(
                fitted_line, [{}, {}, {}], 5, [(0.0, 1.0), (0.0, 2.0)], False
            )

    def test_n_replicates_checked(self, fitted_line):
        with pytest.raises(ValueError, match="n_replicates"):
            BootstrapUncertaintyEstimator().run_replicates(
                fitted_line, [{}], 1, (0.0, 150.0), False
            )

    def test_timeout_counts_unattempted_as_dropped(self, fitted_line):
        class _SlowModel(GaussianLineModel):
            def refit(self, data):
                import time

                time.sleep(0.02)
                return GaussianLineModel.fit(data)

        slow = _SlowModel(
            data=fitted_line.data,
            params=fitted_line.params,
            sigma=fitted_line.sigma,
            cov=fitted_line.cov,
        )
        est = BootstrapUncertaintyEstimator(n_jobs=1, timeout=0.05)
        reps = est.run_replicates(slow, [{}], 100, (0.0, 150.0), False, random_state=_SEED)
        assert reps.timed_out
        assert reps.n_kept < 100
        assert reps.drop_reasons["timeout"] == 100 - reps.n_kept
        assert reps.n_dropped == 100 - reps.n_kept


# ------------------------------------------------------------------ #
# Dropped replicates
# ------------------------------------------------------------------ #


class TestDroppedReplicates:
    def test_twenty_of_150_failures_raise(self, fitted_line):
        model = FlakyRefitModel(inner=fitted_line, n_failures=20)
        est = BootstrapUncertaintyEstimator()
        with pytest.raises(InsufficientReplicatesError) as excinfo:
            est.estimate(model, [{}], 150, (0.0, 150.0), False, random_state=_SEED)
        assert excinfo.value.n_dropped == 20
        assert excinfo.value.n_replicates == 150
        assert excinfo.value.max_drop_fraction == 0.10

    def test_unconverged_refits_are_dropped(self, fitted_line):
        model = FlakyRefitModel(inner=fitted_line, n_failures=20, mode="unconverged")
        est = BootstrapUncertaintyEstimator()
        with pytest.raises(InsufficientReplicatesError):
            est.estimate(model, [{}], 150, (0.0, 150.0), False, random_state=_SEED)

    def test_drop_reasons(self, fitted_line):
        model = FlakyRefitModel(inner=fitted_line, n_failures=3, mode="unconverged")
        reps = BootstrapUncertaintyEstimator().run_replicates(
            model, [{}], 20, (0.0, 150.0), False, random_state=_SEED
        )
        assert reps.drop_reasons == {"refit_not_converged": 3}
        assert reps.n_kept == 17

    def test_fifteen_of_150_warns_but_succeeds(self, fitted_line):
        model = FlakyRefitModel(inner=fitted_line, n_failures=15)
        est = BootstrapUncertaintyEstimator()
        with pytest.warns(UserWarning, match="15 of 150"):
            (interval,) = est.estimate(
                model, [{}], 150, (0.0, 150.0), False, random_state=_SEED
            )
        assert interval.replicate_count == 135
        assert interval.n_dropped == 15

    def test_threshold_is_configurable(self, fitted_line):
        model = FlakyRefitModel(inner=fitted_line, n_failures=20)
        est = BootstrapUncertaintyEstimator(max_drop_fraction=0.2)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", UserWarning)
            intervals = est.estimate(
                model, [{}], 150, (0.0, 150.0), False, random_state=_SEED
            )
        assert intervals[0].replicate_count == 130

    def test_parallel_failures_counted(self, fitted_line):
        model = FlakyRefitModel(inner=fitted_line, n_failures=20)
        est = BootstrapUncertaintyEstimator(n_jobs=4)
        with pytest.raises(InsufficientReplicatesError):
            est.estimate(model, [{}], 150, (0.0, 150.0), False, random_state=_SEED)


# ------------------------------------------------------------------ #
# Intervals
# ------------------------------------------------------------------ #


class TestEstimate:
    def test_one_interval_per_row(self, fitted_line):
        intervals = BootstrapUncertaintyEstimator().estimate(
            fitted_line, [{}, {}, {}], 40, (0.0, 150.0), False, random_state=_SEED
        )
        assert len(intervals) == 3
        for interval in intervals:
            assert interval.method == "percentile"
            assert interval.replicate_count == 40
            assert interval.conditional is False
            assert interval.lower < interval.upper

    def test_point_from_original_model(self, fitted_line):
        b0, b1 = fitted_line.point_coefficients()
        (interval,) = BootstrapUncertaintyEstimator().estimate(
            fitted_line, [{}], 20, (0.0, 150.0), False, random_state=_SEED
        )
        assert interval.point_estimate == pytest.approx(-b0 / b1, abs=1e-2)

    def test_normal_method(self, fitted_line):
        (interval,) = BootstrapUncertaintyEstimator(interval_method="normal").estimate(
            fitted_line, [{}], 40, (0.0, 150.0), False, random_state=_SEED
        )
        assert interval.method == "normal"
        mid = (interval.lower + interval.upper) / 2.0
        assert mid == pytest.approx(interval.point_estimate)

    def test_conditional_not_wider_than_unconditional(self, grouped):
        est = BootstrapUncertaintyEstimator()
        (cond,) = est.estimate(grouped, [{}], 80, (0.0, 150.0), True, random_state=_SEED)
        (uncond,) = est.estimate(
            grouped, [{}], 80, (0.0, 150.0), False, random_state=_SEED
        )
        assert cond.conditional is True
        assert uncond.conditional is False
        assert cond.width <= uncond.width

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_drop_fraction": 1.5},
            {"max_drop_fraction": -0.1},
            {"timeout": 0.0},
            {"interval_method": "bca"},
        ],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(ValueError):
            BootstrapUncertaintyEstimator(**kwargs)


class TestCalibration:
    """Percentile intervals cover the true crossing near the nominal rate."""

    def test_percentile_coverage(self):
        rng = np.random.default_rng(_SEED)
        true_crossing = 2.0 / 0.04
        est = BootstrapUncertaintyEstimator(confidence_level=0.95)
        n_trials = 200
        hits = 0
        for _ in range(n_trials):
            model = GaussianLineModel.fit(GaussianLineModel.simulate_truth(rng))
            (interval,) = est.estimate(
                model, [{}], 100, (0.0, 150.0), False, random_state=rng
            )
            hits += interval.contains(true_crossing)
        # Nominal 0.95; binomial sd at n=200 is about 0.016.
        assert hits / n_trials >= 0.9
