"""Crossing uncertainty from Gaussian coefficient resampling.

Treats the sampling distribution of the coefficients as

    β ~ N(β̂, Σ̂)

with β̂ the fitted coefficients and Σ̂ their estimated covariance.
Each draw is pushed through the threshold solver, and the spread of
the resulting crossings becomes the interval:

* ``"normal"`` — ``x̂ ± z·sd``, with ``z = Φ⁻¹(1 − α/2)`` (1.96 at
  95 %) and ``sd`` the sample standard deviation of the draws.
* ``"percentile"`` — empirical ``α/2`` and ``1 − α/2`` quantiles.

The point estimate ``x̂`` always comes from the unperturbed
coefficients.  Models without a usable covariance are rejected
before any sampling begins.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import numpy as np
from scipy import stats

from ._errors import PredictionError, UnsupportedModelError
from ._random import as_generator
from ._results import SolveResult, UncertaintyInterval
from ._typing import RandomState
from .link import LinkEvaluator
from .models import CrossingModel
from .solver import ThresholdSolver

logger = logging.getLogger(__name__)

_INTERVAL_METHODS = ("normal", "percentile")


def _check_interval_options(interval_method: str, confidence_level: float) -> None:
    if interval_method not in _INTERVAL_METHODS:
        msg = (
            f"interval_method must be one of {_INTERVAL_METHODS}, "
            f"got {interval_method!r}."
        )
        raise ValueError(msg)
    if not 0.0 < confidence_level < 1.0:
        msg = f"confidence_level must lie in (0, 1), got {confidence_level}."
        raise ValueError(msg)


def summarise_replicates(
    values: np.ndarray,
    point_estimate: float,
    interval_method: str,
    confidence_level: float,
) -> tuple[float, float, float]:
    """Interval bounds and standard error from a pool of replicate values.

    The pool is treated as unordered.

    Returns:
        ``(lower, upper, std_error)``.  NaN when fewer than two values
        are available.
    """
    values = np.asarray(values, dtype=float)
    values = values[np.isfinite(values)]
    if values.size < 2:
        return float("nan"), float("nan"), float("nan")
    sd = float(np.std(values, ddof=1))
    alpha = 1.0 - confidence_level
    if interval_method == "normal":
        z = float(stats.norm.ppf(1.0 - alpha / 2.0))
        return point_estimate - z * sd, point_estimate + z * sd, sd
    lower, upper = np.quantile(values, [alpha / 2.0, 1.0 - alpha / 2.0])
    return float(lower), float(upper), sd


def checked_covariance(model: CrossingModel) -> tuple[np.ndarray, np.ndarray]:
    """The model's coefficients and a validated covariance.

    Raises:
        UnsupportedModelError: If the covariance is missing,
            non-square, non-finite, or misaligned with the coefficients.
    """
    mean = np.asarray(model.point_coefficients(), dtype=float).ravel()
    cov = model.coefficient_covariance()
    if cov is None:
        msg = (
            f"{type(model).__name__} exposes no coefficient covariance; "
            "use mode='bootstrap' instead of 'gaussian'."
        )
        raise UnsupportedModelError(msg)
    cov = np.asarray(cov, dtype=float)
    if cov.ndim != 2 or cov.shape != (mean.shape[0], mean.shape[0]):
        msg = (
            f"Coefficient covariance has shape {cov.shape}; expected "
            f"({mean.shape[0]}, {mean.shape[0]}) to match the coefficients."
        )
        raise UnsupportedModelError(msg)
    if not np.all(np.isfinite(cov)):
        raise UnsupportedModelError("Coefficient covariance contains non-finite values.")
    return mean, cov


class GaussianUncertaintyEstimator:
    """Interval estimates from multivariate-normal coefficient draws.

    Args:
        solver: Solver for each draw; a default :class:`ThresholdSolver`
            when ``None``.
        threshold: Link-scale level being crossed.
        interval_method: ``"normal"`` (default) or ``"percentile"``.
        confidence_level: Nominal coverage.
    """

    def __init__(
        self,
        solver: ThresholdSolver | None = None,
        *,
        threshold: float = 0.0,
        interval_method: str = "normal",
        confidence_level: float = 0.95,
    ) -> None:
        _check_interval_options(interval_method, confidence_level)
        self.solver = solver if solver is not None else ThresholdSolver()
        self.threshold = float(threshold)
        self.interval_method = interval_method
        self.confidence_level = float(confidence_level)

    def estimate(
        self,
        model: CrossingModel,
        auxiliary_row: Mapping[str, Any] | None,
        n_samples: int,
        lower_bound: float,
        upper_bound: float,
        random_state: RandomState = None,
        point: SolveResult | None = None,
    ) -> UncertaintyInterval:
        """Resample coefficients and summarise the crossing spread.

        Args:
            model: Fitted model with a coefficient covariance.
            auxiliary_row: Auxiliary covariates held fixed.
            n_samples: Number of coefficient draws.
            lower_bound: Lower search bound.
            upper_bound: Upper search bound.
            random_state: Seed or generator for the draws.
            point: Solve at the unperturbed coefficients, when the
                caller already has it.

        Returns:
            An :class:`UncertaintyInterval`; ``n_dropped`` counts draws
            whose solve raised ``PredictionError`` and ``n_unconverged``
            counts kept draws whose solve stopped short of the tolerance.

        Raises:
            UnsupportedModelError: If the model has no usable
                covariance.  Raised before any draw is taken.
            ValueError: If *n_samples* < 2.
        """
        mean, cov = checked_covariance(model)
        if n_samples < 2:
            raise ValueError(f"n_samples must be >= 2, got {n_samples}.")

        evaluator = LinkEvaluator(model, threshold=self.threshold)
        if point is None:
            point = self.solver.solve(
                evaluator.objective(mean, auxiliary_row), lower_bound, upper_bound
            )

        rng = as_generator(random_state)
        draws = rng.multivariate_normal(mean, cov, size=n_samples, method="eigh")

        values = []
        n_dropped = 0
        n_unconverged = 0
        for draw in draws:
            try:
                result = self.solver.solve(
                    evaluator.objective(draw, auxiliary_row), lower_bound, upper_bound
                )
            except PredictionError as exc:
                n_dropped += 1
                logger.debug("Dropped coefficient draw: %s", exc)
                continue
            if not result.converged:
                n_unconverged += 1
            values.append(result.target_value)

        if n_dropped:
            logger.debug("%d of %d coefficient draws dropped.", n_dropped, n_samples)

        lower, upper, sd = summarise_replicates(
            np.array(values),
            point.target_value,
            self.interval_method,
            self.confidence_level,
        )
        return UncertaintyInterval(
            point_estimate=point.target_value,
            lower=lower,
            upper=upper,
            replicate_count=len(values),
            method=self.interval_method,
            confidence_level=self.confidence_level,
            std_error=sd,
            conditional=None,
            n_dropped=n_dropped,
            n_unconverged=n_unconverged,
        )


__all__ = ["GaussianUncertaintyEstimator"]
