"""Functional entry point for threshold-crossing estimation.

A threshold crossing ("L50", generally "Lp") is the value of one
target covariate at which a fitted response curve reaches a fixed
link-scale level:

    η(x*, z) = b(x*, z)' β̂ = threshold

For a link that is linear in the target (``η = β₀ + β₁ x``) the answer
is closed-form, ``x* = (threshold − β₀) / β₁``.  Once the target enters
through smooth terms (splines), interactions with auxiliary covariates
``z``, or random effects, there is no closed form, and ``x*`` must be
located numerically for every auxiliary combination of interest.

Uncertainty
~~~~~~~~~~~
* **Gaussian** — resample β ~ N(β̂, Σ̂) and re-solve.  Fast; needs a
  usable coefficient covariance.
* **Bootstrap** — simulate new responses from the fitted model, refit,
  re-solve every grid row jointly.  Works for mixed models, where
  the random-effect structure makes Σ̂ unusable, and distinguishes
  conditional from unconditional uncertainty.

References:
    Roa, R., Ernst, B. & Tapia, F. (1999). Estimation of size at sexual
    maturity: an evaluation of analytical and resampling procedures.
    *Fishery Bulletin*, 97(3), 570–580.
"""

from __future__ import annotations

from typing import Any

from ._results import ResultTable
from .engine import CrossingConfig, CrossingEngine, GridLike
from .models import CrossingModel


def threshold_crossing(
    model: CrossingModel,
    auxiliary_grid: GridLike = None,
    mode: str = "point_only",
    **config_kwargs: Any,
) -> ResultTable:
    """Estimate threshold crossings for every auxiliary combination.

    Args:
        model: Fitted model implementing :class:`~l50.CrossingModel`,
            e.g. from :func:`~l50.fit_model`.
        auxiliary_grid: Auxiliary covariate combinations — a pandas or
            Polars DataFrame, one mapping, a sequence of mappings, or
            ``None`` when the target is the model's only covariate.
        mode: ``"point_only"``, ``"gaussian"`` or ``"bootstrap"``.
        **config_kwargs: Fields of :class:`~l50.CrossingConfig`
            (``threshold``, ``bounds``, ``n_samples``,
            ``n_replicates``, ``use_fitted_random_effects``,
            ``random_state``, …).

    Returns:
        A :class:`~l50.ResultTable`, one row per grid combination, in
        grid order.

    Raises:
        TypeError: If *config_kwargs* contains an unknown option.
        ValueError: If an option or *mode* is invalid.
        UnsupportedModelError: For ``mode="gaussian"`` on a model
            without a usable covariance.
        InsufficientReplicatesError: If the bootstrap dropped too many
            replicates.

    Examples:
        >>> model = l50.fit_model(
        ...     "glm",
        ...     "mature ~ cr(length, df=4, constraints='center') * C(sex)",
        ...     df,
        ...     target="length",
        ... )
        >>> table = l50.threshold_crossing(
        ...     model, [{"sex": "F"}, {"sex": "M"}], mode="gaussian",
        ...     n_samples=500, random_state=42,
        ... )
        >>> table.to_frame()[["sex", "target_value", "lower", "upper"]]
    """
    config = CrossingConfig(**config_kwargs)
    return CrossingEngine(model, config).run(auxiliary_grid, mode)


__all__ = ["threshold_crossing"]
