"""Exception taxonomy for threshold-crossing estimation.

Four conditions are distinguished because callers react to them
differently:

* :class:`InvalidCovariateError` — the covariate row handed to the
  evaluator is malformed.  Fatal to that single solve only; the
  orchestrator records it on the row and continues the batch.
* :class:`PredictionError` — the model cannot produce a basis row at a
  requested point (e.g. a spline basis undefined outside its knots).
  Raised by the model, propagated unchanged by the evaluator, and
  turned into a non-converged :class:`~l50.SolveResult` carrying a
  diagnostic by the orchestrator.
* :class:`UnsupportedModelError` — the Gaussian path was requested for
  a model without a usable coefficient covariance.  Raised before any
  work begins.
* :class:`InsufficientReplicatesError` — too many bootstrap replicates
  were dropped for the interval to be trusted.

Non-convergence of the root finder is deliberately *not* an
exception: it is the ``converged`` field of the result, so callers can
tell "solved, value unreliable" apart from "could not run".
"""

from __future__ import annotations


class L50Error(Exception):
    """Base class for all errors raised by the l50 package."""


class InvalidCovariateError(L50Error, ValueError):
    """A covariate row is missing a covariate the model requires."""


class PredictionError(L50Error):
    """The model cannot evaluate its linear predictor at a given row."""


class UnsupportedModelError(L50Error):
    """The model does not expose the capability an estimator needs."""


class RefitError(L50Error):
    """Refitting a model to a simulated dataset failed outright."""


class InsufficientReplicatesError(L50Error):
    """The bootstrap dropped more replicates than the configured limit.

    Attributes:
        n_dropped: Replicates that failed (refit, solve, or timeout).
        n_replicates: Replicates requested.
        max_drop_fraction: The configured tolerance.
    """

    def __init__(
        self,
        n_dropped: int,
        n_replicates: int,
        max_drop_fraction: float,
    ) -> None:
        self.n_dropped = n_dropped
        self.n_replicates = n_replicates
        self.max_drop_fraction = max_drop_fraction
        super().__init__(
            f"{n_dropped} of {n_replicates} bootstrap replicates were dropped "
            f"({n_dropped / max(n_replicates, 1):.1%}), exceeding the allowed "
            f"fraction of {max_drop_fraction:.1%}.  Increase n_replicates, "
            f"relax max_drop_fraction, or check the model's refit stability."
        )


class ExtrapolationWarning(UserWarning):
    """A crossing point lies outside the training range of the target."""


__all__ = [
    "ExtrapolationWarning",
    "InsufficientReplicatesError",
    "InvalidCovariateError",
    "L50Error",
    "PredictionError",
    "RefitError",
    "UnsupportedModelError",
]
