"""Crossing uncertainty from the parametric bootstrap.

Used when a model has no usable coefficient covariance (mixed models),
or whenever refit-based intervals are preferred.  Each replicate:

1. simulates a response dataset from the fitted model, holding the
   fitted random effects fixed (``conditional``) or redrawing them
   from their estimated population distribution (``unconditional``);
2. refits a **new** model instance to the simulated data;
3. solves every grid row jointly (one L-BFGS-B call, one free target
   value per row) against the refit.

The result of a replicate is a vector with one crossing per grid row.
All rows therefore share one replicate set, and the cross-row
correlation of the crossings is kept in :attr:`ReplicateSet.values`.

Parallelism
~~~~~~~~~~~
Replicates run through ``joblib.Parallel(prefer="threads")``.  Each
replicate owns a child generator spawned from the root seed, and the
coordinator stacks the returned vectors in replicate order, so the
replicate matrix depends only on the seed, never on ``n_jobs``.  The
shared fitted model is only read.

Dropped replicates
~~~~~~~~~~~~~~~~~~
A replicate is dropped when its refit raises ``RefitError``, reports
``converged=False``, or its joint solve raises ``PredictionError``.
Replicates never started because the batch ``timeout`` expired count
as dropped too.  When the dropped fraction exceeds
``max_drop_fraction`` the estimator raises
:class:`~l50.InsufficientReplicatesError`; below the limit it warns.
"""

from __future__ import annotations

import logging
import time
import warnings
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from ._config import resolve_n_jobs
from ._errors import InsufficientReplicatesError, PredictionError, RefitError
from ._random import spawn_generators
from ._results import SolveResult, UncertaintyInterval, _DictAccessMixin
from ._typing import RandomState
from .gaussian import _check_interval_options, summarise_replicates
from .link import LinkEvaluator
from .models import CrossingModel
from .solver import ThresholdSolver

logger = logging.getLogger(__name__)

# Drop reasons, as recorded in ReplicateSet.drop_reasons.
_REFIT_ERROR = "refit_error"
_REFIT_NOT_CONVERGED = "refit_not_converged"
_PREDICTION_ERROR = "prediction_error"
_TIMEOUT = "timeout"


@dataclass(frozen=True)
class ReplicateSet(_DictAccessMixin):
    """Pooled bootstrap replicates for one grid.

    The pool is order-independent for summarisation; rows of
    :attr:`values` are kept in replicate-index order only so that a
    fixed seed reproduces the same matrix.
    """

    values: np.ndarray = field(repr=False)
    """Kept replicate crossings, shape ``(n_kept, n_rows)``."""

    n_replicates: int
    """Replicates requested."""

    n_dropped: int
    """Replicates dropped, including those skipped by the timeout."""

    drop_reasons: dict[str, int]
    """Dropped counts by reason."""

    conditional: bool
    """``True`` when fitted random effects were held fixed."""

    n_unconverged: int = 0
    """Kept replicates with at least one row that did not converge."""

    timed_out: bool = False
    """Whether the batch timeout cut the run short."""

    @property
    def n_kept(self) -> int:
        return int(self.values.shape[0])

    @property
    def drop_fraction(self) -> float:
        return self.n_dropped / self.n_replicates if self.n_replicates else 0.0


def _normalise_bound_pairs(
    bound_pairs: Sequence[tuple[float, float]] | tuple[float, float],
    n_rows: int,
) -> list[tuple[float, float]]:
    """Per-row bounds; a single ``(lower, upper)`` pair is broadcast."""
    pairs = list(bound_pairs)
    if len(pairs) == 2 and all(np.isscalar(v) for v in pairs):
        return [(float(pairs[0]), float(pairs[1]))] * n_rows
    if len(pairs) != n_rows:
        msg = f"Got {len(pairs)} bound pairs for {n_rows} grid rows."
        raise ValueError(msg)
    return [(float(lo), float(hi)) for lo, hi in pairs]


class BootstrapUncertaintyEstimator:
    """Percentile (or normal) intervals from simulate → refit → re-solve.

    Args:
        solver: Solver for the joint per-replicate solves; a default
            :class:`ThresholdSolver` when ``None``.
        threshold: Link-scale level being crossed.
        interval_method: ``"percentile"`` (default) or ``"normal"``.
        confidence_level: Nominal coverage.
        max_drop_fraction: Largest tolerated fraction of dropped
            replicates.  ``20`` drops out of ``150`` exceed the default
            ``0.10``.
        n_jobs: joblib workers; ``None`` uses :func:`l50.get_n_jobs`.
        timeout: Batch wall-clock limit in seconds.  Checked between
            dispatched chunks; replicates not started count as dropped.
    """

    def __init__(
        self,
        solver: ThresholdSolver | None = None,
        *,
        threshold: float = 0.0,
        interval_method: str = "percentile",
        confidence_level: float = 0.95,
        max_drop_fraction: float = 0.10,
        n_jobs: int | None = None,
        timeout: float | None = None,
    ) -> None:
        _check_interval_options(interval_method, confidence_level)
        if not 0.0 <= max_drop_fraction <= 1.0:
            msg = f"max_drop_fraction must lie in [0, 1], got {max_drop_fraction}."
            raise ValueError(msg)
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}.")
        self.solver = solver if solver is not None else ThresholdSolver()
        self.threshold = float(threshold)
        self.interval_method = interval_method
        self.confidence_level = float(confidence_level)
        self.max_drop_fraction = float(max_drop_fraction)
        self.n_jobs = n_jobs
        self.timeout = timeout

    # ---- Joint solve -----------------------------------------------

    def solve_grid(
        self,
        model: CrossingModel,
        grid: Sequence[Mapping[str, Any] | None],
        bound_pairs: Sequence[tuple[float, float]] | tuple[float, float],
    ) -> list[SolveResult]:
        """Solve every grid row jointly against *model*.

        The starting point is the target's training mean, clipped into
        each row's bounds.

        Raises:
            InvalidCovariateError: If a grid row is malformed.
            PredictionError: Propagated from the model.
        """
        pairs = _normalise_bound_pairs(bound_pairs, len(grid))
        evaluator = LinkEvaluator(model, threshold=self.threshold)
        coefficients = model.point_coefficients()
        x0 = np.full(len(grid), float(model.target_center()))
        return self.solver.solve_many(
            evaluator.grid_objective(coefficients, grid),
            pairs,
            x0=x0,
            residual_fn=evaluator.grid_residuals(coefficients, grid),
        )

    # ---- Replicates ------------------------------------------------

    def _run_one(
        self,
        model: CrossingModel,
        grid: Sequence[Mapping[str, Any] | None],
        pairs: list[tuple[float, float]],
        conditional: bool,
        rng: np.random.Generator,
    ) -> tuple[np.ndarray | None, str | None, bool]:
        """One replicate → (crossings, drop reason, all rows converged)."""
        data = model.simulate(conditional=conditional, rng=rng)
        try:
            refit = model.refit(data)
        except RefitError as exc:
            logger.debug("Dropped replicate (refit error): %s", exc)
            return None, _REFIT_ERROR, False
        if not refit.converged:
            logger.debug("Dropped replicate (refit did not converge).")
            return None, _REFIT_NOT_CONVERGED, False
        try:
            results = self.solve_grid(refit, grid, pairs)
        except PredictionError as exc:
            logger.debug("Dropped replicate (prediction error): %s", exc)
            return None, _PREDICTION_ERROR, False
        values = np.array([r.target_value for r in results], dtype=float)
        return values, None, all(r.converged for r in results)

    def run_replicates(
        self,
        model: CrossingModel,
        grid: Sequence[Mapping[str, Any] | None],
        n_replicates: int,
        bound_pairs: Sequence[tuple[float, float]] | tuple[float, float],
        use_fitted_random_effects: bool,
        random_state: RandomState = None,
    ) -> ReplicateSet:
        """Run the bootstrap and pool the replicate crossings.

        Args:
            model: The original fitted model (read-only).
            grid: Auxiliary covariate rows.
            n_replicates: Replicates to attempt.
            bound_pairs: ``(lower, upper)`` per row, or one pair for all.
            use_fitted_random_effects: Conditional (``True``) or
                unconditional (``False``) simulation.
            random_state: Root seed; replicate ``b`` uses child ``b``.

        Returns:
            The pooled :class:`ReplicateSet`.  Does not apply the
            drop-fraction check; :meth:`summarise` does.
        """
        if n_replicates < 2:
            raise ValueError(f"n_replicates must be >= 2, got {n_replicates}.")
        grid = list(grid)
        pairs = _normalise_bound_pairs(bound_pairs, len(grid))
        conditional = bool(use_fitted_random_effects)
        rngs = spawn_generators(random_state, n_replicates)
        n_jobs = resolve_n_jobs(self.n_jobs)

        deadline = None
        chunk = n_replicates
        if self.timeout is not None:
            deadline = time.perf_counter() + self.timeout
            chunk = max(1, effective_n_jobs(n_jobs))

        outcomes: list[tuple[np.ndarray | None, str | None, bool]] = []
        timed_out = False
        for start in range(0, n_replicates, chunk):
            if deadline is not None and time.perf_counter() > deadline:
                timed_out = True
                break
            batch = rngs[start : start + chunk]
            if n_jobs == 1:
                outcomes.extend(
                    self._run_one(model, grid, pairs, conditional, rng) for rng in batch
                )
            else:
                outcomes.extend(
                    Parallel(n_jobs=n_jobs, prefer="threads")(
                        delayed(self._run_one)(model, grid, pairs, conditional, rng)
                        for rng in batch
                    )
                )

        reasons: Counter[str] = Counter(
            reason for _, reason, _ in outcomes if reason is not None
        )
        n_skipped = n_replicates - len(outcomes)
        if n_skipped:
            reasons[_TIMEOUT] = n_skipped
            logger.debug(
                "Bootstrap timeout after %d of %d replicates.",
                len(outcomes),
                n_replicates,
            )

        kept = [values for values, reason, _ in outcomes if reason is None]
        values = np.vstack(kept) if kept else np.empty((0, len(grid)))
        n_unconverged = sum(
            1 for _, reason, ok in outcomes if reason is None and not ok
        )
        n_dropped = sum(reasons.values())
        logger.debug(
            "Bootstrap: %d kept, %d dropped %s, %d with unconverged rows.",
            len(kept),
            n_dropped,
            dict(reasons),
            n_unconverged,
        )
        return ReplicateSet(
            values=values,
            n_replicates=n_replicates,
            n_dropped=n_dropped,
            drop_reasons=dict(reasons),
            conditional=conditional,
            n_unconverged=n_unconverged,
            timed_out=timed_out,
        )

    # ---- Summary ---------------------------------------------------

    def summarise(
        self,
        replicates: ReplicateSet,
        point_estimates: Sequence[float],
    ) -> list[UncertaintyInterval]:
        """One interval per grid row from a pooled replicate set.

        Raises:
            InsufficientReplicatesError: If the dropped fraction
                exceeds ``max_drop_fraction``.
        """
        if replicates.drop_fraction > self.max_drop_fraction:
            raise InsufficientReplicatesError(
                replicates.n_dropped,
                replicates.n_replicates,
                self.max_drop_fraction,
            )
        if replicates.n_dropped:
            warnings.warn(
                f"{replicates.n_dropped} of {replicates.n_replicates} bootstrap "
                f"replicates were dropped ({replicates.drop_reasons}).",
                UserWarning,
                stacklevel=3,
            )

        intervals = []
        for i, point in enumerate(point_estimates):
            lower, upper, sd = summarise_replicates(
                replicates.values[:, i],
                float(point),
                self.interval_method,
                self.confidence_level,
            )
            intervals.append(
                UncertaintyInterval(
                    point_estimate=float(point),
                    lower=lower,
                    upper=upper,
                    replicate_count=replicates.n_kept,
                    method=self.interval_method,
                    confidence_level=self.confidence_level,
                    std_error=sd,
                    conditional=replicates.conditional,
                    n_dropped=replicates.n_dropped,
                    n_unconverged=replicates.n_unconverged,
                )
            )
        return intervals

    def estimate(
        self,
        model: CrossingModel,
        grid: Sequence[Mapping[str, Any] | None],
        n_replicates: int,
        bound_pairs: Sequence[tuple[float, float]] | tuple[float, float],
        use_fitted_random_effects: bool,
        random_state: RandomState = None,
    ) -> list[UncertaintyInterval]:
        """Bootstrap intervals for every grid row.

        ``point_estimate`` on each interval is the joint solve against
        the original model; it need not be the interval midpoint.

        Returns:
            One :class:`UncertaintyInterval` per row, in grid order.

        Raises:
            InsufficientReplicatesError: If too many replicates were
                dropped.
        """
        grid = list(grid)
        point = self.solve_grid(model, grid, bound_pairs)
        replicates = self.run_replicates(
            model,
            grid,
            n_replicates,
            bound_pairs,
            use_fitted_random_effects,
            random_state=random_state,
        )
        return self.summarise(replicates, [r.target_value for r in point])


__all__ = ["BootstrapUncertaintyEstimator", "ReplicateSet"]
