"""Crossing engine — per-row solves, interval estimation, result assembly.

The :class:`CrossingEngine` owns one run over a grid of auxiliary
covariate combinations:

1. **Mode validation** — ``"point_only"``, ``"gaussian"`` or
   ``"bootstrap"``; the Gaussian path checks the model's covariance
   before any work starts.
2. **Grid normalisation** — pandas/polars frames, a single mapping, a
   sequence of mappings, or ``None`` for a model whose only covariate
   is the target.
3. **Point solves** — one bounded Brent solve per row.  Rows are
   independent and run through ``joblib`` threads; results are
   assembled in grid order.  A malformed row or a model-side
   prediction failure becomes a non-converged row with a diagnostic,
   and the batch continues.
4. **Intervals** — per-row Gaussian resampling, or one shared bootstrap
   replicate set for the whole grid.
5. **Flags** — crossings outside the target's training range are
   marked ``extrapolated`` and reported with an
   :class:`~l50.ExtrapolationWarning`.

The engine never mutates the model or the caller's rows.
"""

from __future__ import annotations

import logging
import time
import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
from joblib import Parallel, delayed

from ._compat import DataFrameLike, _ensure_pandas_df, _is_dataframe_like
from ._config import _validate_n_jobs, resolve_n_jobs
from ._context import RunContext
from ._errors import ExtrapolationWarning, InvalidCovariateError, PredictionError
from ._random import spawn_generators
from ._results import ResultRow, ResultTable, SolveResult, UncertaintyInterval
from ._typing import RandomState
from .bootstrap import BootstrapUncertaintyEstimator
from .gaussian import GaussianUncertaintyEstimator, checked_covariance
from .link import LinkEvaluator
from .models import CrossingModel
from .solver import ThresholdSolver

logger = logging.getLogger(__name__)

_MODES = ("point_only", "gaussian", "bootstrap")
_FAILED_PREFIXES = ("invalid_covariate", "prediction_error")
_INTERVAL_METHODS = ("normal", "percentile")

GridLike = DataFrameLike | Mapping[str, Any] | Sequence[Mapping[str, Any]] | None


# ------------------------------------------------------------------ #
# Configuration
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class CrossingConfig:
    """Numeric options for one engine run.

    Attributes:
        threshold: Link-scale level to cross (``0.0`` is the L50 on
            the logit scale; see :func:`l50.probability_to_threshold`).
        bounds: ``(lower, upper)`` search bounds in the target's native
            units.  ``None`` uses the target's training range.
        tolerance: Convergence threshold on the squared residual.
        max_iter: Optimiser iteration cap per solve.
        time_budget: Wall-clock seconds per solve, or ``None``.
        n_samples: Coefficient draws per row (Gaussian mode).
        n_replicates: Bootstrap replicates (bootstrap mode).
        use_fitted_random_effects: Conditional (``True``) or
            unconditional (``False``) bootstrap simulation.
        confidence_level: Nominal interval coverage.
        interval_method: ``"normal"`` or ``"percentile"``; ``None``
            picks the estimator's default (normal for Gaussian,
            percentile for bootstrap).
        max_drop_fraction: Tolerated fraction of dropped replicates.
        random_state: Root seed for all stochastic steps.
        n_jobs: joblib workers; ``None`` uses :func:`l50.get_n_jobs`.
        timeout: Bootstrap batch wall-clock limit, or ``None``.
    """

    threshold: float = 0.0
    bounds: tuple[float, float] | None = None
    tolerance: float = 1e-6
    max_iter: int = 500
    time_budget: float | None = None
    n_samples: int = 1000
    n_replicates: int = 250
    use_fitted_random_effects: bool = False
    confidence_level: float = 0.95
    interval_method: str | None = None
    max_drop_fraction: float = 0.10
    random_state: RandomState = None
    n_jobs: int | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not np.isfinite(self.threshold):
            raise ValueError(f"threshold must be finite, got {self.threshold}.")
        if self.bounds is not None:
            try:
                lo, hi = (float(b) for b in self.bounds)
            except (TypeError, ValueError):
                msg = f"bounds must be a (lower, upper) pair, got {self.bounds!r}."
                raise ValueError(msg) from None
            if not (np.isfinite(lo) and np.isfinite(hi)) or lo >= hi:
                raise ValueError(f"bounds must be finite with lower < upper, got {self.bounds!r}.")
            object.__setattr__(self, "bounds", (lo, hi))
        if self.tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {self.tolerance}.")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}.")
        if self.time_budget is not None and self.time_budget < 0:
            raise ValueError(f"time_budget must be non-negative, got {self.time_budget}.")
        if self.n_samples < 2:
            raise ValueError(f"n_samples must be >= 2, got {self.n_samples}.")
        if self.n_replicates < 2:
            raise ValueError(f"n_replicates must be >= 2, got {self.n_replicates}.")
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError(
                f"confidence_level must lie in (0, 1), got {self.confidence_level}."
            )
        if self.interval_method is not None and self.interval_method not in _INTERVAL_METHODS:
            raise ValueError(
                f"interval_method must be one of {_INTERVAL_METHODS} or None, "
                f"got {self.interval_method!r}."
            )
        if not 0.0 <= self.max_drop_fraction <= 1.0:
            raise ValueError(
                f"max_drop_fraction must lie in [0, 1], got {self.max_drop_fraction}."
            )
        if self.n_jobs is not None:
            _validate_n_jobs(self.n_jobs)
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}.")


def _failed(solve: SolveResult) -> bool:
    """Whether the row could not be solved at all."""
    return solve.diagnostic is not None and solve.diagnostic.startswith(
        _FAILED_PREFIXES
    )


# ------------------------------------------------------------------ #
# Grid normalisation
# ------------------------------------------------------------------ #


def _normalise_grid(auxiliary_grid: GridLike, target: str) -> list[Any]:
    """Turn the accepted grid shapes into a list of row objects.

    Mapping rows are copied and stripped of the target.  Anything else
    is passed through untouched so the evaluator can reject it for that
    row alone.
    """
    if auxiliary_grid is None:
        return [{}]
    if _is_dataframe_like(auxiliary_grid):
        frame = _ensure_pandas_df(auxiliary_grid, name="auxiliary_grid")
        raw: Sequence[Any] = frame.to_dict(orient="records")
    elif isinstance(auxiliary_grid, Mapping):
        raw = [auxiliary_grid]
    elif isinstance(auxiliary_grid, Sequence) and not isinstance(auxiliary_grid, str):
        raw = auxiliary_grid
    else:
        msg = (
            "auxiliary_grid must be a DataFrame, a mapping, a sequence of "
            f"mappings, or None; got {type(auxiliary_grid).__name__}."
        )
        raise TypeError(msg)
    if len(raw) == 0:
        raise ValueError("auxiliary_grid has no rows.")
    rows = []
    for row in raw:
        if isinstance(row, Mapping):
            rows.append({k: v for k, v in row.items() if k != target})
        else:
            rows.append(row)
    return rows


# ------------------------------------------------------------------ #
# Engine
# ------------------------------------------------------------------ #


class CrossingEngine:
    """Run threshold-crossing estimation over a covariate grid.

    The engine is immutable after construction: it captures the model,
    the configuration, the resolved bounds and the worker count.

    Attributes:
        model: The fitted model (read-only).
        config: The run options.
        bounds: Resolved ``(lower, upper)`` search bounds.
        n_jobs: Resolved joblib worker count.
        solver: The shared :class:`ThresholdSolver`.
    """

    def __init__(self, model: CrossingModel, config: CrossingConfig | None = None) -> None:
        if not isinstance(model, CrossingModel):
            msg = f"{type(model).__name__} does not implement the CrossingModel protocol."
            raise TypeError(msg)
        self.model = model
        self.config = config if config is not None else CrossingConfig()
        if self.config.bounds is not None:
            self.bounds = self.config.bounds
        else:
            lo, hi = model.target_range()
            self.bounds = (float(lo), float(hi))
        self.n_jobs = resolve_n_jobs(self.config.n_jobs)
        self.solver = ThresholdSolver(
            tolerance=self.config.tolerance,
            max_iter=self.config.max_iter,
            time_budget=self.config.time_budget,
        )

    # ---- Per-row work ----------------------------------------------

    def _point_solve(self, row: Any) -> SolveResult:
        evaluator = LinkEvaluator(self.model, threshold=self.config.threshold)
        try:
            return self.solver.solve(
                evaluator.objective(self.model.point_coefficients(), row),
                *self.bounds,
            )
        except InvalidCovariateError as exc:
            logger.debug("Row %r rejected: %s", row, exc)
            return SolveResult.failed(self.bounds, f"invalid_covariate: {exc}")
        except PredictionError as exc:
            logger.debug("Row %r could not be evaluated: %s", row, exc)
            return SolveResult.failed(self.bounds, f"prediction_error: {exc}")

    def _gaussian_row(
        self,
        row: Any,
        estimator: GaussianUncertaintyEstimator,
        rng: np.random.Generator,
    ) -> tuple[SolveResult, UncertaintyInterval | None]:
        solve = self._point_solve(row)
        if _failed(solve):
            return solve, None
        interval = estimator.estimate(
            self.model,
            row,
            self.config.n_samples,
            *self.bounds,
            random_state=rng,
            point=solve,
        )
        return solve, interval

    def _map_rows(self, fn: Any, *iterables: Sequence[Any]) -> list[Any]:
        """Apply *fn* row-wise, in parallel when ``n_jobs != 1``."""
        if self.n_jobs == 1:
            return [fn(*args) for args in zip(*iterables)]
        return list(
            Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(fn)(*args) for args in zip(*iterables)
            )
        )

    # ---- Modes -----------------------------------------------------

    def _run_gaussian(
        self, rows: list[Any], ctx: RunContext
    ) -> tuple[list[SolveResult], list[UncertaintyInterval | None]]:
        estimator = GaussianUncertaintyEstimator(
            self.solver,
            threshold=self.config.threshold,
            interval_method=self.config.interval_method or "normal",
            confidence_level=self.config.confidence_level,
        )
        rngs = spawn_generators(self.config.random_state, len(rows))
        outcomes = self._map_rows(
            lambda row, rng: self._gaussian_row(row, estimator, rng), rows, rngs
        )
        solves = [solve for solve, _ in outcomes]
        intervals = [interval for _, interval in outcomes]
        ctx.n_draws_dropped = sum(i.n_dropped for i in intervals if i is not None)
        ctx.n_draws_unconverged = sum(
            i.n_unconverged for i in intervals if i is not None
        )
        return solves, intervals

    def _run_bootstrap(
        self, rows: list[Any], ctx: RunContext
    ) -> tuple[list[SolveResult], list[UncertaintyInterval | None]]:
        solves = self._map_rows(self._point_solve, rows)
        usable = [i for i, solve in enumerate(solves) if not _failed(solve)]
        intervals: list[UncertaintyInterval | None] = [None] * len(rows)
        if not usable:
            return solves, intervals

        estimator = BootstrapUncertaintyEstimator(
            self.solver,
            threshold=self.config.threshold,
            interval_method=self.config.interval_method or "percentile",
            confidence_level=self.config.confidence_level,
            max_drop_fraction=self.config.max_drop_fraction,
            n_jobs=self.n_jobs,
            timeout=self.config.timeout,
        )
        grid = [rows[i] for i in usable]
        point = estimator.solve_grid(self.model, grid, self.bounds)
        replicates = estimator.run_replicates(
            self.model,
            grid,
            self.config.n_replicates,
            self.bounds,
            self.config.use_fitted_random_effects,
            random_state=self.config.random_state,
        )
        # Failed rows keep an all-NaN column so columns line up with the grid.
        padded = np.full((replicates.values.shape[0], len(rows)), np.nan)
        padded[:, usable] = replicates.values
        ctx.replicates = padded
        ctx.n_replicates_requested = replicates.n_replicates
        ctx.n_replicates_dropped = replicates.n_dropped
        ctx.drop_reasons = dict(replicates.drop_reasons)
        ctx.conditional = replicates.conditional
        ctx.timed_out = replicates.timed_out

        summarised = estimator.summarise(replicates, [r.target_value for r in point])
        for i, interval in zip(usable, summarised):
            intervals[i] = interval
        return solves, intervals

    # ---- Public ----------------------------------------------------

    def run(self, auxiliary_grid: GridLike = None, mode: str = "point_only") -> ResultTable:
        """Solve every grid row and attach intervals for *mode*.

        Args:
            auxiliary_grid: Auxiliary covariate combinations.  A target
                column, if present, is ignored.
            mode: ``"point_only"``, ``"gaussian"`` or ``"bootstrap"``.

        Returns:
            A :class:`ResultTable` with rows in grid order.

        Raises:
            ValueError: If *mode* is unknown or the grid is empty.
            UnsupportedModelError: If ``mode="gaussian"`` and the model
                has no usable covariance.
            InsufficientReplicatesError: If the bootstrap dropped too
                many replicates.
        """
        if mode not in _MODES:
            raise ValueError(f"mode must be one of {_MODES}, got {mode!r}.")
        if mode == "gaussian":
            checked_covariance(self.model)

        t0 = time.perf_counter()
        ctx = RunContext(
            model=self.model,
            mode=mode,
            bounds=self.bounds,
            threshold=self.config.threshold,
            n_jobs=self.n_jobs,
        )
        rows = _normalise_grid(auxiliary_grid, self.model.target)
        ctx.grid = [dict(row) if isinstance(row, Mapping) else {} for row in rows]

        if mode == "gaussian":
            solves, intervals = self._run_gaussian(rows, ctx)
        elif mode == "bootstrap":
            solves, intervals = self._run_bootstrap(rows, ctx)
        else:
            solves = self._map_rows(self._point_solve, rows)
            intervals = [None] * len(rows)

        lo, hi = self.model.target_range()
        extrapolated = [
            bool(np.isfinite(s.target_value) and not lo <= s.target_value <= hi)
            for s in solves
        ]
        if any(extrapolated):
            msg = (
                f"{sum(extrapolated)} crossing(s) lie outside the training range "
                f"[{lo:g}, {hi:g}] of {self.model.target!r}."
            )
            ctx.warnings_captured.append(msg)
            warnings.warn(msg, ExtrapolationWarning, stacklevel=2)

        ctx.n_failed_rows = sum(1 for s in solves if _failed(s))
        ctx.n_unconverged_rows = sum(
            1 for s in solves if not s.converged and not _failed(s)
        )
        ctx.elapsed_seconds = time.perf_counter() - t0
        logger.debug(
            "%s run over %d rows: %d failed, %d unconverged, %.3fs.",
            mode,
            len(rows),
            ctx.n_failed_rows,
            ctx.n_unconverged_rows,
            ctx.elapsed_seconds,
        )

        result_rows = tuple(
            ResultRow(
                covariates=covariates,
                solve=solve,
                interval=interval,
                extrapolated=flag,
            )
            for covariates, solve, interval, flag in zip(
                ctx.grid, solves, intervals, extrapolated
            )
        )
        return ResultTable(
            rows=result_rows,
            mode=mode,
            target=self.model.target,
            threshold=self.config.threshold,
            context=ctx,
        )


__all__ = ["CrossingConfig", "CrossingEngine"]
