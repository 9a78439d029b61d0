"""Bounded minimisation of squared link residuals.

The crossing point is found by *minimising* the squared residual
``(η(x) − threshold)²`` rather than by root bracketing.  This works
whether or not the residual changes sign inside the bounds: when the
true root lies outside ``[lower, upper]`` the minimiser settles on the
nearest bound and reports ``converged=False`` instead of failing.

Two paths:

* :meth:`ThresholdSolver.solve` — one target value, bounded Brent
  minimisation (``scipy.optimize.minimize_scalar(method="bounded")``).
  No derivative is needed; the model is a black box.
* :meth:`ThresholdSolver.solve_many` — one target value per grid row,
  box-constrained L-BFGS-B (``scipy.optimize.minimize``) on the summed
  objective.  When per-row residuals are supplied, the gradient is
  taken by a single shifted evaluation of every row at once: the
  objective is separable, so row ``i`` of the gradient depends only on
  target ``i``.

Neither path raises on non-convergence.  ``converged`` is simply
``objective_at_minimum <= tolerance``.  With several roots inside the
bounds either path returns *a* local minimum, not necessarily the
crossing closest to any particular point.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import numpy as np
from scipy.optimize import minimize, minimize_scalar

from ._results import SolveResult
from .link import LinkEvaluator

_BUDGET_EXCEEDED = "budget_exceeded"
_SQRT_EPS = float(np.sqrt(np.finfo(float).eps))


class _BudgetExceeded(Exception):
    """Internal signal: the wall-clock budget ran out mid-optimisation."""


class _Tracker:
    """Objective wrapper that counts calls and keeps the best point seen.

    Raises :class:`_BudgetExceeded` from inside the optimiser once the
    deadline has passed, so scipy unwinds and the best point so far
    can be reported.
    """

    def __init__(self, fn: Callable[[Any], Any], deadline: float | None) -> None:
        self._fn = fn
        self._deadline = deadline
        self.n_evaluations = 0
        self.best_x: Any = None
        self.best_f = np.inf

    def check_deadline(self) -> None:
        if self._deadline is not None and time.perf_counter() > self._deadline:
            raise _BudgetExceeded

    def record(self, x: Any, f: float) -> float:
        self.n_evaluations += 1
        if not np.isfinite(f):
            f = np.inf
        if f < self.best_f:
            self.best_f = f
            self.best_x = np.array(x, dtype=float, copy=True)
        return f

    def __call__(self, x: Any) -> float:
        self.check_deadline()
        return self.record(x, float(self._fn(x)))


class ThresholdSolver:
    """Locate threshold crossings by bounded minimisation.

    Args:
        tolerance: Convergence threshold on the squared residual.
        max_iter: Iteration cap passed to the optimiser.
        time_budget: Wall-clock seconds per call.  When exceeded, the
            best point seen so far is returned with
            ``converged=False`` and ``diagnostic="budget_exceeded"``.
            ``None`` disables the budget.
        xatol: Absolute x-tolerance of the bounded Brent search.

    Raises:
        ValueError: If any option is out of range.
    """

    def __init__(
        self,
        tolerance: float = 1e-6,
        max_iter: int = 500,
        time_budget: float | None = None,
        xatol: float = 1e-8,
    ) -> None:
        if tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {tolerance}.")
        if max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {max_iter}.")
        if time_budget is not None and time_budget < 0:
            raise ValueError(f"time_budget must be non-negative, got {time_budget}.")
        if xatol <= 0:
            raise ValueError(f"xatol must be positive, got {xatol}.")
        self.tolerance = float(tolerance)
        self.max_iter = int(max_iter)
        self.time_budget = time_budget
        self.xatol = float(xatol)

    def __repr__(self) -> str:
        return (
            f"ThresholdSolver(tolerance={self.tolerance!r}, "
            f"max_iter={self.max_iter!r}, time_budget={self.time_budget!r}, "
            f"xatol={self.xatol!r})"
        )

    def _deadline(self) -> float | None:
        if self.time_budget is None:
            return None
        return time.perf_counter() + self.time_budget

    # ---- Single variable -------------------------------------------

    def solve(
        self,
        objective_fn: Callable[[float], float],
        lower_bound: float,
        upper_bound: float,
        tolerance: float | None = None,
    ) -> SolveResult:
        """Minimise a univariate objective over ``[lower_bound, upper_bound]``.

        Both bounds are evaluated after the Brent search and the best
        of the three candidates is returned, so a root lying outside
        the bracket yields exactly a bound.

        Args:
            objective_fn: Squared residual as a function of the target.
            lower_bound: Lower search bound, native units.
            upper_bound: Upper search bound, native units.
            tolerance: Overrides the solver's default tolerance.

        Returns:
            A fresh :class:`SolveResult`.

        Raises:
            ValueError: If the bounds are not finite with
                ``lower_bound < upper_bound``.
            PredictionError: Propagated from the objective.
        """
        lo, hi = _check_bounds(lower_bound, upper_bound)
        tol = self.tolerance if tolerance is None else float(tolerance)
        tracker = _Tracker(lambda x: objective_fn(float(x)), self._deadline())
        diagnostic = None

        try:
            res = minimize_scalar(
                tracker,
                bounds=(lo, hi),
                method="bounded",
                options={"xatol": self.xatol, "maxiter": self.max_iter},
            )
            tracker(lo)
            tracker(hi)
            if not res.success:
                diagnostic = "max_iter_reached"
        except _BudgetExceeded:
            diagnostic = _BUDGET_EXCEEDED

        if tracker.best_x is None:
            return SolveResult(
                target_value=float("nan"),
                objective_at_minimum=float("inf"),
                converged=False,
                bracket=(lo, hi),
                n_evaluations=tracker.n_evaluations,
                diagnostic=diagnostic,
            )

        f = float(tracker.best_f)
        converged = f <= tol and diagnostic != _BUDGET_EXCEEDED
        if converged:
            diagnostic = None
        return SolveResult(
            target_value=float(tracker.best_x),
            objective_at_minimum=f,
            converged=converged,
            bracket=(lo, hi),
            n_evaluations=tracker.n_evaluations,
            diagnostic=diagnostic,
        )

    # ---- Multiple variables ----------------------------------------

    def solve_many(
        self,
        objective_fn: Callable[[np.ndarray], float],
        bounds: Sequence[tuple[float, float]],
        x0: np.ndarray | Sequence[float] | None = None,
        tolerance: float | None = None,
        residual_fn: Callable[[np.ndarray], np.ndarray] | None = None,
    ) -> list[SolveResult]:
        """Jointly minimise a summed objective, one variable per row.

        Args:
            objective_fn: Aggregate sum of squared residuals.  Ignored
                when *residual_fn* is given (the sum is then formed
                from the residual vector).
            bounds: ``(lower, upper)`` per row.
            x0: Starting point; defaults to each bracket's midpoint.
                Values are clipped into their bounds.
            tolerance: Overrides the solver's default tolerance.
            residual_fn: Per-row residual vector.  Enables the
                separable finite-difference gradient and per-row
                convergence; without it every row reports the
                aggregate objective.

        Returns:
            One :class:`SolveResult` per row, in row order.

        Raises:
            ValueError: If the bounds or *x0* are malformed.
            PredictionError: Propagated from the objective.
        """
        brackets = [_check_bounds(lo, hi) for lo, hi in bounds]
        if not brackets:
            return []
        lower = np.array([lo for lo, _ in brackets])
        upper = np.array([hi for _, hi in brackets])
        if x0 is None:
            start = (lower + upper) / 2.0
        else:
            start = np.asarray(x0, dtype=float).ravel()
            if start.shape[0] != len(brackets):
                msg = f"x0 has {start.shape[0]} values for {len(brackets)} rows."
                raise ValueError(msg)
        start = np.clip(start, lower, upper)
        tol = self.tolerance if tolerance is None else float(tolerance)

        tracker = _Tracker(objective_fn, self._deadline())
        if residual_fn is not None:
            fun, jac = _separable_fun_and_grad(residual_fn, tracker, upper), True
        else:
            fun, jac = tracker, None

        diagnostic = None
        try:
            res = minimize(
                fun,
                start,
                jac=jac,
                method="L-BFGS-B",
                bounds=list(zip(lower, upper)),
                options={"maxiter": self.max_iter, "ftol": 1e-15, "gtol": 1e-10},
            )
            if not res.success:
                diagnostic = f"optimizer: {res.message}"
        except _BudgetExceeded:
            diagnostic = _BUDGET_EXCEEDED

        best = tracker.best_x
        if best is None:
            return [
                SolveResult(
                    target_value=float("nan"),
                    objective_at_minimum=float("inf"),
                    converged=False,
                    bracket=bracket,
                    n_evaluations=tracker.n_evaluations,
                    diagnostic=diagnostic,
                )
                for bracket in brackets
            ]

        if residual_fn is not None:
            r = np.asarray(residual_fn(best), dtype=float)
            per_row = r * r
        else:
            per_row = np.full(len(brackets), tracker.best_f)

        results = []
        for value, f, bracket in zip(best, per_row, brackets):
            converged = bool(f <= tol) and diagnostic != _BUDGET_EXCEEDED
            results.append(
                SolveResult(
                    target_value=float(value),
                    objective_at_minimum=float(f),
                    converged=converged,
                    bracket=bracket,
                    n_evaluations=tracker.n_evaluations,
                    diagnostic=None if converged else diagnostic,
                )
            )
        return results


def _check_bounds(lower_bound: float, upper_bound: float) -> tuple[float, float]:
    lo, hi = float(lower_bound), float(upper_bound)
    if not (np.isfinite(lo) and np.isfinite(hi)) or lo >= hi:
        msg = f"Bounds must be finite with lower < upper, got ({lo}, {hi})."
        raise ValueError(msg)
    return lo, hi


def _separable_fun_and_grad(
    residual_fn: Callable[[np.ndarray], np.ndarray],
    tracker: _Tracker,
    upper: np.ndarray,
) -> Callable[[np.ndarray], tuple[float, np.ndarray]]:
    """Objective and forward-difference gradient from two residual calls.

    Every row is shifted by its own step in a single call; the step is
    reversed for rows that would leave their upper bound.
    """

    def _fun(x: np.ndarray) -> tuple[float, np.ndarray]:
        tracker.check_deadline()
        r = np.asarray(residual_fn(x), dtype=float)
        step = _SQRT_EPS * np.maximum(1.0, np.abs(x))
        step = np.where(x + step > upper, -step, step)
        r_step = np.asarray(residual_fn(x + step), dtype=float)
        grad = 2.0 * r * (r_step - r) / step
        f = tracker.record(x, float(r @ r))
        return f, grad

    return _fun


def closed_form_crossing(
    evaluator: LinkEvaluator,
    coefficients: np.ndarray,
    auxiliary_row: Mapping[str, Any] | None,
) -> float:
    """Exact crossing for a link that is linear in the target.

    Evaluates the residual at the target's training centre ``x0`` and
    at ``x0 + 1``, extrapolates to the root ``x* = x0 − r(x0) / slope``,
    and checks that ``r(x*)`` vanishes.

    Raises:
        ValueError: If the slope is zero or the link is not linear in
            the target.
    """
    x0 = float(evaluator.model.target_center())
    r0 = evaluator.residual(x0, coefficients, auxiliary_row)
    r1 = evaluator.residual(x0 + 1.0, coefficients, auxiliary_row)
    slope = r1 - r0
    if slope == 0.0:
        raise ValueError("The link does not depend on the target; no crossing exists.")
    root = x0 - r0 / slope
    check = evaluator.residual(root, coefficients, auxiliary_row)
    scale = max(1.0, abs(r0), abs(r1))
    if abs(check) > 1e-8 * scale:
        msg = (
            f"The link is not linear in {evaluator.model.target!r} "
            f"(residual {check:.3g} at the extrapolated root)."
        )
        raise ValueError(msg)
    return float(root)


__all__ = ["ThresholdSolver", "closed_form_crossing"]
