"""Typed result objects for threshold-crossing estimation.

Frozen dataclasses that provide:

* **Attribute access** — ``result.target_value``, ``interval.lower``.
* **Dict-like access** — ``result["converged"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

Four result types mirror the pipeline stages:

* :class:`SolveResult` — one root-finder call.
* :class:`UncertaintyInterval` — one interval from an uncertainty
  estimator.
* :class:`ResultRow` — one auxiliary-covariate combination.
* :class:`ResultTable` — the orchestrator's output, rows in grid order.

All types are frozen: results are a snapshot of a completed solve and
are never mutated after construction.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from ._context import RunContext

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, tuples, dataclass results,
    np.ndarray, np.integer, np.bool_ and np.floating so that
    :meth:`to_dict` returns a fully JSON-serialisable structure.
    """
    if isinstance(obj, _DictAccessMixin):
        return obj.to_dict()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test
    """

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"context"})

    def __getitem__(self, key: str) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        """Membership test: ``"key" in result``."""
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            result[f.name] = _numpy_to_python(getattr(self, f.name))
        return result


# ------------------------------------------------------------------ #
# SolveResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class SolveResult(_DictAccessMixin):
    """Outcome of one threshold-crossing solve.

    Created fresh by every call to the solver; never mutated.
    """

    target_value: float
    """Covariate value at the minimum of the squared-residual objective."""

    objective_at_minimum: float
    """Squared link-scale residual at ``target_value``."""

    converged: bool
    """``objective_at_minimum <= tolerance``.  ``False`` is a result,
    not an error: the value may still be usable (e.g. a boundary)."""

    bracket: tuple[float, float]
    """Search bounds ``(lower, upper)`` in the target's native units."""

    n_evaluations: int = 0
    """Objective evaluations spent by the optimiser."""

    diagnostic: str | None = None
    """``None`` for a clean solve, otherwise a short reason
    (``"budget_exceeded"``, ``"prediction_error: …"``, …)."""

    @property
    def at_boundary(self) -> bool:
        """Whether the solution sits exactly on one of the bounds."""
        lo, hi = self.bracket
        return bool(self.target_value == lo or self.target_value == hi)

    @classmethod
    def failed(cls, bracket: tuple[float, float], diagnostic: str) -> SolveResult:
        """A non-converged placeholder for a solve that could not run."""
        return cls(
            target_value=float("nan"),
            objective_at_minimum=float("inf"),
            converged=False,
            bracket=(float(bracket[0]), float(bracket[1])),
            n_evaluations=0,
            diagnostic=diagnostic,
        )


# ------------------------------------------------------------------ #
# UncertaintyInterval
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class UncertaintyInterval(_DictAccessMixin):
    """Interval estimate for one crossing point.

    ``lower <= point_estimate <= upper`` is **not** guaranteed: a
    percentile interval from a skewed replicate distribution can
    exclude the point estimate obtained from the original fit.
    """

    point_estimate: float
    """Crossing solved against the unperturbed model."""

    lower: float
    """Lower interval bound."""

    upper: float
    """Upper interval bound."""

    replicate_count: int
    """Draws or bootstrap replicates that contributed."""

    method: str
    """``"normal"`` (point ± z·sd) or ``"percentile"``."""

    confidence_level: float
    """Nominal coverage, e.g. ``0.95``."""

    std_error: float
    """Sample standard deviation of the replicate values."""

    conditional: bool | None = None
    """Bootstrap only: ``True`` when random effects were held at their
    fitted values, ``False`` when they were redrawn.  ``None`` for the
    Gaussian estimator, which has no latent effects to condition on."""

    n_dropped: int = 0
    """Draws or replicates that failed and were excluded."""

    n_unconverged: int = 0
    """Kept draws or replicates whose solve stopped at a bound or ran
    out of iterations before reaching the tolerance."""

    @property
    def width(self) -> float:
        """``upper − lower``."""
        return float(self.upper - self.lower)

    def contains(self, value: float) -> bool:
        """Whether *value* lies inside ``[lower, upper]``."""
        return bool(self.lower <= value <= self.upper)


# ------------------------------------------------------------------ #
# ResultRow / ResultTable
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ResultRow(_DictAccessMixin):
    """One auxiliary-covariate combination and its crossing estimate."""

    covariates: dict[str, Any]
    """Auxiliary covariates held fixed for this row (target excluded)."""

    solve: SolveResult
    """Point solve (single-variable path)."""

    interval: UncertaintyInterval | None = None
    """Interval estimate; ``None`` in ``point_only`` mode."""

    extrapolated: bool = False
    """Whether the point estimate lies outside the target's training
    range.  Permitted, but the caller was warned."""


@dataclass(frozen=True)
class ResultTable(_DictAccessMixin):
    """Ordered crossing estimates, one row per grid combination.

    Rows appear in the orchestrator's iteration order over the input
    grid, never in solve-completion order.
    """

    rows: tuple[ResultRow, ...]
    """Per-combination results in grid order."""

    mode: str
    """``"point_only"``, ``"gaussian"``, or ``"bootstrap"``."""

    target: str
    """Name of the covariate solved for."""

    threshold: float
    """Link-scale level the curve was solved to cross."""

    context: RunContext | None = field(default=None, repr=False, compare=False)
    """Run artifacts (replicate matrix, timings, warnings).  Excluded
    from ``to_dict()`` serialisation."""

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[ResultRow]:  # type: ignore[override]
        return iter(self.rows)

    def __getitem__(self, key: int | str) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            return self.rows[key]
        return super().__getitem__(key)

    @property
    def point_estimates(self) -> np.ndarray:
        """Point crossings as an array, shape ``(n_rows,)``."""
        return np.array([row.solve.target_value for row in self.rows], dtype=float)

    def to_frame(self) -> pd.DataFrame:
        """Flatten to a :class:`pandas.DataFrame`, one line per row.

        Columns: the auxiliary covariates, then ``target_value``,
        ``objective``, ``converged``, ``extrapolated``, ``diagnostic``,
        and — when intervals were computed — ``point_estimate``,
        ``lower``, ``upper``, ``std_error``, ``replicate_count``,
        ``n_dropped``, ``n_unconverged``.
        """
        records: list[dict[str, Any]] = []
        for row in self.rows:
            record: dict[str, Any] = dict(row.covariates)
            record["target_value"] = row.solve.target_value
            record["objective"] = row.solve.objective_at_minimum
            record["converged"] = row.solve.converged
            record["extrapolated"] = row.extrapolated
            record["diagnostic"] = row.solve.diagnostic
            if row.interval is not None:
                record["point_estimate"] = row.interval.point_estimate
                record["lower"] = row.interval.lower
                record["upper"] = row.interval.upper
                record["std_error"] = row.interval.std_error
                record["replicate_count"] = row.interval.replicate_count
                record["n_dropped"] = row.interval.n_dropped
                record["n_unconverged"] = row.interval.n_unconverged
            records.append(record)
        return pd.DataFrame.from_records(records)


__all__ = ["ResultRow", "ResultTable", "SolveResult", "UncertaintyInterval"]
