"""Run context — mutable accumulator for orchestration artifacts.

A :class:`RunContext` travels through one :meth:`CrossingEngine.run`
call, collecting intermediate artifacts at their natural computation
points.  Downstream consumers (display, debugging, correlation of
crossings across rows) read from the context instead of re-computing.

The context is **not** part of the public serialisation API: it
carries NumPy arrays and the opaque model object.
:meth:`~_results.ResultTable.to_dict` skips it automatically.

Lifecycle::

    ┌──────────────────────────────────────────────────┐
    │  CrossingEngine.run(grid, mode)                  │
    │  ├─ ctx = RunContext()                           │
    │  ├─ ctx.model / ctx.mode / ctx.bounds = …        │
    │  ├─ ctx.grid = normalised covariate rows         │
    │  ├─ point solves        → ctx.n_failed_rows      │
    │  ├─ gaussian estimator  → ctx.n_draws_dropped    │
    │  │                        ctx.n_draws_unconverged│
    │  ├─ bootstrap estimator → ctx.replicates, …      │
    │  ├─ ctx.elapsed_seconds = …                      │
    │  └─ ResultTable(…, context=ctx)                  │
    └──────────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass
class RunContext:
    """Mutable accumulator for run artifacts.

    Every field defaults to ``None`` (or an empty container) so the
    context can be created empty at the start of a run and populated
    incrementally.  Consumers should check for ``None`` before using a
    field — missing data means that stage did not run.
    """

    # ---- Inputs --------------------------------------------------
    model: Any = None
    """The fitted model the run was performed against."""

    mode: str | None = None
    """``"point_only"``, ``"gaussian"``, or ``"bootstrap"``."""

    grid: list[dict[str, Any]] | None = None
    """Normalised auxiliary covariate rows, in grid order."""

    bounds: tuple[float, float] | None = None
    """Search bounds used for every row."""

    threshold: float | None = None
    """Link-scale threshold."""

    n_jobs: int | None = None
    """Worker count actually used."""

    # ---- Point solves --------------------------------------------
    n_failed_rows: int = 0
    """Rows whose point solve could not run (invalid covariates or
    prediction errors)."""

    n_unconverged_rows: int = 0
    """Rows whose point solve ran but did not reach the tolerance."""

    # ---- Gaussian ------------------------------------------------
    n_draws_dropped: int = 0
    """Coefficient draws dropped across all rows."""

    n_draws_unconverged: int = 0
    """Kept coefficient draws, across all rows, whose solve did not
    reach the tolerance."""

    # ---- Bootstrap -----------------------------------------------
    replicates: np.ndarray | None = None
    """Kept replicate crossings, shape ``(R_kept, n_rows)``, one column
    per grid row in grid order.  Each row of this matrix comes from one
    refit, so cross-row correlation is preserved.  Columns of grid rows
    whose point solve failed are all NaN."""

    n_replicates_requested: int | None = None
    """Replicates requested by the caller."""

    n_replicates_dropped: int | None = None
    """Replicates dropped (refit failure, solve failure, or timeout)."""

    drop_reasons: dict[str, int] = field(default_factory=dict)
    """Dropped-replicate counts keyed by reason."""

    conditional: bool | None = None
    """Bootstrap simulation semantics (``True`` = fitted random
    effects held fixed)."""

    timed_out: bool = False
    """Whether the batch timeout cut the bootstrap short."""

    # ---- Timing & warnings ---------------------------------------
    elapsed_seconds: float | None = None
    """Wall-clock duration of the run."""

    warnings_captured: list[str] = field(default_factory=list)
    """Warning messages emitted during the run."""


__all__ = ["RunContext"]
