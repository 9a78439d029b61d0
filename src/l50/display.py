"""Formatted ASCII table display for threshold-crossing results.

The table mirrors the statsmodels summary style: a header panel with
run metadata, then one line per auxiliary combination with the
crossing, its interval (when one was computed) and a status flag,
followed by notes on extrapolation, non-convergence and dropped
bootstrap replicates.
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

from .engine import _failed

if TYPE_CHECKING:
    from ._results import ResultRow, ResultTable

_WIDTH = 80


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _fmt(value: float | None, width: int) -> str:
    """Right-aligned 4-dp number, or ``N/A`` for ``None``/NaN."""
    if value is None or value != value:
        return f"{'N/A':>{width}}"
    return f"{value:>{width}.4f}"


def _wrap(text: str, width: int = _WIDTH, indent: int = 6) -> str:
    """Word-wrap *text*, indenting continuation lines only."""
    return textwrap.fill(text, width=width, subsequent_indent=" " * indent)


def _row_label(row: ResultRow) -> str:
    if not row.covariates:
        return "(all)"
    return ", ".join(f"{k}={v}" for k, v in row.covariates.items())


def _row_status(row: ResultRow) -> str:
    if _failed(row.solve):
        return "FAIL"
    if not row.solve.converged:
        return "NC"
    if row.extrapolated:
        return "EXT"
    return "ok"


def print_crossing_table(
    table: ResultTable,
    *,
    title: str = "Threshold Crossing Results",
) -> None:
    """Print a result table as an 80-column ASCII summary.

    Args:
        table: Result of :func:`~l50.threshold_crossing` or
            :meth:`~l50.CrossingEngine.run`.
        title: Title for the output table.
    """
    ctx = table.context

    print("=" * _WIDTH)
    for line in textwrap.wrap(title, width=_WIDTH - 2):
        print(f"{line:^{_WIDTH}}")
    print("=" * _WIDTH)

    bounds = ctx.bounds if ctx is not None else None
    bounds_str = f"[{bounds[0]:g}, {bounds[1]:g}]" if bounds else "N/A"
    print(f"{'Target:':<16}{_truncate(table.target, 24):<24}{'Mode:':>16} {table.mode:>23}")
    print(f"{'Threshold:':<16}{table.threshold:<24g}{'Bounds:':>16} {bounds_str:>23}")
    interval = next((r.interval for r in table.rows if r.interval is not None), None)
    if interval is not None:
        level = f"{interval.confidence_level:.0%} {interval.method}"
        count = f"{interval.replicate_count}"
        if interval.conditional is not None:
            level += " (cond.)" if interval.conditional else " (uncond.)"
        print(f"{'Interval:':<16}{level:<24}{'Replicates:':>16} {count:>23}")
    print("-" * _WIDTH)

    # Row label (30) | Crossing (12) | Lower (12) | Upper (12) | 2 gap | Status (12)
    lc = 30
    print(f"{'Covariates':<{lc}}{'Crossing':>12}{'Lower':>12}{'Upper':>12}  {'Status':>12}")
    print("-" * _WIDTH)
    for row in table.rows:
        lower = row.interval.lower if row.interval is not None else None
        upper = row.interval.upper if row.interval is not None else None
        print(
            f"{_truncate(_row_label(row), lc - 1):<{lc}}"
            f"{_fmt(row.solve.target_value, 12)}"
            f"{_fmt(lower, 12)}{_fmt(upper, 12)}  {_row_status(row):>12}"
        )

    notes: list[str] = []
    n_ext = sum(row.extrapolated for row in table.rows)
    if n_ext:
        notes.append(
            f"{n_ext} crossing(s) lie outside the training range of "
            f"{table.target!r} (EXT)."
        )
    n_nc = sum(_row_status(row) == "NC" for row in table.rows)
    if n_nc:
        notes.append(
            f"{n_nc} row(s) did not converge (NC); the reported value is the "
            "best point found, often a search bound."
        )
    for row in table.rows:
        if _row_status(row) == "FAIL":
            notes.append(f"{_row_label(row)}: {row.solve.diagnostic}")
    if ctx is not None and ctx.n_replicates_dropped:
        notes.append(
            f"{ctx.n_replicates_dropped} of {ctx.n_replicates_requested} bootstrap "
            f"replicates dropped: {ctx.drop_reasons}."
        )
    if ctx is not None and ctx.n_draws_dropped:
        notes.append(f"{ctx.n_draws_dropped} coefficient draw(s) dropped.")
    if ctx is not None and ctx.n_draws_unconverged:
        notes.append(
            f"{ctx.n_draws_unconverged} coefficient draw(s) stopped short of "
            "the tolerance, usually at a search bound."
        )

    if notes:
        print("-" * _WIDTH)
        print("Notes")
        print("-" * _WIDTH)
        for note in notes:
            print(_wrap(f"  [!] {note}"))

    print("=" * _WIDTH)
    print()


__all__ = ["print_crossing_table"]
