"""Process-wide defaults for the l50 package.

Controls how many joblib workers the orchestrator and the bootstrap
estimator use when a run does not pass ``n_jobs`` explicitly.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_n_jobs`.
    2. The ``L50_N_JOBS`` environment variable.
    3. ``1`` (sequential).

Any integer accepted by :class:`joblib.Parallel` is valid, including
``-1`` for "all cores".  ``0`` is rejected because joblib rejects it.

Examples:
    Parallelise bootstrap replicates from the shell::

        export L50_N_JOBS=-1

    Programmatically::

        import l50
        l50.set_n_jobs(4)

    Restore the default resolution order::

        l50.set_n_jobs(None)
"""

from __future__ import annotations

import os

_ENV_VAR = "L50_N_JOBS"

# Sentinel indicating "no programmatic override has been set".
_n_jobs_override: int | None = None


def _validate_n_jobs(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"n_jobs must be an integer, got {value!r}.")
    if value == 0:
        raise ValueError("n_jobs=0 is not valid; use 1 for sequential or -1 for all cores.")
    return value


def get_n_jobs() -> int:
    """Return the default worker count for parallel solves.

    Resolution order:
        1. Value set by :func:`set_n_jobs`.
        2. ``L50_N_JOBS`` environment variable.
        3. ``1``.

    Returns:
        A joblib-compatible ``n_jobs`` value.

    Raises:
        ValueError: If the environment variable is set but is not a
            non-zero integer.
    """
    # 1. Programmatic override
    if _n_jobs_override is not None:
        return _n_jobs_override

    # 2. Environment variable
    env = os.environ.get(_ENV_VAR, "").strip()
    if env:
        try:
            parsed = int(env)
        except ValueError:
            raise ValueError(
                f"{_ENV_VAR}={env!r} is not an integer."
            ) from None
        return _validate_n_jobs(parsed)

    # 3. Sequential default
    return 1


def set_n_jobs(n_jobs: int | None) -> None:
    """Override the default worker count.

    Args:
        n_jobs: A non-zero integer, or ``None`` to restore the default
            resolution order.

    Raises:
        ValueError: If *n_jobs* is ``0`` or not an integer.
    """
    global _n_jobs_override
    if n_jobs is None:
        _n_jobs_override = None
        return
    _n_jobs_override = _validate_n_jobs(n_jobs)


def resolve_n_jobs(n_jobs: int | None) -> int:
    """Return *n_jobs* if given, else the process-wide default."""
    if n_jobs is None:
        return get_n_jobs()
    return _validate_n_jobs(n_jobs)
