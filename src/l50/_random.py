"""Explicit random-generator handles.

Every stochastic step (coefficient draws, response simulation) takes a
``np.random.Generator`` argument instead of touching global NumPy
state.  Parallel workers each receive an independent child stream
spawned from a single root, so results depend only on the root seed
and the child's index — never on the worker count or on the order in
which workers finish.
"""

from __future__ import annotations

import numpy as np

from ._typing import RandomState


def as_generator(random_state: RandomState = None) -> np.random.Generator:
    """Return a Generator for *random_state* (passes Generators through)."""
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


def spawn_generators(random_state: RandomState, n: int) -> list[np.random.Generator]:
    """Derive *n* statistically independent child generators.

    Children are produced with ``SeedSequence.spawn`` (or
    ``Generator.spawn`` when a Generator is supplied), so child ``i``
    is a deterministic function of the root and ``i``.

    Args:
        random_state: Root seed, SeedSequence, Generator, or ``None``
            for fresh OS entropy.
        n: Number of children.

    Returns:
        List of *n* generators.
    """
    if n < 0:
        raise ValueError(f"n must be non-negative, got {n}.")
    if isinstance(random_state, np.random.Generator):
        return random_state.spawn(n)
    if isinstance(random_state, np.random.SeedSequence):
        seed_seq = random_state
    else:
        seed_seq = np.random.SeedSequence(random_state)
    return [np.random.default_rng(child) for child in seed_seq.spawn(n)]
