"""Link-scale evaluation of a fitted model along the target covariate.

A :class:`LinkEvaluator` turns (target value, coefficient vector,
auxiliary covariates) into the model's linear predictor:

    η(x) = b(x, z)' β

where ``b`` is the model's basis row at target value ``x`` and fixed
auxiliary covariates ``z``.  The crossing is the ``x`` at which
``η(x) − threshold = 0``; the solver works on the squared residual so
that a bounded minimiser can locate it without derivatives.

Two objective shapes are produced:

* :meth:`LinkEvaluator.objective` — univariate, one auxiliary row.
* :meth:`LinkEvaluator.grid_objective` — multivariate, one free target
  value per grid row, summed squared residuals.  Used when all rows of
  a refit are solved jointly.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

import numpy as np
from scipy.special import logit

from ._errors import InvalidCovariateError
from .models import CrossingModel


def probability_to_threshold(p: float) -> float:
    """Logit-scale threshold for a response probability level.

    ``p=0.5`` gives ``0.0`` (the L50); ``p=0.25`` gives the L25.

    Raises:
        ValueError: If *p* is not strictly between 0 and 1.
    """
    if not 0.0 < p < 1.0:
        msg = f"Probability level must lie in (0, 1), got {p}."
        raise ValueError(msg)
    return float(logit(p))


class LinkEvaluator:
    """Evaluate a model's linear predictor as a function of its target.

    The evaluator holds a read-only reference to the model and never
    mutates caller-supplied rows or coefficient vectors.

    Args:
        model: Fitted :class:`~l50.CrossingModel`.
        threshold: Link-scale level the residual is measured from.
    """

    def __init__(self, model: CrossingModel, *, threshold: float = 0.0) -> None:
        self._model = model
        self._threshold = float(threshold)
        self._required = tuple(c for c in model.covariates if c != model.target)

    @property
    def model(self) -> CrossingModel:
        return self._model

    @property
    def threshold(self) -> float:
        return self._threshold

    # ---- Row and coefficient checks --------------------------------

    def _full_row(
        self,
        target_value: float,
        auxiliary_row: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        if auxiliary_row is None:
            auxiliary_row = {}
        if not isinstance(auxiliary_row, Mapping):
            msg = (
                "auxiliary_row must be a mapping of covariate name to value, "
                f"got {type(auxiliary_row).__name__}."
            )
            raise InvalidCovariateError(msg)
        missing = [name for name in self._required if name not in auxiliary_row]
        if missing:
            msg = f"auxiliary_row is missing required covariate(s): {missing}."
            raise InvalidCovariateError(msg)
        row = dict(auxiliary_row)
        row[self._model.target] = float(target_value)
        return row

    @staticmethod
    def _as_coefficients(coefficients: np.ndarray, n_basis: int) -> np.ndarray:
        coefs = np.array(coefficients, dtype=float, copy=True).ravel()
        if coefs.shape[0] != n_basis:
            msg = (
                f"Coefficient vector has length {coefs.shape[0]} but the "
                f"model basis has {n_basis} columns."
            )
            raise InvalidCovariateError(msg)
        return coefs

    # ---- Scalar evaluation -----------------------------------------

    def evaluate(
        self,
        target_value: float,
        coefficients: np.ndarray,
        auxiliary_row: Mapping[str, Any] | None,
    ) -> float:
        """Linear predictor at *target_value* with the auxiliary row fixed.

        Raises:
            InvalidCovariateError: If a required covariate is missing
                or the coefficient length does not match the basis.
            PredictionError: Propagated from the model.
        """
        row = self._full_row(target_value, auxiliary_row)
        basis = np.asarray(self._model.design_row(row), dtype=float).ravel()
        coefs = self._as_coefficients(coefficients, basis.shape[0])
        return float(basis @ coefs)

    def residual(
        self,
        target_value: float,
        coefficients: np.ndarray,
        auxiliary_row: Mapping[str, Any] | None,
    ) -> float:
        """``evaluate(...) − threshold``."""
        return self.evaluate(target_value, coefficients, auxiliary_row) - self._threshold

    # ---- Objectives ------------------------------------------------

    def objective(
        self,
        coefficients: np.ndarray,
        auxiliary_row: Mapping[str, Any] | None,
    ) -> Callable[[float], float]:
        """Squared residual of one row as a function of the target.

        The coefficient vector and the row are copied once, when the
        objective is built.
        """
        coefs = np.array(coefficients, dtype=float, copy=True)
        row = dict(auxiliary_row) if isinstance(auxiliary_row, Mapping) else auxiliary_row

        def _objective(target_value: float) -> float:
            r = self.residual(target_value, coefs, row)
            return r * r

        return _objective

    def grid_residuals(
        self,
        coefficients: np.ndarray,
        rows: Sequence[Mapping[str, Any] | None],
    ) -> Callable[[np.ndarray], np.ndarray]:
        """Per-row residuals for a vector of target values.

        Element ``i`` of the returned vector depends only on element
        ``i`` of the input, so the objective is separable across rows.

        Raises:
            InvalidCovariateError: When the closure is built, if any row
                is missing a required covariate.
        """
        coefs = np.array(coefficients, dtype=float, copy=True).ravel()
        base_rows = [self._full_row(0.0, row) for row in rows]
        target = self._model.target
        threshold = self._threshold

        def _residuals(target_values: np.ndarray) -> np.ndarray:
            values = np.asarray(target_values, dtype=float).ravel()
            if values.shape[0] != len(base_rows):
                msg = f"Expected {len(base_rows)} target values, got {values.shape[0]}."
                raise ValueError(msg)
            full_rows = []
            for row, value in zip(base_rows, values):
                full = dict(row)
                full[target] = float(value)
                full_rows.append(full)
            basis = np.asarray(self._model.design_matrix(full_rows), dtype=float)
            checked = self._as_coefficients(coefs, basis.shape[1])
            return basis @ checked - threshold

        return _residuals

    def grid_objective(
        self,
        coefficients: np.ndarray,
        rows: Sequence[Mapping[str, Any] | None],
    ) -> Callable[[np.ndarray], float]:
        """Sum of squared residuals over all rows, one target per row."""
        residuals = self.grid_residuals(coefficients, rows)

        def _objective(target_values: np.ndarray) -> float:
            r = residuals(target_values)
            return float(r @ r)

        return _objective


__all__ = ["LinkEvaluator", "probability_to_threshold"]
