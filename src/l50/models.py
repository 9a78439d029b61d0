"""Model capability protocol, logistic GLM implementation, and registry.

The ``CrossingModel`` protocol is the only contract the numerical core
(``link.py``, ``solver.py``, ``gaussian.py``, ``bootstrap.py``) relies
on.  It decouples the crossing machinery from any particular fitting
library: the core asks a model for basis rows, coefficients, an
optional covariance, simulated datasets and refits, and never touches
statsmodels or patsy directly.

Each concrete model is a frozen ``@dataclass`` produced by a ``fit``
classmethod.  ``refit`` returns a **new** instance, so a shared fitted
model can be read from many worker threads while bootstrap replicates
fit their own copies.

Architecture
~~~~~~~~~~~~
Formulas are parsed by patsy.  The training ``DesignInfo`` is kept on
the model so that stateful transforms (``center()``, ``standardize()``,
``cr()``/``bs()`` spline knots, categorical levels) are re-applied with
their *training* state when a single covariate row is turned into a
basis row.  A transform that cannot be evaluated at a row (e.g. a
B-spline basis outside its outer knots, an unseen factor level) is
reported as :class:`~l50.PredictionError`.

Extensibility
~~~~~~~~~~~~~
New model kinds are added by implementing the protocol and calling
:func:`register_model`.  :func:`fit_model` resolves a kind string to
the registered class, mirroring the family registry pattern.
"""

from __future__ import annotations

import logging
import re
import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SmConvergenceWarning,
)
from statsmodels.tools.sm_exceptions import PerfectSeparationWarning
from typing_extensions import Self

from ._compat import DataFrameLike, _ensure_pandas_df
from ._errors import InvalidCovariateError, PredictionError, RefitError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# CrossingModel protocol
# ------------------------------------------------------------------ #
#
# ``runtime_checkable`` lets the engine and the registry verify a
# user-supplied model with isinstance() before any work begins.


@runtime_checkable
class CrossingModel(Protocol):
    """Interface that every fitted model must implement.

    Attributes:
        target: Name of the covariate solved for (e.g. ``"length"``).
        covariates: Every covariate the linear predictor depends on,
            the target included.  Auxiliary rows must supply all of
            them except the target.
        converged: Whether the fit that produced this instance
            converged.  Bootstrap replicates whose refit reports
            ``False`` are dropped.
    """

    @property
    def target(self) -> str: ...

    @property
    def covariates(self) -> tuple[str, ...]: ...

    @property
    def converged(self) -> bool: ...

    def design_row(self, row: Mapping[str, Any]) -> np.ndarray:
        """Basis row of the linear predictor at a full covariate row.

        Raises:
            PredictionError: If the basis cannot be evaluated at *row*.
        """
        ...

    def design_matrix(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        """Stacked basis rows, shape ``(len(rows), n_coefficients)``."""
        ...

    def point_coefficients(self) -> np.ndarray:
        """Fitted coefficient vector, shape ``(n_coefficients,)``."""
        ...

    def coefficient_covariance(self) -> np.ndarray | None:
        """Coefficient covariance aligned with the coefficients, or
        ``None`` when the model has no usable covariance."""
        ...

    def simulate(self, conditional: bool, rng: np.random.Generator) -> pd.DataFrame:
        """Training data with the response replaced by a fresh draw.

        Args:
            conditional: Hold latent effects at their fitted values
                (``True``) or redraw them from their estimated
                population distribution (``False``).  Models without
                latent effects ignore the flag.
            rng: Generator the draw is taken from.
        """
        ...

    def refit(self, data: pd.DataFrame) -> CrossingModel:
        """Fit a **new** instance with the same formula to *data*.

        Raises:
            RefitError: If fitting fails outright.
        """
        ...

    def target_range(self) -> tuple[float, float]:
        """Training range ``(min, max)`` of the target covariate."""
        ...

    def target_center(self) -> float:
        """Training mean of the target covariate."""
        ...


# ------------------------------------------------------------------ #
# Formula helpers (shared with models_mixed)
# ------------------------------------------------------------------ #

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")


def _split_formula(formula: str) -> tuple[str, str]:
    """Split ``"y ~ rhs"`` into ``("y", "rhs")``."""
    if formula.count("~") != 1:
        msg = f"Formula must contain exactly one '~', got {formula!r}."
        raise ValueError(msg)
    lhs, rhs = (part.strip() for part in formula.split("~"))
    if not lhs or not rhs:
        msg = f"Formula needs both a response and predictors, got {formula!r}."
        raise ValueError(msg)
    return lhs, rhs


def _formula_covariates(
    design_info: patsy.DesignInfo,
    columns: Sequence[str],
) -> tuple[str, ...]:
    """Data columns referenced by the factors of a fitted design.

    Identifiers in each factor's code (``cr(length, df=5)`` →
    ``length``) are matched against the data columns, in order of
    first appearance.
    """
    available = set(columns)
    found: list[str] = []
    for factor in design_info.factor_infos:
        for name in _IDENTIFIER.findall(factor.name()):
            if name in available and name not in found:
                found.append(name)
    return tuple(found)


def _rows_to_frame(
    rows: Sequence[Mapping[str, Any]],
    covariates: Sequence[str],
) -> dict[str, list[Any]]:
    """Column-oriented dict of the *covariates* over *rows*."""
    frame: dict[str, list[Any]] = {}
    for name in covariates:
        try:
            frame[name] = [row[name] for row in rows]
        except KeyError:
            msg = f"Covariate row is missing required covariate {name!r}."
            raise InvalidCovariateError(msg) from None
    return frame


def _build_basis(
    design_info: patsy.DesignInfo,
    rows: Sequence[Mapping[str, Any]],
    covariates: Sequence[str],
) -> np.ndarray:
    """Evaluate a training design at new rows with its memorised state."""
    frame = _rows_to_frame(rows, covariates)
    try:
        (basis,) = patsy.build_design_matrices(
            [design_info], frame, NA_action="raise"
        )
    except Exception as exc:  # noqa: BLE001
        msg = f"Cannot evaluate the design at the requested covariates: {exc}"
        raise PredictionError(msg) from exc
    return np.asarray(basis, dtype=float)


def _check_binary(y: np.ndarray, response: str) -> None:
    unique = np.unique(y)
    if not np.all(np.isin(unique, [0.0, 1.0])):
        msg = f"Response {response!r} must be binary 0/1, got values {unique[:5]}."
        raise ValueError(msg)


# ------------------------------------------------------------------ #
# BinomialGLMModel
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class BinomialGLMModel:
    """Logistic GLM on a patsy formula.

    Smooth terms come from patsy's spline transforms (``cr()``,
    ``bs()``) and interactions from formula syntax, so the link can
    be an arbitrary smooth function of the target and auxiliary
    covariates while remaining linear in the coefficients.

    The coefficient covariance is statsmodels' ``cov_params()``.
    Simulation draws Bernoulli responses from the fitted
    probabilities; there are no latent effects, so the
    ``conditional`` flag is accepted and ignored.

    Construct with :meth:`fit`, not directly.
    """

    formula: str
    target: str
    covariates: tuple[str, ...]
    response: str
    params: np.ndarray = field(repr=False)
    cov: np.ndarray | None = field(repr=False)
    fitted_mean: np.ndarray = field(repr=False)
    converged: bool
    design_info: patsy.DesignInfo = field(repr=False)
    data: pd.DataFrame = field(repr=False)

    @classmethod
    def fit(cls, formula: str, data: DataFrameLike, *, target: str) -> Self:
        """Fit a logistic GLM.

        Args:
            formula: patsy formula, e.g.
                ``"mature ~ cr(length, df=5, constraints='center') + C(sex)"``.
                The response must be a binary 0/1 column of *data*.
            data: Training data (pandas or polars).
            target: Covariate to solve for; must appear on the
                right-hand side of *formula*.

        Returns:
            A fitted model.

        Raises:
            ValueError: If the formula, response or target is invalid.
        """
        data = _ensure_pandas_df(data, name="data")
        response, _ = _split_formula(formula)
        if response not in data.columns:
            msg = f"Response {response!r} must be a column of the data."
            raise ValueError(msg)

        y_mat, x_mat = patsy.dmatrices(formula, data, NA_action="raise")
        if y_mat.shape[1] != 1:
            msg = f"Response {response!r} must be numeric 0/1, not categorical."
            raise ValueError(msg)
        y = np.asarray(y_mat, dtype=float).ravel()
        X = np.asarray(x_mat, dtype=float)
        _check_binary(y, response)

        covariates = _formula_covariates(x_mat.design_info, list(data.columns))
        if target not in covariates:
            msg = (
                f"Target {target!r} does not appear on the right-hand side "
                f"of {formula!r}.  Covariates found: {covariates}."
            )
            raise ValueError(msg)

        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=SmConvergenceWarning)
            warnings.filterwarnings("ignore", category=PerfectSeparationWarning)
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            results = sm.GLM(y, X, family=sm.families.Binomial()).fit()

        params = np.asarray(results.params, dtype=float)
        cov = np.asarray(results.cov_params(), dtype=float)
        if not np.all(np.isfinite(cov)):
            cov = None
        converged = bool(getattr(results, "converged", True)) and bool(
            np.all(np.isfinite(params))
        )
        if not converged:
            logger.debug("GLM fit of %r did not converge.", formula)

        return cls(
            formula=formula,
            target=target,
            covariates=covariates,
            response=response,
            params=params,
            cov=cov,
            fitted_mean=np.asarray(results.fittedvalues, dtype=float),
            converged=converged,
            design_info=x_mat.design_info,
            data=data,
        )

    # ---- Protocol --------------------------------------------------

    def design_row(self, row: Mapping[str, Any]) -> np.ndarray:
        return _build_basis(self.design_info, [row], self.covariates)[0]

    def design_matrix(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        return _build_basis(self.design_info, rows, self.covariates)

    def point_coefficients(self) -> np.ndarray:
        return self.params.copy()

    def coefficient_covariance(self) -> np.ndarray | None:
        return None if self.cov is None else self.cov.copy()

    def simulate(
        self,
        conditional: bool,  # noqa: ARG002
        rng: np.random.Generator,
    ) -> pd.DataFrame:
        """Bernoulli draw from the fitted probabilities."""
        simulated = self.data.copy()
        simulated[self.response] = rng.binomial(1, self.fitted_mean).astype(float)
        return simulated

    def refit(self, data: pd.DataFrame) -> BinomialGLMModel:
        try:
            return type(self).fit(self.formula, data, target=self.target)
        except Exception as exc:  # noqa: BLE001
            raise RefitError(f"GLM refit failed: {exc}") from exc

    def target_range(self) -> tuple[float, float]:
        values = self.data[self.target]
        return float(values.min()), float(values.max())

    def target_center(self) -> float:
        return float(self.data[self.target].mean())


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

_MODELS: dict[str, type] = {}
"""Registry mapping model kind strings to concrete model classes."""


def register_model(name: str, cls: type) -> None:
    """Register a model class under *name*.

    Args:
        name: Lookup key (e.g. ``"glm"``, ``"mixed"``).
        cls: A class with a ``fit(formula, data, **kwargs)``
            classmethod returning a :class:`CrossingModel`.

    Raises:
        TypeError: If *cls* has no callable ``fit``.
    """
    if not callable(getattr(cls, "fit", None)):
        msg = f"{cls!r} has no fit() classmethod."
        raise TypeError(msg)
    _MODELS[name] = cls


def available_models() -> tuple[str, ...]:
    """Registered model kinds, sorted."""
    return tuple(sorted(_MODELS))


def fit_model(
    kind: str,
    formula: str,
    data: DataFrameLike,
    **kwargs: Any,
) -> CrossingModel:
    """Fit a registered model kind.

    Args:
        kind: Registry key, e.g. ``"glm"`` or ``"mixed"``.
        formula: patsy formula passed to the model's ``fit``.
        data: Training data.
        **kwargs: Forwarded to ``fit`` (``target=``, ``group=``, …).

    Returns:
        The fitted model.

    Raises:
        ValueError: If *kind* is not registered.
        TypeError: If the fitted object does not satisfy
            :class:`CrossingModel`.
    """
    if kind not in _MODELS:
        available = ", ".join(available_models()) or "(none registered)"
        msg = f"Unknown model kind {kind!r}.  Available models: {available}."
        raise ValueError(msg)
    model = _MODELS[kind].fit(formula, data, **kwargs)
    if not isinstance(model, CrossingModel):
        msg = f"{_MODELS[kind]!r}.fit() did not return a CrossingModel."
        raise TypeError(msg)
    return model


register_model("glm", BinomialGLMModel)
