"""Lightweight CrossingModel implementations for fast numerical tests.

These models are linear in their coefficients with closed-form crossings
and OLS refits, so solver, estimator and engine behaviour can be checked
against exact answers without running statsmodels.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd

from l50 import PredictionError, RefitError


@dataclass(frozen=True, eq=False)
class LinearLinkModel:
    """η = β₀ + β₁·x + β₂·z + β₃·x·z, with optional auxiliary ``z``.

    ``with_z=False`` drops the last two terms.  Rows with
    ``x > predict_limit`` raise ``PredictionError``.
    """

    coefficients: np.ndarray
    covariance: np.ndarray | None = None
    with_z: bool = False
    x_range: tuple[float, float] = (0.0, 150.0)
    predict_limit: float = np.inf
    converged: bool = True
    target: str = "x"

    @property
    def covariates(self) -> tuple[str, ...]:
        return ("x", "z") if self.with_z else ("x",)

    def design_row(self, row: Mapping[str, Any]) -> np.ndarray:
        x = float(row["x"])
        if x > self.predict_limit:
            raise PredictionError(f"x={x} beyond {self.predict_limit}")
        if self.with_z:
            z = float(row["z"])
            return np.array([1.0, x, z, x * z])
        return np.array([1.0, x])

    def design_matrix(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        return np.vstack([self.design_row(row) for row in rows])

    def point_coefficients(self) -> np.ndarray:
        return np.array(self.coefficients, dtype=float)

    def coefficient_covariance(self) -> np.ndarray | None:
        return None if self.covariance is None else np.array(self.covariance)

    def simulate(self, conditional: bool, rng: np.random.Generator) -> pd.DataFrame:
        raise NotImplementedError

    def refit(self, data: pd.DataFrame) -> LinearLinkModel:
        raise NotImplementedError

    def target_range(self) -> tuple[float, float]:
        return self.x_range

    def target_center(self) -> float:
        return float(np.mean(self.x_range))


@dataclass(frozen=True, eq=False)
class GaussianLineModel:
    """OLS fit of ``y = β₀ + β₁·x + ε``; the link is the fitted line.

    The crossing of the true line is ``−β₀/β₁``.  Covariance is the
    classical ``σ̂²(X'X)⁻¹``; simulation adds Gaussian noise to the
    fitted values; refit is OLS on the new data.
    """

    data: pd.DataFrame = field(repr=False)
    params: np.ndarray = field(repr=False)
    sigma: float
    cov: np.ndarray = field(repr=False)
    converged: bool = True
    target: str = "x"
    covariates: tuple[str, ...] = ("x",)

    @classmethod
    def fit(cls, data: pd.DataFrame) -> GaussianLineModel:
        X = np.column_stack([np.ones(len(data)), data["x"].to_numpy()])
        y = data["y"].to_numpy()
        params, *_ = np.linalg.lstsq(X, y, rcond=None)
        resid = y - X @ params
        sigma = float(np.sqrt(resid @ resid / (len(y) - 2)))
        cov = sigma**2 * np.linalg.inv(X.T @ X)
        return cls(data=data, params=params, sigma=sigma, cov=cov)

    @classmethod
    def simulate_truth(
        cls,
        rng: np.random.Generator,
        *,
        n: int = 100,
        beta: tuple[float, float] = (2.0, -0.04),
        sigma: float = 0.5,
    ) -> pd.DataFrame:
        x = rng.uniform(0.0, 100.0, size=n)
        y = beta[0] + beta[1] * x + rng.normal(0.0, sigma, size=n)
        return pd.DataFrame({"x": x, "y": y})

    def design_row(self, row: Mapping[str, Any]) -> np.ndarray:
        return np.array([1.0, float(row["x"])])

    def design_matrix(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        return np.array([[1.0, float(row["x"])] for row in rows])

    def point_coefficients(self) -> np.ndarray:
        return self.params.copy()

    def coefficient_covariance(self) -> np.ndarray | None:
        return self.cov.copy()

    def simulate(self, conditional: bool, rng: np.random.Generator) -> pd.DataFrame:
        fitted = self.params[0] + self.params[1] * self.data["x"].to_numpy()
        out = self.data.copy()
        out["y"] = fitted + rng.normal(0.0, self.sigma, size=len(out))
        return out

    def refit(self, data: pd.DataFrame) -> GaussianLineModel:
        return type(self).fit(data)

    def target_range(self) -> tuple[float, float]:
        return float(self.data["x"].min()), float(self.data["x"].max())

    def target_center(self) -> float:
        return float(self.data["x"].mean())


@dataclass(frozen=True, eq=False)
class GroupedLineModel:
    """``y = β₀ + β₁·x + u_g + ε`` with per-group intercepts.

    Fixed effects come from OLS on ``[1, x]``; group effects û are the
    group means of the OLS residuals and τ̂ their standard deviation.
    Conditional simulation reuses û; unconditional simulation draws
    fresh u ~ N(0, τ̂²).  The link is population-level.
    """

    data: pd.DataFrame = field(repr=False)
    params: np.ndarray = field(repr=False)
    u_hat: np.ndarray = field(repr=False)
    tau: float
    sigma: float
    converged: bool = True
    target: str = "x"
    covariates: tuple[str, ...] = ("x",)

    @classmethod
    def fit(cls, data: pd.DataFrame) -> GroupedLineModel:
        X = np.column_stack([np.ones(len(data)), data["x"].to_numpy()])
        y = data["y"].to_numpy()
        params, *_ = np.linalg.lstsq(X, y, rcond=None)
        resid = y - X @ params
        groups = data["g"].to_numpy()
        n_groups = int(groups.max()) + 1
        u_hat = np.array([resid[groups == g].mean() for g in range(n_groups)])
        within = resid - u_hat[groups]
        sigma = float(np.sqrt(within @ within / (len(y) - n_groups - 2)))
        return cls(
            data=data,
            params=params,
            u_hat=u_hat,
            tau=float(np.std(u_hat, ddof=1)),
            sigma=sigma,
        )

    @classmethod
    def simulate_truth(
        cls,
        rng: np.random.Generator,
        *,
        n_groups: int = 6,
        n_per_group: int = 30,
        tau: float = 1.0,
        sigma: float = 0.3,
    ) -> pd.DataFrame:
        g = np.repeat(np.arange(n_groups), n_per_group)
        x = rng.uniform(0.0, 100.0, size=g.size)
        u = rng.normal(0.0, tau, size=n_groups)
        y = 2.0 - 0.04 * x + u[g] + rng.normal(0.0, sigma, size=g.size)
        return pd.DataFrame({"x": x, "g": g, "y": y})

    def design_row(self, row: Mapping[str, Any]) -> np.ndarray:
        return np.array([1.0, float(row["x"])])

    def design_matrix(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        return np.array([[1.0, float(row["x"])] for row in rows])

    def point_coefficients(self) -> np.ndarray:
        return self.params.copy()

    def coefficient_covariance(self) -> np.ndarray | None:
        return None

    def simulate(self, conditional: bool, rng: np.random.Generator) -> pd.DataFrame:
        if conditional:
            effects = self.u_hat
        else:
            effects = rng.normal(0.0, self.tau, size=self.u_hat.size)
        x = self.data["x"].to_numpy()
        g = self.data["g"].to_numpy()
        out = self.data.copy()
        out["y"] = (
            self.params[0]
            + self.params[1] * x
            + effects[g]
            + rng.normal(0.0, self.sigma, size=len(out))
        )
        return out

    def refit(self, data: pd.DataFrame) -> GroupedLineModel:
        return type(self).fit(data)

    def target_range(self) -> tuple[float, float]:
        return float(self.data["x"].min()), float(self.data["x"].max())

    def target_center(self) -> float:
        return float(self.data["x"].mean())


class _CallCounter:
    """Thread-safe counter shared by a model and its refit calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.count = 0

    def next(self) -> int:
        with self._lock:
            self.count += 1
            return self.count


@dataclass(frozen=True, eq=False)
class FlakyRefitModel:
    """Wraps a :class:`GaussianLineModel`; the first *n_failures* refits fail.

    ``mode="raise"`` raises ``RefitError``; ``mode="unconverged"``
    returns a refit whose ``converged`` is ``False``.
    """

    inner: GaussianLineModel
    n_failures: int
    mode: str = "raise"
    counter: _CallCounter = field(default_factory=_CallCounter, repr=False)
    converged: bool = True
    target: str = "x"
    covariates: tuple[str, ...] = ("x",)

    def design_row(self, row: Mapping[str, Any]) -> np.ndarray:
        return self.inner.design_row(row)

    def design_matrix(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        return self.inner.design_matrix(rows)

    def point_coefficients(self) -> np.ndarray:
        return self.inner.point_coefficients()

    def coefficient_covariance(self) -> np.ndarray | None:
        return self.inner.coefficient_covariance()

    def simulate(self, conditional: bool, rng: np.random.Generator) -> pd.DataFrame:
        return self.inner.simulate(conditional, rng)

    def refit(self, data: pd.DataFrame) -> Any:
        refit = self.inner.refit(data)
        if self.counter.next() <= self.n_failures:
            if self.mode == "raise":
                raise RefitError("forced refit failure")
            return GaussianLineModel(
                data=refit.data,
                params=refit.params,
                sigma=refit.sigma,
                cov=refit.cov,
                converged=False,
            )
        return refit

    def target_range(self) -> tuple[float, float]:
        return self.inner.target_range()

    def target_center(self) -> float:
        return self.inner.target_center()
