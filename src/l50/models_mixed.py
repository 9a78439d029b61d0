"""Logistic random-intercept model for grouped binary outcomes.

Implements the ``CrossingModel`` protocol for binary Y ∈ {0, 1} with
one random intercept per level of a grouping column (site, cohort,
year, …).

Model:

    y_ij | u_j ~ Bernoulli(μ_ij),   logit(μ_ij) = x_ij'β + u_j,
    u_j ~ N(0, τ²)

Estimation is delegated to statsmodels' ``BinomialBayesMixedGLM``
(variational Bayes).  The fixed-effects design is built by patsy from
the formula, the random-effects design is the one-hot encoding of the
grouping column, and every random-effect column shares a single
variance parameter.

Crossing semantics
~~~~~~~~~~~~~~~~~~
Basis rows are **population-level**: the random effects sit at their
mean of zero, so the crossing describes a typical group rather than
any particular one.  There is no usable closed-form coefficient
covariance (``coefficient_covariance()`` returns ``None``), which
routes interval estimation to the parametric bootstrap.

Simulation follows the two bootstrap semantics:

* ``conditional=True`` — hold the fitted group effects û_j fixed, so
  replicate spread reflects fixed-effect and Bernoulli noise only.
* ``conditional=False`` — redraw u_j ~ N(0, τ̂²) for every replicate,
  adding between-group variability to the interval.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
import patsy
from scipy.special import expit
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SmConvergenceWarning,
)
from typing_extensions import Self

from ._compat import DataFrameLike, _ensure_pandas_df
from ._errors import RefitError
from .models import (
    _build_basis,
    _check_binary,
    _formula_covariates,
    _split_formula,
    register_model,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class BinomialMixedModel:
    """Logistic GLMM with a random intercept per group.

    Construct with :meth:`fit`, not directly.
    """

    formula: str
    group: str
    target: str
    covariates: tuple[str, ...]
    response: str
    fe_mean: np.ndarray = field(repr=False)
    vcp_mean: np.ndarray = field(repr=False)
    vc_mean: np.ndarray = field(repr=False)
    group_codes: np.ndarray = field(repr=False)
    group_levels: tuple[Any, ...]
    exog: np.ndarray = field(repr=False)
    converged: bool
    design_info: patsy.DesignInfo = field(repr=False)
    data: pd.DataFrame = field(repr=False)

    @classmethod
    def fit(
        cls,
        formula: str,
        data: DataFrameLike,
        *,
        group: str,
        target: str,
    ) -> Self:
        """Fit a logistic random-intercept model.

        Args:
            formula: patsy formula for the fixed effects, e.g.
                ``"mature ~ cr(length, df=4, constraints='center')"``.
            data: Training data (pandas or polars).
            group: Column whose levels receive a random intercept.
            target: Covariate to solve for.

        Returns:
            A fitted model.

        Raises:
            ValueError: If the formula, response, group or target is
                invalid.
        """
        data = _ensure_pandas_df(data, name="data")
        response, _ = _split_formula(formula)
        for name, role in ((response, "Response"), (group, "Group")):
            if name not in data.columns:
                msg = f"{role} {name!r} must be a column of the data."
                raise ValueError(msg)

        y_mat, x_mat = patsy.dmatrices(formula, data, NA_action="raise")
        if y_mat.shape[1] != 1:
            msg = f"Response {response!r} must be numeric 0/1, not categorical."
            raise ValueError(msg)
        y = np.asarray(y_mat, dtype=float).ravel()
        exog = np.asarray(x_mat, dtype=float)
        _check_binary(y, response)

        covariates = _formula_covariates(x_mat.design_info, list(data.columns))
        if target not in covariates:
            msg = (
                f"Target {target!r} does not appear on the right-hand side "
                f"of {formula!r}.  Covariates found: {covariates}."
            )
            raise ValueError(msg)
        if group in covariates:
            msg = f"Group {group!r} must not also appear as a fixed effect."
            raise ValueError(msg)

        codes, levels = pd.factorize(data[group], sort=True)
        if (codes < 0).any():
            raise ValueError(f"Group {group!r} has missing values.")
        if len(levels) < 2:
            msg = f"Group {group!r} needs at least 2 levels, got {len(levels)}."
            raise ValueError(msg)
        exog_vc = np.zeros((len(codes), len(levels)))
        exog_vc[np.arange(len(codes)), codes] = 1.0
        ident = np.zeros(len(levels), dtype=int)

        glmm = BinomialBayesMixedGLM(
            y,
            exog,
            exog_vc,
            ident,
            vcp_p=1.0,
            fe_p=2.0,
            fep_names=list(x_mat.design_info.column_names),
            vcp_names=[group],
            vc_names=[f"{group}[{level}]" for level in levels],
        )
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=SmConvergenceWarning)
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            warnings.filterwarnings("ignore", message="VB fitting did not converge")
            result = glmm.fit_vb()

        fe_mean = np.asarray(result.fe_mean, dtype=float)
        vcp_mean = np.asarray(result.vcp_mean, dtype=float)
        # BFGS status 2 (precision loss) is accepted; status 1 (maxiter)
        # is not.
        retvals = getattr(result, "optim_retvals", None)
        status = getattr(retvals, "status", 0)
        converged = status in (0, 2) and bool(
            np.all(np.isfinite(fe_mean)) and np.all(np.isfinite(vcp_mean))
        )
        if not converged:
            logger.debug("GLMM fit of %r (group=%r) did not converge.", formula, group)

        return cls(
            formula=formula,
            group=group,
            target=target,
            covariates=covariates,
            response=response,
            fe_mean=fe_mean,
            vcp_mean=vcp_mean,
            vc_mean=np.asarray(result.vc_mean, dtype=float),
            group_codes=np.asarray(codes, dtype=int),
            group_levels=tuple(levels),
            exog=exog,
            converged=converged,
            design_info=x_mat.design_info,
            data=data,
        )

    @property
    def random_effect_sd(self) -> float:
        """Estimated between-group standard deviation τ̂."""
        # vcp_mean is the posterior mean of log(τ).
        return float(np.exp(self.vcp_mean[0]))

    # ---- Protocol --------------------------------------------------

    def design_row(self, row: Mapping[str, Any]) -> np.ndarray:
        return _build_basis(self.design_info, [row], self.covariates)[0]

    def design_matrix(self, rows: Sequence[Mapping[str, Any]]) -> np.ndarray:
        return _build_basis(self.design_info, rows, self.covariates)

    def point_coefficients(self) -> np.ndarray:
        return self.fe_mean.copy()

    def coefficient_covariance(self) -> np.ndarray | None:
        return None

    def simulate(self, conditional: bool, rng: np.random.Generator) -> pd.DataFrame:
        """Bernoulli draw with fitted or redrawn group intercepts."""
        if conditional:
            effects = self.vc_mean
        else:
            effects = rng.normal(0.0, self.random_effect_sd, size=len(self.group_levels))
        eta = self.exog @ self.fe_mean + effects[self.group_codes]
        simulated = self.data.copy()
        simulated[self.response] = rng.binomial(1, expit(eta)).astype(float)
        return simulated

    def refit(self, data: pd.DataFrame) -> BinomialMixedModel:
        try:
            return type(self).fit(
                self.formula, data, group=self.group, target=self.target
            )
        except Exception as exc:  # noqa: BLE001
            raise RefitError(f"GLMM refit failed: {exc}") from exc

    def target_range(self) -> tuple[float, float]:
        values = self.data[self.target]
        return float(values.min()), float(values.max())

    def target_center(self) -> float:
        return float(self.data[self.target].mean())


register_model("mixed", BinomialMixedModel)
