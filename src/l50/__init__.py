"""l50 — Threshold-crossing statistics for fitted response curves.

Locates the covariate value ("L50", generally "Lp") at which a fitted
logistic response curve crosses a fixed link-scale level, for models
whose linear predictor is an arbitrary smooth function of one target
covariate and any number of auxiliary covariates.  Crossings are found
by bounded numerical minimisation; their uncertainty is estimated by
Gaussian coefficient resampling or by the parametric bootstrap
(conditional or unconditional on fitted random effects).

Public API:
    .. autosummary::
        threshold_crossing
        CrossingEngine
        CrossingConfig
        LinkEvaluator
        ThresholdSolver
        GaussianUncertaintyEstimator
        BootstrapUncertaintyEstimator
        ReplicateSet
        CrossingModel
        BinomialGLMModel
        BinomialMixedModel
        fit_model
        register_model
        available_models
        closed_form_crossing
        probability_to_threshold
        print_crossing_table
        get_n_jobs
        set_n_jobs
        SolveResult
        UncertaintyInterval
        ResultRow
        ResultTable
        RunContext
"""

from ._config import get_n_jobs, set_n_jobs
from ._context import RunContext
from ._errors import (
    ExtrapolationWarning,
    InsufficientReplicatesError,
    InvalidCovariateError,
    L50Error,
    PredictionError,
    RefitError,
    UnsupportedModelError,
)
from ._results import ResultRow, ResultTable, SolveResult, UncertaintyInterval
from .bootstrap import BootstrapUncertaintyEstimator, ReplicateSet
from .core import threshold_crossing
from .display import print_crossing_table
from .engine import CrossingConfig, CrossingEngine
from .gaussian import GaussianUncertaintyEstimator
from .link import LinkEvaluator, probability_to_threshold
from .models import (
    BinomialGLMModel,
    CrossingModel,
    available_models,
    fit_model,
    register_model,
)
from .models_mixed import BinomialMixedModel
from .solver import ThresholdSolver, closed_form_crossing

__version__ = "0.1.0"

__all__ = [
    "BinomialGLMModel",
    "BinomialMixedModel",
    "BootstrapUncertaintyEstimator",
    "CrossingConfig",
    "CrossingEngine",
    "CrossingModel",
    "ExtrapolationWarning",
    "GaussianUncertaintyEstimator",
    "InsufficientReplicatesError",
    "InvalidCovariateError",
    "L50Error",
    "LinkEvaluator",
    "PredictionError",
    "RefitError",
    "ReplicateSet",
    "ResultRow",
    "ResultTable",
    "RunContext",
    "SolveResult",
    "ThresholdSolver",
    "UncertaintyInterval",
    "UnsupportedModelError",
    "available_models",
    "closed_form_crossing",
    "fit_model",
    "get_n_jobs",
    "print_crossing_table",
    "probability_to_threshold",
    "register_model",
    "set_n_jobs",
    "threshold_crossing",
]
