"""Shared type aliases for the l50 package."""

from collections.abc import Mapping
from typing import Any

import numpy as np

# Covariate name → value.  The target covariate is numeric; auxiliary
# covariates may be numeric or categorical labels.
CovariateRow = Mapping[str, Any]

# Coefficients in the model's parameter order, shape (k,).
CoefficientVector = np.ndarray

# Seeds accepted wherever randomness is drawn.
RandomState = int | np.random.SeedSequence | np.random.Generator | None
