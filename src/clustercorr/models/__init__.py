"""
Linear models for clustered sites.

Vectorized per-site OLS/WLS over a shared design matrix, used both for the
observed fits and for every permutation trial.
"""

from clustercorr.models.vectorized_fit import (
    LinearFit,
    VectorizedLinearFitter,
    fit_site,
)

__all__ = [
    'LinearFit',
    'VectorizedLinearFitter',
    'fit_site',
]
