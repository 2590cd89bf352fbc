"""
Correlated test data for clusters.

Sites are given an AR(1)-style correlation, sigma_ij = rho^|i - j|, so that
neighbouring sites are most alike and correlation decays along the cluster.
Independent columns are made correlated by right-multiplying with the upper
Cholesky factor of that matrix.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
from numpy.typing import NDArray

__all__ = [
    'ar1_correlation',
    'gen_correlated',
    'make_correlated',
]


def ar1_correlation(rho: float, n_sites: int) -> NDArray[np.float64]:
    """Correlation matrix with entries ``rho ** |i - j|``."""
    if not 0.0 <= rho < 1.0:
        raise ValueError(f"rho must be in [0, 1), got {rho}")
    idx = np.arange(n_sites)
    return rho ** np.abs(idx[:, None] - idx[None, :])


def make_correlated(rho: float, X: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Make the columns of existing data correlated.

    Args:
        rho: Correlation between adjacent columns, in [0, 1)
        X: (n_samples, n_sites) data with independent columns

    Returns:
        (n_samples, n_sites) array whose adjacent columns correlate at about
        ``rho``
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"X must be 2D (samples × sites), got shape {X.shape}")
    upper = np.linalg.cholesky(ar1_correlation(rho, X.shape[1])).T
    return X @ upper


def gen_correlated(
    rho: float,
    n_samples: int = 100,
    n_sites: int = 4,
    mean: float | NDArray[np.float64] = 0.0,
    sd: float = 1.0,
    rng: Optional[np.random.Generator] = None,
) -> NDArray[np.float64]:
    """
    Generate normally distributed data with correlated sites.

    Args:
        rho: Correlation between adjacent sites
        n_samples: Rows of the result
        n_sites: Columns of the result
        mean: Added per sample (scalar or length ``n_samples``), e.g. to
            shift one group of samples
        sd: Standard deviation of the underlying noise
        rng: Random generator; a fresh default generator when None

    Returns:
        (n_samples, n_sites) array. Transpose for a Cluster's sites × samples
        layout.

    Example:
        >>> rng = np.random.default_rng(0)
        >>> X = gen_correlated(0.5, n_samples=40, n_sites=4, rng=rng)
        >>> X.shape
        (40, 4)
    """
    rng = rng if rng is not None else np.random.default_rng()
    X = rng.normal(0.0, sd, size=(n_samples, n_sites))
    X = make_correlated(rho, X)
    mean = np.asarray(mean, dtype=np.float64)
    if mean.ndim == 1:
        mean = mean[:, None]
    return X + mean
