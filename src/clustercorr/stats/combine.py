"""
Correlation-adjusted combination of per-site p-values.

Neighbouring sites in a cluster are correlated, so their p-values cannot be
combined as if independent (Fisher, plain Stouffer). Both algorithms here
transform p-values to z-scores and rescale the combined z by its standard
deviation under the site correlation matrix Sigma.

Stouffer-Liptak (generalized least squares form):

    z_i    = Phi^-1(1 - p_i)
    z_comb = (w' Sigma^-1 z) / sqrt(w' Sigma^-1 w)

    With w = 1 this is the classic 1' Sigma^-1 z / sqrt(1' Sigma^-1 1).
    Sigma^-1 comes from a Cholesky solve; if Sigma is singular (perfectly
    collinear sites) the Moore-Penrose pseudo-inverse is used instead, or
    SingularCorrelationError is raised when ``pinv_policy="raise"``.

Z-score (average-correlation form):

    z_comb = sum(w_i z_i) / sqrt(sum(w_i^2) + r_bar * ((sum w_i)^2 - sum(w_i^2)))

    r_bar is the mean off-diagonal entry of Sigma, so the effective number of
    independent sites shrinks toward 1 as r_bar approaches 1. Cheaper and more
    robust than the matrix inverse, less exact.

The combined z is mapped back with the normal survival function. Sigma is
taken straight from the raw measurement correlations, a known approximation
of the z-score correlation that is kept on purpose.

References:
    Stouffer et al. (1949) The American Soldier, Vol. 1.
    Liptak (1958) On the combination of independent tests.
    Zaykin (2011) Optimally weighted Z-test is a powerful method for
    combining probabilities in meta-analysis. J Evol Biol 24:1836-1841.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import linalg
from scipy import stats as scipy_stats

from clustercorr.config import AnalysisConfig, CombineMethod
from clustercorr.exceptions import SingularCorrelationError
from clustercorr.utils.correlation_matrix import mean_offdiagonal

logger = logging.getLogger(__name__)

__all__ = [
    'pvalues_to_z',
    'stouffer_liptak_combine',
    'zscore_combine',
    'combine',
]

# Condition number above which Sigma is treated as singular
MAX_CONDITION_NUMBER = 1e12


def _validate(
    pvalues: Sequence[float],
    sigma: NDArray[np.float64],
    weights: Optional[Sequence[float]],
) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.float64]]:
    p = np.asarray(pvalues, dtype=np.float64).ravel()
    if p.size == 0:
        raise ValueError("At least one p-value is required")
    if np.any(np.isnan(p)) or np.any(p < 0.0) or np.any(p > 1.0):
        raise ValueError(f"p-values must lie in [0, 1], got {p}")

    sigma = np.atleast_2d(np.asarray(sigma, dtype=np.float64))
    if sigma.shape != (p.size, p.size):
        raise ValueError(
            f"sigma shape {sigma.shape} does not match {p.size} p-values"
        )
    if not np.allclose(sigma, sigma.T, atol=1e-10):
        raise ValueError("sigma must be symmetric")

    if weights is None:
        w = np.ones(p.size)
    else:
        w = np.asarray(weights, dtype=np.float64).ravel()
        if w.shape != p.shape:
            raise ValueError(f"weights length {w.size} does not match {p.size} p-values")
        if np.any(~np.isfinite(w)) or np.any(w <= 0.0):
            raise ValueError("weights must be finite and strictly positive")
    return p, sigma, w


def pvalues_to_z(pvalues: NDArray[np.float64], min_pvalue: float = 1e-13) -> NDArray[np.float64]:
    """
    Transform p-values to z-scores, clipped to [min_pvalue, 1 - min_pvalue].

    A p-value of exactly 0 or 1 would map to an infinite z-score.
    """
    p = np.clip(np.asarray(pvalues, dtype=np.float64), min_pvalue, 1.0 - min_pvalue)
    return scipy_stats.norm.isf(p)


def _z_to_p(z: float) -> float:
    # Survival function underflows to 0 for very large z
    return float(max(scipy_stats.norm.sf(z), np.finfo(np.float64).tiny))


def _inverse_times(
    sigma: NDArray[np.float64],
    rhs: NDArray[np.float64],
    pinv_policy: str,
) -> NDArray[np.float64]:
    """Return Sigma^-1 @ rhs via Cholesky, falling back to the pseudo-inverse."""
    try:
        if np.linalg.cond(sigma) > MAX_CONDITION_NUMBER:
            raise np.linalg.LinAlgError("sigma is numerically singular")
        factor = linalg.cho_factor(sigma, lower=True)
        return linalg.cho_solve(factor, rhs)
    except np.linalg.LinAlgError as e:
        if pinv_policy == "raise":
            raise SingularCorrelationError(
                f"Sigma ({sigma.shape[0]} sites) is singular and pseudo-inverse "
                f"fallback is disabled: {e}"
            ) from e
        logger.warning(
            "Sigma (%d sites) is singular (%s); using pseudo-inverse",
            sigma.shape[0], e,
        )
        return np.linalg.pinv(sigma, hermitian=True) @ rhs


def stouffer_liptak_combine(
    pvalues: Sequence[float],
    sigma: NDArray[np.float64],
    weights: Optional[Sequence[float]] = None,
    *,
    min_pvalue: float = 1e-13,
    pinv_policy: str = "pinv",
) -> float:
    """
    Combine correlated p-values with the Stouffer-Liptak method.

    Args:
        pvalues: Per-site p-values in [0, 1] (zeros are floored)
        sigma: Site correlation matrix (n_sites × n_sites)
        weights: Optional positive per-site weights (higher precision sites
            contribute more)
        min_pvalue: Floor applied before the inverse-normal transform
        pinv_policy: "pinv" or "raise" when Sigma is singular

    Returns:
        Combined p-value in (0, 1]. A single site returns its own p-value.

    Raises:
        SingularCorrelationError: Sigma singular and ``pinv_policy="raise"``
        ValueError: Invalid p-values, weights, or Sigma shape
    """
    p, sigma, w = _validate(pvalues, sigma, weights)
    if p.size == 1:
        return float(p[0]) if p[0] > 0.0 else min_pvalue

    z = pvalues_to_z(p, min_pvalue)
    sigma_inv_w = _inverse_times(sigma, w, pinv_policy)
    denom = float(w @ sigma_inv_w)
    if not np.isfinite(denom) or denom <= 0.0:
        raise SingularCorrelationError(
            f"Combined variance w' Sigma^-1 w = {denom} is not positive"
        )
    z_comb = float(sigma_inv_w @ z) / np.sqrt(denom)
    return _z_to_p(z_comb)


def zscore_combine(
    pvalues: Sequence[float],
    sigma: NDArray[np.float64],
    weights: Optional[Sequence[float]] = None,
    *,
    min_pvalue: float = 1e-13,
) -> float:
    """
    Combine correlated p-values with the weighted z-score method.

    The variance of the weighted z-sum is inflated by the average pairwise
    correlation of Sigma instead of inverting it.

    Args:
        pvalues: Per-site p-values in [0, 1] (zeros are floored)
        sigma: Site correlation matrix (n_sites × n_sites)
        weights: Optional positive per-site weights
        min_pvalue: Floor applied before the inverse-normal transform

    Returns:
        Combined p-value in (0, 1]. A single site returns its own p-value.
    """
    p, sigma, w = _validate(pvalues, sigma, weights)
    if p.size == 1:
        return float(p[0]) if p[0] > 0.0 else min_pvalue

    z = pvalues_to_z(p, min_pvalue)
    r_bar = mean_offdiagonal(sigma)
    sum_w = float(np.sum(w))
    sum_w2 = float(np.sum(w ** 2))
    variance = sum_w2 + r_bar * (sum_w ** 2 - sum_w2)
    if variance <= 0.0:
        raise SingularCorrelationError(
            f"Average correlation {r_bar:.3f} gives a non-positive variance "
            f"for the combined z-score"
        )
    z_comb = float(w @ z) / np.sqrt(variance)
    return _z_to_p(z_comb)


def combine(
    pvalues: Sequence[float],
    sigma: NDArray[np.float64],
    weights: Optional[Sequence[float]] = None,
    algorithm: CombineMethod | str | None = None,
    config: Optional[AnalysisConfig] = None,
) -> float:
    """
    Combine correlated p-values with the selected algorithm.

    Args:
        pvalues: Per-site p-values
        sigma: Site correlation matrix
        weights: Optional per-site weights
        algorithm: CombineMethod (or its value, "liptak" / "z-score");
            defaults to ``config.combine_method``
        config: Analysis configuration (p-value floor, pinv policy)

    Returns:
        Combined p-value in (0, 1]
    """
    config = config or AnalysisConfig()
    algorithm = CombineMethod(algorithm) if algorithm is not None else config.combine_method

    if algorithm is CombineMethod.STOUFFER_LIPTAK:
        return stouffer_liptak_combine(
            pvalues, sigma, weights,
            min_pvalue=config.min_pvalue,
            pinv_policy=config.pinv_policy,
        )
    return zscore_combine(pvalues, sigma, weights, min_pvalue=config.min_pvalue)
