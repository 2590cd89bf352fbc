"""
Site-by-site correlation matrix (Sigma) for a cluster.

Sigma approximates the correlation between the per-site test statistics
from the correlation between the raw site measurements. It is computed once
per cluster and treated as immutable by the combiners.

Missing data:
    Correlations use pairwise-complete observations: a sample missing at
    site i is excluded from corr(i, j) only, not from any other pair. This
    matches pandas ``DataFrame.corr`` semantics, which does the work here.

Degenerate input:
    A site with zero variance (or a pair of sites with too few shared
    observations) has an undefined correlation. That is reported as
    DegenerateSiteError rather than coerced to 0 or propagated as NaN.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from clustercorr.config import CorrelationMethod
from clustercorr.core.cluster import Cluster
from clustercorr.exceptions import DegenerateSiteError

logger = logging.getLogger(__name__)

__all__ = [
    'build_sigma',
    'mean_offdiagonal',
]

# Fewest pairwise-complete samples for which a correlation is reported
MIN_PAIRWISE_OBS = 3


def _as_matrix(cluster: Cluster | np.ndarray) -> tuple[np.ndarray, pd.Index]:
    if isinstance(cluster, Cluster):
        return cluster.data, cluster.site_ids
    data = np.asarray(cluster, dtype=np.float64)
    if data.ndim == 1:
        data = data.reshape(1, -1)
    return data, pd.RangeIndex(1, data.shape[0] + 1)


def build_sigma(
    cluster: Cluster | np.ndarray,
    method: CorrelationMethod | str = CorrelationMethod.SPEARMAN,
    absolute: bool = False,
) -> np.ndarray:
    """
    Compute the site correlation matrix of a cluster.

    Args:
        cluster: Cluster, or a raw sites × samples array
        method: "pearson" or "spearman"
        absolute: Return |correlation| (the combiners treat every site as
            measuring the same direction of effect)

    Returns:
        Symmetric (n_sites × n_sites) matrix with entries in [-1, 1]
        (or [0, 1] when ``absolute``) and a diagonal of exactly 1.

    Raises:
        DegenerateSiteError: If a site has zero variance, or two sites share
            fewer than MIN_PAIRWISE_OBS complete observations.

    Example:
        >>> sigma = build_sigma(cluster, method="pearson")
        >>> sigma.shape == (cluster.n_sites, cluster.n_sites)
        True
    """
    method = CorrelationMethod(method)
    data, site_ids = _as_matrix(cluster)
    n_sites = data.shape[0]

    if n_sites == 1:
        return np.eye(1)

    # Zero variance over the observed values of a site
    degenerate = []
    for i in range(n_sites):
        observed = data[i][~np.isnan(data[i])]
        if observed.size < MIN_PAIRWISE_OBS or np.ptp(observed) == 0.0:
            degenerate.append(site_ids[i])
    if degenerate:
        raise DegenerateSiteError(
            f"Correlation undefined: sites {degenerate} have zero variance "
            f"or fewer than {MIN_PAIRWISE_OBS} observed values",
            site_ids=degenerate,
        )

    # pandas computes pairwise-complete correlations column by column
    frame = pd.DataFrame(data.T)
    corr = frame.corr(method=method.value, min_periods=MIN_PAIRWISE_OBS).values

    bad = np.argwhere(~np.isfinite(corr))
    if bad.size:
        pairs = sorted({(site_ids[min(i, j)], site_ids[max(i, j)]) for i, j in bad})
        raise DegenerateSiteError(
            f"Correlation undefined for site pairs {pairs}: constant or too few "
            f"pairwise-complete observations",
            site_ids=sorted({s for pair in pairs for s in pair}, key=str),
        )

    corr = np.clip((corr + corr.T) / 2.0, -1.0, 1.0)
    if absolute:
        corr = np.abs(corr)
    np.fill_diagonal(corr, 1.0)

    logger.debug(
        "Built %s sigma for %d sites (mean off-diagonal %.3f)",
        method.value, n_sites, mean_offdiagonal(corr),
    )
    return corr


def mean_offdiagonal(sigma: np.ndarray) -> float:
    """Average pairwise correlation (0.0 for a single site)."""
    n = sigma.shape[0]
    if n < 2:
        return 0.0
    upper = sigma[np.triu_indices(n, k=1)]
    return float(np.mean(upper))
