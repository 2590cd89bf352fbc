"""
Vectorized per-site linear model fits over a shared design matrix.

Every site of a cluster is regressed on the same design matrix, so the
projection can be computed once and applied to all sites together:

    For OLS regression y = Xβ + ε:
        β̂ = X⁺y            (X⁺ = pseudo-inverse of X)
        ŷ = Xβ̂ = Hy        (H = XX⁺ is the hat matrix)
        ε̂ = y - ŷ
        σ̂² = ε̂'ε̂ / (n - p)
        se(β̂_j) = σ̂ sqrt([(X'X)⁻¹]_jj)

    Key insight: X⁺ and (X'X)⁻¹ depend only on X, not on y. The permutation
    engine refits the full design thousands of times against synthetic data,
    so one matrix product per trial replaces thousands of model objects.

Sites with missing values share a projection with every other site missing
the same samples, computed on the observed rows only. Per-observation
weights give every site its own projection, so weighted sites fall back to
a per-site weighted least-squares solve. A site that cannot be fit (too few
observations, rank-deficient subset) is marked failed rather than aborting
the batch.

Usage:
    >>> from clustercorr.models.vectorized_fit import VectorizedLinearFitter
    >>>
    >>> fitter = VectorizedLinearFitter(design.X_full)
    >>> fit = fitter.fit(cluster.data)
    >>> coefs = fit.coef(design.coef_index)
    >>> pvals = fit.p_values(design.coef_index)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from clustercorr.exceptions import SiteFitFailure

logger = logging.getLogger(__name__)

__all__ = [
    'LinearFit',
    'VectorizedLinearFitter',
    'fit_site',
]


@dataclass
class LinearFit:
    """Per-site linear fit results for one design.

    Attributes:
        coefficients: (n_sites, n_params); NaN rows for failed sites.
        fitted: (n_sites, n_samples) fitted values Xβ̂.
        residuals: (n_sites, n_samples); NaN where the observation is missing.
        sigma: (n_sites,) residual standard error.
        stderr: (n_sites, n_params) coefficient standard errors.
        df_residual: (n_sites,) residual degrees of freedom.
        failed: (n_sites,) True where the site could not be fit.
    """

    coefficients: NDArray[np.float64]
    fitted: NDArray[np.float64]
    residuals: NDArray[np.float64]
    sigma: NDArray[np.float64]
    stderr: NDArray[np.float64]
    df_residual: NDArray[np.float64]
    failed: NDArray[np.bool_]

    @property
    def n_sites(self) -> int:
        return self.coefficients.shape[0]

    @property
    def n_failed(self) -> int:
        return int(self.failed.sum())

    def coef(self, index: int) -> NDArray[np.float64]:
        """Coefficient of one design column, per site."""
        return self.coefficients[:, index]

    def t_values(self, index: int) -> NDArray[np.float64]:
        with np.errstate(divide='ignore', invalid='ignore'):
            return self.coefficients[:, index] / self.stderr[:, index]

    def p_values(self, index: int) -> NDArray[np.float64]:
        """Two-sided t-test p-values of one design column, per site."""
        t = self.t_values(index)
        return 2.0 * scipy_stats.t.sf(np.abs(t), self.df_residual)

    def precision_weights(self) -> NDArray[np.float64]:
        """Inverse residual standard error, per site."""
        with np.errstate(divide='ignore'):
            return 1.0 / self.sigma


def fit_site(
    X: NDArray[np.float64],
    y: NDArray[np.float64],
    weights: Optional[NDArray[np.float64]] = None,
    site_index: int | None = None,
) -> tuple[NDArray[np.float64], float, NDArray[np.float64], int]:
    """
    Weighted least-squares fit of one site on its observed samples.

    Args:
        X: Design matrix (n_samples, n_params)
        y: Site measurements (n_samples,), NaN for missing
        weights: Optional observation weights (n_samples,)
        site_index: Site position, reported on failure

    Returns:
        Tuple of (coefficients, sigma, stderr, df_residual)

    Raises:
        SiteFitFailure: Too few observations or a rank-deficient subset
    """
    n_params = X.shape[1]
    valid = ~np.isnan(y)
    if weights is not None:
        valid &= np.isfinite(weights) & (weights > 0)

    n_obs = int(valid.sum())
    df = n_obs - n_params
    if df < 1:
        raise SiteFitFailure(
            f"site {site_index}: {n_obs} observations for {n_params} parameters",
            site_index=site_index,
        )

    X_v = X[valid]
    y_v = y[valid]
    if weights is not None:
        sqrt_w = np.sqrt(weights[valid])
        X_v = X_v * sqrt_w[:, None]
        y_v = y_v * sqrt_w

    if n_params == 0:
        rss = float(y_v @ y_v)
        return np.empty(0), float(np.sqrt(rss / df)), np.empty(0), df

    beta, _, rank, _ = np.linalg.lstsq(X_v, y_v, rcond=None)
    if rank < n_params:
        raise SiteFitFailure(
            f"site {site_index}: design is rank-deficient on observed samples "
            f"(rank={rank}, n_params={n_params})",
            site_index=site_index,
        )

    resid = y_v - X_v @ beta
    sigma = float(np.sqrt(resid @ resid / df))
    xtx_inv = np.linalg.inv(X_v.T @ X_v)
    stderr = sigma * np.sqrt(np.diag(xtx_inv))
    return beta, sigma, stderr, df


class VectorizedLinearFitter:
    """
    Fit one design matrix against many sites at once.

    Pre-computes the pseudo-inverse and (X'X)⁻¹ diagonal from the design,
    then applies them to every site in a single matrix product. Sites with
    missing values are batched by missingness pattern; observation weights
    route every site through ``fit_site``.

    Attributes:
        design_matrix_: np.ndarray
            Design matrix X (n_samples × n_params)
        pinv_: np.ndarray
            Pseudo-inverse X⁺ (n_params × n_samples)
        xtx_inv_diag_: np.ndarray
            Diagonal of (X'X)⁻¹ for standard errors
    """

    def __init__(self, X: NDArray[np.float64]):
        """
        Initialize fitter with the pre-computed projection for ``X``.

        Args:
            X: Design matrix (n_samples × n_params); n_params may be 0

        Raises:
            ValueError: If X is not 2-D or leaves no residual degrees of freedom
        """
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(f"Design matrix must be 2D, got shape {X.shape}")
        self.design_matrix_ = X
        self.n_samples, self.n_params = X.shape
        self.df_resid = self.n_samples - self.n_params
        if self.df_resid < 1:
            raise ValueError(
                f"Design with {self.n_params} params leaves no residual df "
                f"for {self.n_samples} samples"
            )

        if self.n_params:
            self.pinv_ = np.linalg.pinv(X)
            xtx = X.T @ X
            try:
                xtx_inv = np.linalg.inv(xtx)
            except np.linalg.LinAlgError:
                warnings.warn(
                    "Design matrix is singular. Using regularized inverse.",
                    UserWarning
                )
                xtx_inv = np.linalg.inv(xtx + 1e-8 * np.eye(self.n_params))
            self.xtx_inv_diag_ = np.diag(xtx_inv).copy()
        else:
            self.pinv_ = np.zeros((0, self.n_samples))
            self.xtx_inv_diag_ = np.zeros(0)

    def _projection(
        self, observed: NDArray[np.bool_]
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], int]:
        """Pseudo-inverse, (X'X)⁻¹ diagonal and residual df on the observed samples."""
        if observed.all():
            return self.pinv_, self.xtx_inv_diag_, self.df_resid

        n_obs = int(observed.sum())
        df = n_obs - self.n_params
        if df < 1:
            raise SiteFitFailure(f"{n_obs} observations for {self.n_params} parameters")
        if not self.n_params:
            return np.zeros((0, n_obs)), np.zeros(0), df

        X_v = self.design_matrix_[observed]
        rank = np.linalg.matrix_rank(X_v)
        if rank < self.n_params:
            raise SiteFitFailure(
                f"design is rank-deficient on observed samples "
                f"(rank={rank}, n_params={self.n_params})"
            )
        xtx_inv = np.linalg.inv(X_v.T @ X_v)
        return np.linalg.pinv(X_v), np.diag(xtx_inv).copy(), df

    def fit(
        self,
        Y: NDArray[np.float64],
        weights: Optional[NDArray[np.float64]] = None,
    ) -> LinearFit:
        """
        Fit the design against every site.

        Args:
            Y: Site measurements (n_sites × n_samples), NaN for missing
            weights: Optional observation weights (n_sites × n_samples)

        Returns:
            LinearFit with per-site results; failed sites are NaN-filled and
            flagged in ``failed``.

        Raises:
            ValueError: If Y's sample axis does not match the design
        """
        Y = np.atleast_2d(np.asarray(Y, dtype=np.float64))
        n_sites, n_samples = Y.shape
        if n_samples != self.n_samples:
            raise ValueError(
                f"Data has {n_samples} samples but design has {self.n_samples}"
            )
        if weights is not None:
            weights = np.atleast_2d(np.asarray(weights, dtype=np.float64))
            if weights.shape != Y.shape:
                raise ValueError(
                    f"weights shape {weights.shape} must match data shape {Y.shape}"
                )

        X = self.design_matrix_
        coefficients = np.full((n_sites, self.n_params), np.nan)
        stderr = np.full((n_sites, self.n_params), np.nan)
        sigma = np.full(n_sites, np.nan)
        df_residual = np.full(n_sites, np.nan)
        failed = np.zeros(n_sites, dtype=bool)

        if weights is None:
            # One projection per missingness pattern; complete sites share the
            # precomputed one
            observed = ~np.isnan(Y)
            patterns: dict[bytes, list[int]] = {}
            for i in range(n_sites):
                patterns.setdefault(observed[i].tobytes(), []).append(i)
            for rows in patterns.values():
                rows = np.asarray(rows)
                mask = observed[rows[0]]
                try:
                    pinv, xtx_inv_diag, df = self._projection(mask)
                except (SiteFitFailure, np.linalg.LinAlgError) as e:
                    logger.debug("Fit failed for %d sites: %s", rows.size, e)
                    failed[rows] = True
                    continue
                Y_g = Y[np.ix_(rows, mask)]
                B = Y_g @ pinv.T
                resid = Y_g - B @ X[mask].T
                s = np.sqrt(np.sum(resid ** 2, axis=1) / df)
                coefficients[rows] = B
                sigma[rows] = s
                stderr[rows] = s[:, None] * np.sqrt(xtx_inv_diag)[None, :]
                df_residual[rows] = df
        else:
            for i in range(n_sites):
                try:
                    beta, s, se, df = fit_site(X, Y[i], weights[i], site_index=int(i))
                except (SiteFitFailure, np.linalg.LinAlgError) as e:
                    logger.debug("Site fit failed: %s", e)
                    failed[i] = True
                    continue
                coefficients[i] = beta
                sigma[i] = s
                stderr[i] = se
                df_residual[i] = df

        fitted = coefficients @ X.T if self.n_params else np.zeros_like(Y)
        residuals = Y - fitted

        return LinearFit(
            coefficients=coefficients,
            fitted=fitted,
            residuals=residuals,
            sigma=sigma,
            stderr=stderr,
            df_residual=df_residual,
            failed=failed,
        )

    @property
    def condition_number(self) -> float:
        """Condition number of the design matrix."""
        if not self.n_params:
            return 1.0
        return float(np.linalg.cond(self.design_matrix_))

    def __repr__(self) -> str:
        return (
            f"VectorizedLinearFitter("
            f"n_samples={self.n_samples}, "
            f"n_params={self.n_params}, "
            f"cond={self.condition_number:.1f})"
        )
