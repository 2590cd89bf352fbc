"""
Core data structures for a cluster of correlated measurements.

A Cluster couples a sites × samples measurement table (e.g. neighbouring CpG
probes measured across subjects) with the per-sample covariate table the
sites are tested against. Every inference path in the package collapses to
one CombinedResult per cluster.

Engineering Design:
    - Immutable: data arrays are marked read-only; operations return new instances
    - Validated: constructor checks that sites, samples and covariates line up
    - Missing values are allowed in the measurements (NaN) and tracked via
      ``has_missing`` so callers can pick the pairwise-complete code paths

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from clustercorr.core.cluster import Cluster
    >>>
    >>> data = np.array([[0.10, 0.20, 0.15], [0.12, 0.25, 0.11]])
    >>> covs = pd.DataFrame({'disease': [0, 1, 1]}, index=['s1', 's2', 's3'])
    >>> cluster = Cluster(data, site_ids=['cg01', 'cg02'], covariates=covs)
    >>> cluster.n_sites, cluster.n_samples
    (2, 3)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import pandas as pd

__all__ = ['Cluster', 'CombinedResult']


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64, copy=True)
    array.setflags(write=False)
    return array


class Cluster:
    """
    Immutable container for a cluster's measurements and sample covariates.

    Attributes:
        data: Measurement matrix (sites × samples), NaN marks a missing value
        site_ids: Row identifiers, in genomic (site) order
        sample_ids: Column identifiers
        covariates: Per-sample predictors, index equal to sample_ids
        weights: Optional per-observation weights (sites × samples)

    Shape Invariants:
        - data.shape == (len(site_ids), len(sample_ids))
        - covariates.index equals sample_ids
        - weights is None or weights.shape == data.shape
    """

    def __init__(
        self,
        data: np.ndarray,
        site_ids: Optional[Sequence[object]] = None,
        sample_ids: Optional[Sequence[object]] = None,
        covariates: Optional[pd.DataFrame] = None,
        weights: Optional[np.ndarray] = None,
    ):
        """
        Initialize a Cluster with validation.

        Args:
            data: Measurement matrix (sites × samples). A 1-D array is a
                single site.
            site_ids: Site identifiers; defaults to 1..n_sites
            sample_ids: Sample identifiers; defaults to the covariates index,
                or 0..n_samples-1 when no covariates are given
            covariates: Per-sample covariate table (one row per sample)
            weights: Optional per-observation weights, same shape as data

        Raises:
            ValueError: If shapes are inconsistent or indices don't match
        """
        data = np.asarray(data, dtype=np.float64)
        if data.ndim == 1:
            data = data.reshape(1, -1)
        if data.ndim != 2:
            raise ValueError(f"data must be 2D (sites × samples), got shape {data.shape}")

        n_sites, n_samples = data.shape
        if n_sites < 1 or n_samples < 1:
            raise ValueError(f"Cluster needs at least one site and one sample, got {data.shape}")

        if site_ids is None:
            site_ids = range(1, n_sites + 1)
        site_index = pd.Index(site_ids)
        if len(site_index) != n_sites:
            raise ValueError(
                f"site_ids length ({len(site_index)}) must match data rows ({n_sites})"
            )

        if covariates is not None:
            if not isinstance(covariates, pd.DataFrame):
                raise TypeError(f"covariates must be pd.DataFrame, got {type(covariates)}")
            if len(covariates) != n_samples:
                raise ValueError(
                    f"covariates has {len(covariates)} rows but cluster has {n_samples} samples"
                )

        if sample_ids is None:
            sample_ids = covariates.index if covariates is not None else range(n_samples)
        sample_index = pd.Index(sample_ids)
        if len(sample_index) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_index)}) must match data columns ({n_samples})"
            )

        if covariates is None:
            covariates = pd.DataFrame(index=sample_index)
        if not covariates.index.equals(sample_index):
            raise ValueError("covariates.index must match sample_ids exactly")

        if weights is not None:
            weights = np.asarray(weights, dtype=np.float64)
            if weights.ndim == 1:
                weights = weights.reshape(1, -1)
            if weights.shape != data.shape:
                raise ValueError(
                    f"weights shape {weights.shape} must match data shape {data.shape}"
                )
            if np.any(weights[np.isfinite(weights)] < 0):
                raise ValueError("weights must be non-negative")
            weights = _readonly(weights)

        if np.any(np.isinf(data)):
            raise ValueError("data must not contain infinite values")

        self._data = _readonly(data)
        self._site_ids = site_index
        self._sample_ids = sample_index
        self._covariates = covariates.copy()
        self._weights = weights

    @property
    def data(self) -> np.ndarray:
        """Measurement matrix (sites × samples), read-only."""
        return self._data

    @property
    def site_ids(self) -> pd.Index:
        return self._site_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def covariates(self) -> pd.DataFrame:
        return self._covariates

    @property
    def weights(self) -> Optional[np.ndarray]:
        return self._weights

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_sites, n_samples)."""
        return self._data.shape

    @property
    def n_sites(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @property
    def has_missing(self) -> bool:
        """True when any measurement is missing."""
        return bool(np.isnan(self._data).any())

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        covariates: Optional[pd.DataFrame] = None,
        samples_as_rows: bool = False,
    ) -> Cluster:
        """
        Build a Cluster from a DataFrame.

        Args:
            frame: Sites × samples table (or samples × sites with
                ``samples_as_rows=True``, the usual layout of
                samples-by-probes methylation CSVs)
            covariates: Per-sample covariate table; aligned to the frame's
                sample labels when given
        """
        if samples_as_rows:
            frame = frame.T
        if covariates is not None:
            covariates = covariates.loc[frame.columns]
        return cls(
            frame.values,
            site_ids=frame.index,
            sample_ids=frame.columns,
            covariates=covariates,
        )

    def select_samples(self, mask: np.ndarray | pd.Series) -> Cluster:
        """
        Subset the cluster by samples (columns).

        Args:
            mask: Boolean array/Series indicating which samples to keep

        Returns:
            New Cluster with the selected samples and matching covariates
        """
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_samples:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_samples ({self.n_samples})"
            )

        return Cluster(
            data=self._data[:, mask],
            site_ids=self._site_ids,
            sample_ids=self._sample_ids[mask],
            covariates=self._covariates.iloc[np.flatnonzero(mask)],
            weights=None if self._weights is None else self._weights[:, mask],
        )

    def select_sites(self, mask: np.ndarray | pd.Series) -> Cluster:
        """Subset the cluster by sites (rows), preserving site order."""
        if isinstance(mask, pd.Series):
            mask = mask.values
        mask = np.asarray(mask, dtype=bool)

        if len(mask) != self.n_sites:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_sites ({self.n_sites})"
            )

        return Cluster(
            data=self._data[mask, :],
            site_ids=self._site_ids[mask],
            sample_ids=self._sample_ids,
            covariates=self._covariates,
            weights=None if self._weights is None else self._weights[mask, :],
        )

    def to_frame(self) -> pd.DataFrame:
        """Sites × samples DataFrame view of the measurements."""
        return pd.DataFrame(self._data, index=self._site_ids, columns=self._sample_ids)

    def __repr__(self) -> str:
        return (
            f"Cluster({self.n_sites} sites × {self.n_samples} samples)\n"
            f"  Sites: {self.site_ids[0]}...{self.site_ids[-1]}\n"
            f"  Covariates: {list(self.covariates.columns)}"
        )


@dataclass(frozen=True)
class CombinedResult:
    """
    One inference for one cluster: covariate tested, p-value, effect size.

    Attributes:
        covariate: Name of the coefficient of interest
        p: Combined or permutation p-value, in (0, 1]
        coef: Effect size (mean per-site coefficient)
        additional: Method-specific extras (n_sims, exceedances, ...)
    """

    covariate: str
    p: float
    coef: float
    additional: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        # A NaN or zero p-value is never reported silently
        if not 0.0 < self.p <= 1.0:
            raise ValueError(f"p must be in (0, 1], got {self.p}")

    def to_dict(self) -> dict:
        return {
            'covariate': self.covariate,
            'p': self.p,
            'coef': self.coef,
            **self.additional,
        }
