"""
Pytest configuration and shared fixtures.

Clusters are generated with a known correlation between sites and a known
group shift on the ``disease`` covariate, so tests can check both the
correlation handling and the direction of effects.
"""

import numpy as np
import pandas as pd
import pytest

from clustercorr.core.cluster import Cluster


def make_covariates(n_samples: int, seed: int = 0) -> pd.DataFrame:
    """Half controls, half cases, plus a nuisance ``age`` column."""
    rng = np.random.default_rng(seed)
    disease = np.repeat([0, 1], [n_samples // 2, n_samples - n_samples // 2])
    return pd.DataFrame(
        {
            'disease': disease,
            'age': rng.uniform(20, 80, size=n_samples).round(1),
        },
        index=[f"s{i}" for i in range(n_samples)],
    )


def make_cluster(
    n_sites: int = 4,
    n_samples: int = 40,
    rho: float = 0.23,
    shift: float = 0.0,
    sd: float = 1.0,
    seed: int = 42,
) -> Cluster:
    """
    Generate a cluster with exchangeable site correlation ``rho``.

    Cases (disease == 1) are shifted by ``shift`` at every site.

    Returns:
        Cluster of shape (n_sites, n_samples) with covariates
    """
    rng = np.random.default_rng(seed)
    covs = make_covariates(n_samples, seed=seed + 1)
    cov = sd ** 2 * ((1.0 - rho) * np.eye(n_sites) + rho * np.ones((n_sites, n_sites)))
    noise = rng.multivariate_normal(np.zeros(n_sites), cov, size=n_samples).T
    data = noise + shift * covs['disease'].values[None, :]
    return Cluster(
        data,
        site_ids=[f"cg{i:04d}" for i in range(n_sites)],
        covariates=covs,
    )


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(42)


@pytest.fixture
def covariates():
    """Covariate table for 40 samples."""
    return make_covariates(40)


@pytest.fixture
def null_cluster():
    """5 correlated sites, 30 samples, no disease effect."""
    return make_cluster(n_sites=5, n_samples=30, rho=0.4, shift=0.0, seed=7)


@pytest.fixture
def effect_cluster():
    """5 correlated sites, 40 samples, a strong disease effect."""
    return make_cluster(n_sites=5, n_samples=40, rho=0.4, shift=2.0, seed=11)
