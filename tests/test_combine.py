"""Tests for correlation-adjusted p-value combination."""

import logging

import numpy as np
import pytest
from scipy import stats

from clustercorr.config import AnalysisConfig
from clustercorr.exceptions import SingularCorrelationError
from clustercorr.stats.cluster_model import cluster_combine, lm_site
from clustercorr.stats.combine import (
    combine,
    pvalues_to_z,
    stouffer_liptak_combine,
    zscore_combine,
)

from conftest import make_cluster


def exchangeable(n, rho):
    return (1.0 - rho) * np.eye(n) + rho * np.ones((n, n))


COMBINERS = [stouffer_liptak_combine, zscore_combine]


class TestSingleSite:
    """A cluster of one site returns that site's p-value unchanged."""

    @pytest.mark.parametrize("combiner", COMBINERS)
    @pytest.mark.parametrize("p0", [1e-8, 0.003, 0.2, 0.5, 0.97, 1.0])
    def test_idempotent(self, combiner, p0):
        assert combiner([p0], np.array([[1.0]])) == p0

    @pytest.mark.parametrize("combiner", COMBINERS)
    def test_idempotent_with_weight(self, combiner):
        assert combiner([0.04], np.array([[1.0]]), weights=[3.0]) == 0.04

    @pytest.mark.parametrize("combiner", COMBINERS)
    def test_zero_is_floored(self, combiner):
        assert combiner([0.0], np.eye(1)) == 1e-13


class TestStoufferLiptak:
    """Tests for stouffer_liptak_combine()."""

    def test_independent_sites_match_stouffer(self):
        p = np.array([0.01, 0.2, 0.05])
        expected = stats.norm.sf(stats.norm.isf(p).sum() / np.sqrt(3))
        assert stouffer_liptak_combine(p, np.eye(3)) == pytest.approx(expected)

    def test_weighted_independent_sites(self):
        p = np.array([0.001, 0.5])
        w = np.array([2.0, 1.0])
        z = stats.norm.isf(p)
        expected = stats.norm.sf((w @ z) / np.sqrt(w @ w))
        assert stouffer_liptak_combine(p, np.eye(2), weights=w) == pytest.approx(expected)

    def test_weight_on_strong_site_lowers_p(self):
        p = [0.001, 0.5]
        equal = stouffer_liptak_combine(p, np.eye(2))
        weighted = stouffer_liptak_combine(p, np.eye(2), weights=[2.0, 1.0])
        assert weighted < equal

    def test_exchangeable_closed_form(self):
        """With exchangeable Sigma the GLS form reduces to sum(z) / sqrt(1' Sigma 1)."""
        p = np.array([0.02, 0.04, 0.1, 0.3])
        rho = 0.23
        z = stats.norm.isf(p)
        expected = stats.norm.sf(z.sum() / np.sqrt(4 + 12 * rho))
        assert stouffer_liptak_combine(p, exchangeable(4, rho)) == pytest.approx(expected)

    def test_correlation_weakens_evidence(self):
        p = [0.01, 0.02, 0.03]
        independent = stouffer_liptak_combine(p, np.eye(3))
        correlated = stouffer_liptak_combine(p, exchangeable(3, 0.6))
        assert correlated > independent

    def test_zero_pvalue_floored(self):
        p = stouffer_liptak_combine([0.0, 0.5], np.eye(2))
        assert 0.0 < p < 1e-6

    def test_tiny_result_never_zero(self):
        p = stouffer_liptak_combine([1e-300] * 50, np.eye(50), min_pvalue=1e-300)
        assert p > 0.0

    def test_singular_sigma_uses_pseudo_inverse(self, caplog):
        """Perfectly collinear sites collapse to a single site."""
        with caplog.at_level(logging.WARNING, logger="clustercorr.stats.combine"):
            p = stouffer_liptak_combine([0.01, 0.01, 0.01], np.ones((3, 3)))

        assert p == pytest.approx(0.01)
        assert "pseudo-inverse" in caplog.text

    def test_singular_sigma_can_raise(self):
        with pytest.raises(SingularCorrelationError):
            stouffer_liptak_combine([0.01, 0.02], np.ones((2, 2)), pinv_policy="raise")

    def test_singular_error_is_linalg_error(self):
        with pytest.raises(np.linalg.LinAlgError):
            stouffer_liptak_combine([0.01, 0.02], np.ones((2, 2)), pinv_policy="raise")


class TestZscoreCombine:
    """Tests for zscore_combine()."""

    def test_matches_stouffer_for_independent_sites(self):
        p = [0.01, 0.2, 0.05, 0.6]
        assert zscore_combine(p, np.eye(4)) == pytest.approx(
            stouffer_liptak_combine(p, np.eye(4))
        )

    def test_perfect_correlation_is_one_site(self):
        assert zscore_combine([0.01] * 3, np.ones((3, 3))) == pytest.approx(0.01)

    def test_weighted_formula(self):
        p = np.array([0.01, 0.3, 0.04])
        w = np.array([1.0, 0.5, 2.0])
        rho = 0.3
        z = stats.norm.isf(p)
        var = (w ** 2).sum() + rho * (w.sum() ** 2 - (w ** 2).sum())
        expected = stats.norm.sf((w @ z) / np.sqrt(var))
        assert zscore_combine(p, exchangeable(3, rho), weights=w) == pytest.approx(expected)

    def test_non_positive_variance(self):
        sigma = np.array([[1.0, -1.0], [-1.0, 1.0]])
        with pytest.raises(SingularCorrelationError):
            zscore_combine([0.1, 0.2], sigma)


class TestMonotonicity:
    """Smaller input p-values never increase the combined p-value."""

    @pytest.mark.parametrize("combiner", COMBINERS)
    @pytest.mark.parametrize("index", [0, 1, 2, 3])
    def test_replacing_with_smaller(self, combiner, index):
        sigma = exchangeable(4, 0.35)
        p = np.array([0.2, 0.05, 0.4, 0.1])
        base = combiner(p, sigma)

        smaller = p.copy()
        smaller[index] = p[index] / 10.0
        assert combiner(smaller, sigma) <= base


class TestValidation:
    """Tests for input checks."""

    @pytest.mark.parametrize("p", [[0.1, 1.2], [-0.1, 0.5], [np.nan, 0.5]])
    def test_invalid_pvalues(self, p):
        with pytest.raises(ValueError):
            stouffer_liptak_combine(p, np.eye(2))

    def test_empty(self):
        with pytest.raises(ValueError):
            zscore_combine([], np.eye(0))

    def test_sigma_shape(self):
        with pytest.raises(ValueError, match="shape"):
            stouffer_liptak_combine([0.1, 0.2], np.eye(3))

    def test_asymmetric_sigma(self):
        with pytest.raises(ValueError, match="symmetric"):
            stouffer_liptak_combine([0.1, 0.2], np.array([[1.0, 0.5], [0.1, 1.0]]))

    @pytest.mark.parametrize("weights", [[1.0, -1.0], [1.0, 0.0], [1.0]])
    def test_invalid_weights(self, weights):
        with pytest.raises(ValueError):
            zscore_combine([0.1, 0.2], np.eye(2), weights=weights)

    def test_pvalues_to_z_floor(self):
        z = pvalues_to_z(np.array([0.0, 0.5, 1.0]), min_pvalue=1e-13)
        assert np.all(np.isfinite(z))
        assert z[1] == pytest.approx(0.0)


class TestCombineDispatch:
    """Tests for combine() algorithm selection."""

    def test_default_is_stouffer_liptak(self):
        p, sigma = [0.01, 0.04, 0.2], exchangeable(3, 0.5)
        assert combine(p, sigma) == stouffer_liptak_combine(p, sigma)

    def test_algorithm_string(self):
        p, sigma = [0.01, 0.04, 0.2], exchangeable(3, 0.5)
        assert combine(p, sigma, algorithm="z-score") == zscore_combine(p, sigma)

    def test_config_selects_algorithm(self):
        p, sigma = [0.01, 0.04, 0.2], exchangeable(3, 0.5)
        config = AnalysisConfig(combine_method="z-score")
        assert combine(p, sigma, config=config) == zscore_combine(p, sigma)

    def test_config_pinv_policy(self):
        config = AnalysisConfig(pinv_policy="raise")
        with pytest.raises(SingularCorrelationError):
            combine([0.1, 0.2], np.ones((2, 2)), config=config)

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError):
            combine([0.1], np.eye(1), algorithm="fisher")


class TestCorrelatedClusterScenario:
    """4 sites, 40 samples, r ~ 0.23, shift 0.025 with sd 0.035."""

    def test_combined_beats_typical_single_site(self):
        """Combining the cluster gives more evidence than a typical single site."""
        wins = 0
        for seed in range(20):
            cluster = make_cluster(
                n_sites=4, n_samples=40, rho=0.23, shift=0.025, sd=0.035, seed=seed
            )
            combined = cluster_combine(cluster, "methylation ~ disease").p
            single = [
                lm_site("methylation ~ disease", cluster.covariates, cluster.data[i]).p
                for i in range(cluster.n_sites)
            ]
            wins += combined < np.median(single)
        assert wins >= 15

    def test_equal_evidence_is_amplified(self):
        p = [0.05] * 4
        assert stouffer_liptak_combine(p, exchangeable(4, 0.23)) < 0.01
