"""Tests for correlated test-data generators."""

import numpy as np
import pytest

from clustercorr.stats.simulate import ar1_correlation, gen_correlated, make_correlated


class TestAr1Correlation:

    def test_entries(self):
        sigma = ar1_correlation(0.5, 4)
        assert sigma[0, 0] == 1.0
        assert sigma[0, 1] == pytest.approx(0.5)
        assert sigma[0, 3] == pytest.approx(0.125)
        np.testing.assert_array_equal(sigma, sigma.T)

    @pytest.mark.parametrize("rho", [-0.2, 1.0])
    def test_invalid_rho(self, rho):
        with pytest.raises(ValueError):
            ar1_correlation(rho, 3)


class TestMakeCorrelated:

    def test_zero_rho_is_identity(self, rng):
        X = rng.normal(size=(10, 3))
        np.testing.assert_allclose(make_correlated(0.0, X), X)

    def test_requires_2d(self):
        with pytest.raises(ValueError):
            make_correlated(0.3, np.ones(5))


class TestGenCorrelated:

    def test_shape(self, rng):
        assert gen_correlated(0.4, n_samples=40, n_sites=4, rng=rng).shape == (40, 4)

    def test_adjacent_correlation(self, rng):
        X = gen_correlated(0.6, n_samples=20000, n_sites=3, rng=rng)
        corr = np.corrcoef(X.T)
        assert corr[0, 1] == pytest.approx(0.6, abs=0.03)
        assert corr[0, 2] == pytest.approx(0.36, abs=0.03)

    def test_per_sample_mean(self, rng):
        mean = np.repeat([0.0, 10.0], 500)
        X = gen_correlated(0.3, n_samples=1000, n_sites=2, mean=mean, sd=0.5, rng=rng)
        assert X[:500].mean() == pytest.approx(0.0, abs=0.1)
        assert X[500:].mean() == pytest.approx(10.0, abs=0.1)

    def test_seeded(self):
        a = gen_correlated(0.5, rng=np.random.default_rng(1))
        b = gen_correlated(0.5, rng=np.random.default_rng(1))
        np.testing.assert_array_equal(a, b)
