"""Tests for the residual-permutation simulator."""

import logging
from unittest.mock import patch

import numpy as np
import pytest
from numpy.random import SeedSequence

from clustercorr.config import AnalysisConfig
from clustercorr.core.cluster import Cluster
from clustercorr.exceptions import DesignError, SiteFitFailure
from clustercorr.models.vectorized_fit import VectorizedLinearFitter
from clustercorr.stats.design_matrix import build_nested_design
from clustercorr.stats.permutation import (
    SimulationBatch,
    prepare_permutation_model,
    run_trial,
    simulate,
    simulate_model,
)
from clustercorr.stats.smoothing import summarize

from conftest import make_covariates

FORMULA = "methylation ~ disease + age"


@pytest.fixture
def design(null_cluster):
    return build_nested_design(FORMULA, null_cluster.covariates)


class TestSimulationBatch:

    def test_exceedances_use_absolute_values(self):
        batch = SimulationBatch(np.array([-3.0, 1.0, 2.0, -0.5]), n_requested=4)
        assert batch.exceedances(2.0) == 2
        assert batch.exceedances(-2.0) == 2
        assert batch.n_trials == 4


class TestPreparePermutationModel:
    """Tests for the shared reduced / full fits."""

    def test_reduced_fit_and_observed_coefficients(self, null_cluster, design):
        model = prepare_permutation_model(null_cluster, design)

        reduced = VectorizedLinearFitter(design.X_reduced).fit(null_cluster.data)
        full = VectorizedLinearFitter(design.X_full).fit(null_cluster.data)
        np.testing.assert_allclose(model.fitted, reduced.fitted)
        np.testing.assert_allclose(model.residuals, reduced.residuals)
        np.testing.assert_allclose(model.observed_coefficients, full.coef(design.coef_index))
        np.testing.assert_array_equal(model.positions, [1.0, 2.0, 3.0, 4.0, 5.0])
        assert model.coef_name == 'disease'

    def test_shared_fits_are_read_only(self, null_cluster, design):
        model = prepare_permutation_model(null_cluster, design)
        with pytest.raises(ValueError):
            model.residuals[0, 0] = 1.0

    def test_unfittable_site_excluded(self, null_cluster, design, caplog):
        data = np.array(null_cluster.data)
        data[1, 2:] = np.nan
        cluster = Cluster(data, site_ids=null_cluster.site_ids, covariates=null_cluster.covariates)

        with caplog.at_level(logging.WARNING, logger="clustercorr.stats.permutation"):
            model = prepare_permutation_model(cluster, design)

        assert model.n_usable_sites == 4
        assert model.n_sites == 5
        np.testing.assert_array_equal(model.positions, [1.0, 3.0, 4.0, 5.0])
        assert "Excluding 1 of 5" in caplog.text

    def test_no_fittable_site(self, null_cluster, design):
        data = np.full(null_cluster.shape, np.nan)
        data[:, :2] = 1.0
        cluster = Cluster(data, covariates=null_cluster.covariates)
        with pytest.raises(SiteFitFailure):
            prepare_permutation_model(cluster, design)

    def test_design_dropping_samples(self, null_cluster):
        covs = null_cluster.covariates.copy()
        covs.iloc[4, covs.columns.get_loc('age')] = np.nan
        design = build_nested_design(FORMULA, covs)

        model = prepare_permutation_model(null_cluster, design)

        assert model.n_samples == null_cluster.n_samples - 1

    def test_sample_mismatch(self, null_cluster):
        design = build_nested_design(FORMULA, make_covariates(12))
        with pytest.raises(DesignError):
            prepare_permutation_model(null_cluster, design)


class TestRunTrial:
    """Tests for one simulation trial."""

    def test_one_permutation_shared_by_all_sites(self, null_cluster, design):
        """The trial statistic equals a column permutation of the residuals."""
        model = prepare_permutation_model(null_cluster, design)
        seed = SeedSequence(123)

        statistic = run_trial(model, seed)

        perm = np.random.default_rng(SeedSequence(123)).permutation(model.n_samples)
        synthetic = model.fitted + model.residuals[:, perm]
        fit = VectorizedLinearFitter(design.X_full).fit(synthetic)
        expected = summarize(
            fit.coef(design.coef_index), fit.precision_weights(), positions=model.positions
        )
        assert statistic == pytest.approx(expected)

    def test_identity_permutation_recovers_observed(self, null_cluster, design):
        model = prepare_permutation_model(null_cluster, design)

        class _Identity:
            def permutation(self, n):
                return np.arange(n)

        with patch("clustercorr.stats.permutation.np.random.default_rng", return_value=_Identity()):
            statistic = run_trial(model, None)

        assert statistic == pytest.approx(model.observed_summary().value)

    def test_trial_discarded_when_too_many_sites_fail(self, null_cluster, design):
        model = prepare_permutation_model(null_cluster, design)
        failing = np.array([True, True, True, False, False])

        original_fit = VectorizedLinearFitter.fit

        def fit_with_failures(self, Y, weights=None):
            fit = original_fit(self, Y, weights)
            fit.failed = failing.copy()
            return fit

        with patch.object(VectorizedLinearFitter, "fit", fit_with_failures):
            assert run_trial(model, 1, max_failed_site_fraction=0.5) is None
            assert run_trial(model, 1, max_failed_site_fraction=0.7) is not None


class TestSimulate:
    """Tests for batches of trials."""

    def test_batch_size(self, null_cluster, design):
        batch = simulate(null_cluster, design, 25, AnalysisConfig(seed=1))
        assert batch.n_trials == 25
        assert batch.n_requested == 25
        assert batch.n_discarded == 0
        assert np.all(np.isfinite(batch.statistics))

    def test_reproducible_with_seed(self, null_cluster, design):
        config = AnalysisConfig(seed=2024)
        first = simulate(null_cluster, design, 30, config)
        second = simulate(null_cluster, design, 30, config)
        np.testing.assert_array_equal(first.statistics, second.statistics)

    def test_independent_of_n_jobs(self, null_cluster, design):
        """Trial i always uses seed child i, whatever the worker count."""
        serial = simulate(null_cluster, design, 24, AnalysisConfig(seed=5, n_jobs=1))
        parallel = simulate(null_cluster, design, 24, AnalysisConfig(seed=5, n_jobs=2))
        np.testing.assert_array_equal(serial.statistics, parallel.statistics)

    def test_different_seeds_differ(self, null_cluster, design):
        a = simulate(null_cluster, design, 20, AnalysisConfig(seed=1))
        b = simulate(null_cluster, design, 20, AnalysisConfig(seed=2))
        assert not np.array_equal(a.statistics, b.statistics)

    def test_cluster_not_mutated(self, null_cluster, design):
        before = np.array(null_cluster.data)
        simulate(null_cluster, design, 10, AnalysisConfig(seed=3))
        np.testing.assert_array_equal(null_cluster.data, before)

    def test_discarded_trials_not_counted(self, null_cluster, design, caplog):
        model = prepare_permutation_model(null_cluster, design)
        values = iter([None, 1.0, None, 2.0])

        with patch("clustercorr.stats.permutation.run_trial", side_effect=lambda *a, **k: next(values)):
            with caplog.at_level(logging.WARNING, logger="clustercorr.stats.permutation"):
                batch = simulate_model(model, 4, AnalysisConfig(seed=0))

        np.testing.assert_array_equal(batch.statistics, [1.0, 2.0])
        assert batch.n_discarded == 2
        assert "Discarded 2 of 4" in caplog.text

    def test_invalid_trial_count(self, null_cluster, design):
        with pytest.raises(ValueError):
            simulate(null_cluster, design, 0)
