"""
Residual-permutation null distribution for a cluster "bump".

Per-trial loop (Freedman-Lane style):
    1. Fit the reduced (null) design to every site -> fitted values, residuals
    2. Draw ONE permutation of the samples and apply it to the residuals of
       every site, so the synthetic data keep the cross-site correlation
    3. synthetic = fitted_reduced + residuals_reduced[:, permutation]
    4. Refit the full design, take the per-site coefficient of interest and
       per-site precision (1 / residual SE)
    5. Reduce to one scalar with the smoothed summary statistic

Trials are independent. Each gets its own child of a SeedSequence, spawned
in trial order, so a fixed seed reproduces the batch bit for bit whatever
the number of workers. Workers only read the shared reduced fit; each trial
owns its synthetic matrix and returns a single float (or None when too many
of its sites fail to fit and the trial is discarded).

References:
    Freedman & Lane (1983) A nonstochastic interpretation of reported
    significance levels. J Bus Econ Stat 1:292-298.
    Jaffe et al. (2012) Bump hunting to identify differentially methylated
    regions in epigenetic epidemiology studies. Int J Epidemiol 41:200-209.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs
from numpy.random import SeedSequence
from numpy.typing import NDArray

from clustercorr.config import AnalysisConfig
from clustercorr.core.cluster import Cluster
from clustercorr.exceptions import DesignError, SiteFitFailure
from clustercorr.models.vectorized_fit import VectorizedLinearFitter
from clustercorr.stats.design_matrix import NestedDesign
from clustercorr.stats.smoothing import smooth_summary

logger = logging.getLogger(__name__)

__all__ = [
    'PermutationModel',
    'SimulationBatch',
    'align_cluster',
    'prepare_permutation_model',
    'run_trial',
    'simulate',
    'simulate_model',
]


@dataclass(frozen=True)
class PermutationModel:
    """Read-only inputs shared by every simulation trial of one cluster.

    Attributes:
        fitted: Reduced-design fitted values (n_usable_sites, n_samples).
        residuals: Reduced-design residuals (n_usable_sites, n_samples).
        fitter: Full-design fitter (projection pre-computed once).
        coef_index: Column of the coefficient of interest in the full design.
        coef_name: Name of the coefficient of interest.
        positions: Original 1-based positions of the usable sites.
        weights: Observation weights of the usable sites, or None.
        observed_coefficients: Full-design coefficients on the real data.
        observed_precision: Full-design precision weights on the real data.
        n_sites: Number of sites in the cluster before exclusions.
    """

    fitted: NDArray[np.float64]
    residuals: NDArray[np.float64]
    fitter: VectorizedLinearFitter
    coef_index: int
    coef_name: str
    positions: NDArray[np.float64]
    weights: Optional[NDArray[np.float64]]
    observed_coefficients: NDArray[np.float64]
    observed_precision: NDArray[np.float64]
    n_sites: int

    @property
    def n_usable_sites(self) -> int:
        return self.fitted.shape[0]

    @property
    def n_samples(self) -> int:
        return self.fitted.shape[1]

    def observed_summary(self, span: float = 0.2, iterations: int = 3):
        """Smoothed summary statistic of the real full-design coefficients."""
        return smooth_summary(
            self.observed_coefficients,
            self.observed_precision,
            span=span,
            iterations=iterations,
            positions=self.positions,
        )


@dataclass
class SimulationBatch:
    """Summary statistics of one resolution level of simulation trials."""

    statistics: NDArray[np.float64]
    n_requested: int
    n_discarded: int = 0

    @property
    def n_trials(self) -> int:
        """Trials that produced a statistic (discarded trials excluded)."""
        return int(self.statistics.size)

    def exceedances(self, observed: float) -> int:
        """Number of trials with |statistic| >= |observed|."""
        return int(np.sum(np.abs(self.statistics) >= abs(observed)))


def align_cluster(cluster: Cluster, design: NestedDesign) -> Cluster:
    """Drop the samples the design excluded for missing covariates."""
    if cluster.n_samples == design.n_samples:
        return cluster
    if design.sample_mask.size == cluster.n_samples:
        return cluster.select_samples(design.sample_mask)
    raise DesignError(
        f"Cluster has {cluster.n_samples} samples but design has {design.n_samples}"
    )


def prepare_permutation_model(
    cluster: Cluster,
    design: NestedDesign,
    weights: Optional[NDArray[np.float64]] = None,
) -> PermutationModel:
    """
    Fit the reduced and full designs once on the real data.

    Sites that fail either fit are excluded from the observed statistic and
    from every trial alike.

    Args:
        cluster: Cluster to test
        design: Nested full / reduced design
        weights: Observation weights (n_sites × n_samples); defaults to
            ``cluster.weights``

    Raises:
        SiteFitFailure: If no site can be fit
        DesignError: If the cluster and design sample axes disagree
    """
    cluster = align_cluster(cluster, design)
    Y = cluster.data
    if weights is None:
        weights = cluster.weights
    else:
        weights = np.atleast_2d(np.asarray(weights, dtype=np.float64))
        if design.drops_samples and weights.shape[1] != design.n_samples:
            weights = weights[:, design.sample_mask]

    reduced_fit = VectorizedLinearFitter(design.X_reduced).fit(Y, weights)
    full_fitter = VectorizedLinearFitter(design.X_full)
    full_fit = full_fitter.fit(Y, weights)

    observed = full_fit.coef(design.coef_index)
    precision = full_fit.precision_weights()
    usable = ~reduced_fit.failed & ~full_fit.failed & np.isfinite(observed)
    if not usable.any():
        raise SiteFitFailure(f"None of the {cluster.n_sites} sites could be fit")
    if not usable.all():
        logger.warning(
            "Excluding %d of %d sites that could not be fit",
            int((~usable).sum()), cluster.n_sites,
        )

    fitted = reduced_fit.fitted[usable]
    residuals = reduced_fit.residuals[usable]
    fitted.setflags(write=False)
    residuals.setflags(write=False)

    return PermutationModel(
        fitted=fitted,
        residuals=residuals,
        fitter=full_fitter,
        coef_index=design.coef_index,
        coef_name=design.coef_name,
        positions=np.flatnonzero(usable).astype(np.float64) + 1.0,
        weights=None if weights is None else np.asarray(weights)[usable],
        observed_coefficients=observed[usable],
        observed_precision=precision[usable],
        n_sites=cluster.n_sites,
    )


def run_trial(
    model: PermutationModel,
    seed: SeedSequence | int | None,
    span: float = 0.2,
    iterations: int = 3,
    max_failed_site_fraction: float = 0.5,
) -> Optional[float]:
    """
    Run one simulation trial and return its summary statistic.

    Returns None when more than ``max_failed_site_fraction`` of the sites
    fail to fit the synthetic data (the trial is discarded).
    """
    rng = np.random.default_rng(seed)
    permutation = rng.permutation(model.n_samples)
    synthetic = model.fitted + model.residuals[:, permutation]

    fit = model.fitter.fit(synthetic, model.weights)
    coefs = fit.coef(model.coef_index)
    precision = fit.precision_weights()

    ok = ~fit.failed & np.isfinite(coefs)
    n_failed = model.n_usable_sites - int(ok.sum())
    if not ok.any() or n_failed > max_failed_site_fraction * model.n_usable_sites:
        logger.debug("Discarding trial: %d of %d sites failed", n_failed, model.n_usable_sites)
        return None

    outcome = smooth_summary(
        coefs[ok],
        precision[ok],
        span=span,
        iterations=iterations,
        positions=model.positions[ok],
    )
    return outcome.value


def _run_chunk(
    model: PermutationModel,
    seeds: Sequence[SeedSequence],
    span: float,
    iterations: int,
    max_failed_site_fraction: float,
) -> list[Optional[float]]:
    return [
        run_trial(model, s, span, iterations, max_failed_site_fraction)
        for s in seeds
    ]


def simulate_model(
    model: PermutationModel,
    n_trials: int,
    config: Optional[AnalysisConfig] = None,
    seed_sequence: Optional[SeedSequence] = None,
) -> SimulationBatch:
    """
    Run ``n_trials`` residual-permutation trials in parallel.

    Args:
        model: Prepared permutation inputs
        n_trials: Trials to run
        config: Supplies n_jobs, span, robustness iterations and the site
            failure tolerance; ``config.seed`` seeds the trials when no
            ``seed_sequence`` is given
        seed_sequence: Parent sequence; trial i uses its i-th spawned child

    Returns:
        SimulationBatch of the non-discarded trial statistics, in trial order
    """
    config = config or AnalysisConfig()
    if n_trials < 1:
        raise ValueError(f"n_trials must be positive, got {n_trials}")
    if seed_sequence is None:
        seed_sequence = SeedSequence(config.seed)

    trial_seeds = seed_sequence.spawn(n_trials)
    n_workers = min(effective_n_jobs(config.n_jobs), n_trials)
    chunks = [c for c in np.array_split(np.arange(n_trials), n_workers * 4) if c.size]

    if n_workers == 1:
        results = _run_chunk(
            model, trial_seeds, config.span,
            config.robustness_iterations, config.max_failed_site_fraction,
        )
    else:
        per_chunk = Parallel(n_jobs=n_workers)(
            delayed(_run_chunk)(
                model,
                [trial_seeds[i] for i in chunk],
                config.span,
                config.robustness_iterations,
                config.max_failed_site_fraction,
            )
            for chunk in chunks
        )
        results = [value for chunk_values in per_chunk for value in chunk_values]

    kept = np.array([v for v in results if v is not None], dtype=np.float64)
    n_discarded = n_trials - kept.size
    if n_discarded:
        logger.warning("Discarded %d of %d simulation trials", n_discarded, n_trials)

    return SimulationBatch(statistics=kept, n_requested=n_trials, n_discarded=n_discarded)


def simulate(
    cluster: Cluster,
    design: NestedDesign,
    n_trials: int,
    config: Optional[AnalysisConfig] = None,
    weights: Optional[NDArray[np.float64]] = None,
) -> SimulationBatch:
    """
    Null distribution of the smoothed summary statistic for a cluster.

    Args:
        cluster: Cluster to test (read-only)
        design: Nested full / reduced design (see ``nested_design_from_matrices``
            to build one from two explicit design matrices)
        n_trials: Number of residual-permutation trials
        config: Seed, parallelism and smoothing settings
        weights: Optional observation weights (n_sites × n_samples)

    Returns:
        SimulationBatch with one statistic per non-discarded trial

    Example:
        >>> design = build_nested_design("methylation ~ disease + age", covs)
        >>> batch = simulate(cluster, design, n_trials=100,
        ...                  config=AnalysisConfig(seed=1, n_jobs=4))
        >>> batch.n_trials
        100
    """
    model = prepare_permutation_model(cluster, design, weights)
    return simulate_model(model, n_trials, config)
