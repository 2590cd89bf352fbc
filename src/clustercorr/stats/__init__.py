"""
Statistical engines for clustered sites.

- combine: correlation-adjusted p-value combination (Stouffer-Liptak, z-score)
- design_matrix: nested full / reduced designs
- smoothing: smoothed summary statistic over site order
- permutation: residual-permutation null distributions
- bumping: adaptive permutation significance
- cluster_model: per-cluster dispatch and batch runs
- simulate: correlated test data
"""

from clustercorr.stats.bumping import bump_test, permutation_pvalue
from clustercorr.stats.cluster_model import (
    cluster_combine,
    cluster_model,
    lm_site,
    run_clusters,
    run_clusters_x,
)
from clustercorr.stats.combine import (
    combine,
    pvalues_to_z,
    stouffer_liptak_combine,
    zscore_combine,
)
from clustercorr.stats.design_matrix import (
    NestedDesign,
    build_nested_design,
    nested_design_from_matrices,
)
from clustercorr.stats.permutation import SimulationBatch, simulate
from clustercorr.stats.simulate import gen_correlated, make_correlated
from clustercorr.stats.smoothing import SmoothingOutcome, smooth_summary, summarize

__all__ = [
    'bump_test',
    'permutation_pvalue',
    'cluster_combine',
    'cluster_model',
    'lm_site',
    'run_clusters',
    'run_clusters_x',
    'combine',
    'pvalues_to_z',
    'stouffer_liptak_combine',
    'zscore_combine',
    'NestedDesign',
    'build_nested_design',
    'nested_design_from_matrices',
    'SimulationBatch',
    'simulate',
    'gen_correlated',
    'make_correlated',
    'SmoothingOutcome',
    'smooth_summary',
    'summarize',
]
