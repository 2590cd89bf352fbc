"""
clustercorr - Significance for clusters of correlated measurements

Combines per-site p-values while accounting for inter-site correlation
(Stouffer-Liptak, z-score) and tests cluster "bumps" with an adaptive
residual-permutation engine. Designed for neighbouring CpG probes in
methylation studies.
"""

__version__ = "0.1.0"

from clustercorr.config import AnalysisConfig, CombineMethod, CorrelationMethod, load_config
from clustercorr.core.cluster import Cluster, CombinedResult
from clustercorr.stats.bumping import bump_test
from clustercorr.stats.cluster_model import cluster_model, run_clusters
from clustercorr.stats.combine import combine

__all__ = [
    "AnalysisConfig",
    "CombineMethod",
    "CorrelationMethod",
    "load_config",
    "Cluster",
    "CombinedResult",
    "bump_test",
    "cluster_model",
    "run_clusters",
    "combine",
]
