"""Core data structures: the Cluster container and its result type."""

from clustercorr.core.cluster import Cluster, CombinedResult

__all__ = ['Cluster', 'CombinedResult']
