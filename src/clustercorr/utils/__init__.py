"""Utility functions for clustercorr."""

from clustercorr.utils.correlation_matrix import build_sigma, mean_offdiagonal
from clustercorr.utils.fileio import atomic_write_csv, atomic_write_json

__all__ = [
    'build_sigma',
    'mean_offdiagonal',
    'atomic_write_csv',
    'atomic_write_json',
]
