"""
Error taxonomy for clustered-site inference.

Structural problems (degenerate sites, malformed design nesting) abort the
whole operation. Numerical problems local to one site, one trial or one
smoothing call are recovered by the caller with a documented fallback.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


class ClusterCorrError(Exception):
    """Base class for all clustercorr errors."""


class DegenerateSiteError(ClusterCorrError, ValueError):
    """Raised when a correlation involving a site is undefined.

    Either the site has zero variance, or a pair of sites shares too few
    pairwise-complete observations to estimate a correlation.
    """

    def __init__(self, message: str, site_ids: Sequence[object] = ()):
        super().__init__(message)
        self.site_ids = list(site_ids)


class SingularCorrelationError(ClusterCorrError, np.linalg.LinAlgError):
    """Raised when Sigma is singular and pseudo-inverse fallback is disabled."""


class DesignError(ClusterCorrError, ValueError):
    """Raised when the full/reduced designs violate their nesting invariant."""


class SiteFitFailure(ClusterCorrError):
    """A linear fit failed for one site (recoverable by the caller)."""

    def __init__(self, message: str, site_index: int | None = None):
        super().__init__(message)
        self.site_index = site_index


class SmoothingFailure(ClusterCorrError):
    """Local regression failed numerically. Never escapes ``summarize``."""


class InsufficientTrialsError(ClusterCorrError, RuntimeError):
    """Raised when every simulation trial of a resolution level was discarded."""


__all__ = [
    "ClusterCorrError",
    "DegenerateSiteError",
    "SingularCorrelationError",
    "DesignError",
    "SiteFitFailure",
    "SmoothingFailure",
    "InsufficientTrialsError",
]
