"""
Configuration for clustered-site inference.

Every entry point takes an explicit ``AnalysisConfig`` instead of reading
global options or an ambient random seed. Configs can be loaded from YAML or
JSON files and selectively overridden from keyword arguments.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


class CorrelationMethod(Enum):
    """Correlation estimator used to build Sigma."""

    PEARSON = "pearson"
    SPEARMAN = "spearman"


class CombineMethod(Enum):
    """Algorithm used to combine correlated per-site p-values."""

    STOUFFER_LIPTAK = "liptak"
    ZSCORE = "z-score"


# (n_trials, escalate when exceedances are below this count); None is terminal.
DEFAULT_SCHEDULE: Tuple[Tuple[int, Optional[int]], ...] = (
    (20, 2),
    (100, 4),
    (2000, 10),
    (5000, 10),
    (15000, None),
)

PINV_POLICIES = ("pinv", "raise")


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Complete configuration for combining and bump-testing a cluster.

    Attributes:
        seed: Root seed for all simulation trials. None draws fresh entropy.
        n_jobs: Parallel workers for simulation trials (joblib semantics).
        correlation_method: Estimator for the site correlation matrix.
        combine_method: P-value combination algorithm.
        schedule: Escalation levels as ``(n_trials, threshold)`` pairs. A level
            escalates to the next one when fewer than ``threshold`` simulated
            statistics reach the observed one. The last threshold must be None.
        span: Fraction of sites in each local-regression window.
        min_pvalue: Floor applied to p-values before the inverse-normal transform.
        pinv_policy: ``"pinv"`` falls back to the Moore-Penrose inverse when
            Sigma is singular; ``"raise"`` raises SingularCorrelationError.
        absolute_sigma: Use absolute correlations when building Sigma.
        max_failed_site_fraction: A trial is discarded when more than this
            fraction of its sites fail to fit.
        robustness_iterations: Bisquare re-weighting passes in the smoother.
    """

    seed: Optional[int] = None
    n_jobs: int = 1
    correlation_method: CorrelationMethod = CorrelationMethod.SPEARMAN
    combine_method: CombineMethod = CombineMethod.STOUFFER_LIPTAK
    schedule: Tuple[Tuple[int, Optional[int]], ...] = DEFAULT_SCHEDULE
    span: float = 0.2
    min_pvalue: float = 1e-13
    pinv_policy: str = "pinv"
    absolute_sigma: bool = True
    max_failed_site_fraction: float = 0.5
    robustness_iterations: int = 3

    def __post_init__(self) -> None:
        # Accept plain strings for the enum fields (config files, kwargs)
        if not isinstance(self.correlation_method, CorrelationMethod):
            object.__setattr__(
                self, "correlation_method", CorrelationMethod(self.correlation_method)
            )
        if not isinstance(self.combine_method, CombineMethod):
            object.__setattr__(self, "combine_method", CombineMethod(self.combine_method))
        schedule = tuple(
            (int(n), None if t is None else int(t)) for n, t in self.schedule
        )
        object.__setattr__(self, "schedule", schedule)

        if not schedule:
            raise ValueError("schedule must contain at least one level")
        if schedule[-1][1] is not None:
            raise ValueError("the last schedule level must be terminal (threshold None)")
        counts = [n for n, _ in schedule]
        if any(n < 1 for n in counts) or counts != sorted(set(counts)):
            raise ValueError(f"schedule trial counts must be positive and increasing: {counts}")
        if not 0.0 < self.span <= 1.0:
            raise ValueError(f"span must be in (0, 1], got {self.span}")
        if not 0.0 < self.min_pvalue < 0.5:
            raise ValueError(f"min_pvalue must be in (0, 0.5), got {self.min_pvalue}")
        if self.pinv_policy not in PINV_POLICIES:
            raise ValueError(
                f"pinv_policy must be one of {PINV_POLICIES}, got {self.pinv_policy!r}"
            )
        if not 0.0 <= self.max_failed_site_fraction < 1.0:
            raise ValueError(
                "max_failed_site_fraction must be in [0, 1), "
                f"got {self.max_failed_site_fraction}"
            )
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero")

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "AnalysisConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seed": self.seed,
            "n_jobs": self.n_jobs,
            "correlation_method": self.correlation_method.value,
            "combine_method": self.combine_method.value,
            "schedule": [list(level) for level in self.schedule],
            "span": self.span,
            "min_pvalue": self.min_pvalue,
            "pinv_policy": self.pinv_policy,
            "absolute_sigma": self.absolute_sigma,
            "max_failed_site_fraction": self.max_failed_site_fraction,
            "robustness_iterations": self.robustness_iterations,
        }


def load_config(config_path: Path) -> AnalysisConfig:
    """
    Load an AnalysisConfig from a YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        AnalysisConfig with file values over the defaults

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("bumping.yaml"))
        >>> config.combine_method
        <CombineMethod.STOUFFER_LIPTAK: 'liptak'>
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                values = yaml.safe_load(f)
            elif suffix == '.json':
                values = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    if values is None:
        return AnalysisConfig()

    if not isinstance(values, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return AnalysisConfig.from_dict(values)


def merge_overrides(config: AnalysisConfig, **overrides: Any) -> AnalysisConfig:
    """
    Return a copy of ``config`` with explicitly provided values replaced.

    Overrides set to None are treated as "not provided" and keep the config
    value, so callers can forward optional keyword arguments unchanged.
    """
    explicit = {k: v for k, v in overrides.items() if v is not None}
    if not explicit:
        return config
    known = {f.name for f in fields(AnalysisConfig)}
    unknown = set(explicit) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")
    return replace(config, **explicit)


__all__ = [
    "AnalysisConfig",
    "CombineMethod",
    "CorrelationMethod",
    "DEFAULT_SCHEDULE",
    "load_config",
    "merge_overrides",
]
