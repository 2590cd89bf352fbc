"""
Nested full / reduced design matrices for residual-permutation testing.

The permutation engine compares a full design, which contains the
coefficient of interest, against a reduced (null) design that lacks it:

    X_full    = [intercept | coefficient_of_interest | nuisance covariates]
    X_reduced = X_full without the coefficient_of_interest column

Invariant: the reduced design's columns are a strict subset of the full
design's, and the set difference is exactly one named column.

Designs are built either from an R-style formula over the covariate table
(``methylation ~ disease + age``; patsy does the parsing and dummy coding,
and the first non-intercept column is the coefficient of interest), or from
explicit named matrices.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from clustercorr.exceptions import DesignError

__all__ = [
    'NestedDesign',
    'build_nested_design',
    'nested_design_from_matrices',
    'formula_rhs',
]

INTERCEPT = "Intercept"


@dataclass(frozen=True)
class NestedDesign:
    """Full and reduced design matrices sharing one sample axis.

    Attributes:
        X_full: Full design matrix (n_samples, n_params), full column rank.
        X_reduced: Reduced design matrix (n_samples, n_params - 1).
        col_names: Column names of X_full.
        coef_name: Name of the coefficient of interest.
        coef_index: Column index of the coefficient of interest in X_full.
        sample_mask: Boolean mask over the original samples; False for
            samples dropped because of missing covariates.
    """

    X_full: NDArray[np.float64]
    X_reduced: NDArray[np.float64]
    col_names: list[str]
    coef_name: str
    coef_index: int
    sample_mask: NDArray[np.bool_]

    @property
    def n_samples(self) -> int:
        return self.X_full.shape[0]

    @property
    def n_params(self) -> int:
        return self.X_full.shape[1]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    @property
    def reduced_col_names(self) -> list[str]:
        return [c for c in self.col_names if c != self.coef_name]

    @property
    def drops_samples(self) -> bool:
        return not bool(np.all(self.sample_mask))


def formula_rhs(formula: str) -> str:
    """Right-hand side of ``"response ~ a + b"`` (or the string itself)."""
    if "~" in formula:
        _, rhs = formula.split("~", 1)
        return rhs.strip()
    return formula.strip()


def _validate_full(X: NDArray[np.float64], col_names: list[str]) -> None:
    n_samples, n_params = X.shape
    rank = np.linalg.matrix_rank(X)
    if rank < n_params:
        raise DesignError(
            f"Full design matrix is rank-deficient: rank={rank}, n_params={n_params}. "
            f"Columns: {col_names}. A covariate may be collinear with another."
        )
    if n_samples - n_params < 1:
        raise DesignError(
            f"Insufficient residual df: {n_samples} samples - {n_params} params = "
            f"{n_samples - n_params}. Reduce covariates or increase sample size."
        )
    # Condition number on X, not X'X, to avoid squared scaling
    cond_number = np.linalg.cond(X)
    if cond_number > 1e6:
        warnings.warn(
            f"Design matrix condition number is high ({cond_number:.3g}). "
            f"Near-collinearity may cause unstable estimates."
        )


def nested_design_from_matrices(
    full: pd.DataFrame | NDArray[np.float64],
    reduced: pd.DataFrame | NDArray[np.float64],
    full_names: list[str] | None = None,
    reduced_names: list[str] | None = None,
) -> NestedDesign:
    """
    Build a NestedDesign from explicit full and reduced matrices.

    Args:
        full: Full design (n_samples, p); DataFrame columns name the terms
        reduced: Reduced design (n_samples, p - 1)
        full_names: Column names when ``full`` is an array
        reduced_names: Column names when ``reduced`` is an array

    Returns:
        NestedDesign whose coefficient of interest is the single column of
        ``full`` that is absent from ``reduced``.

    Raises:
        DesignError: If the designs are not nested with a difference of
            exactly one column, or the full design is rank-deficient.
    """
    if isinstance(full, pd.DataFrame):
        full_names = [str(c) for c in full.columns]
        full = full.values
    if isinstance(reduced, pd.DataFrame):
        reduced_names = [str(c) for c in reduced.columns]
        reduced = reduced.values

    X_full = np.atleast_2d(np.asarray(full, dtype=np.float64))
    X_reduced = np.asarray(reduced, dtype=np.float64)
    if X_reduced.ndim == 1:
        X_reduced = X_reduced.reshape(-1, 1)

    if full_names is None or reduced_names is None:
        raise DesignError("Column names are required to identify the nested coefficient")
    if len(full_names) != X_full.shape[1] or len(reduced_names) != X_reduced.shape[1]:
        raise DesignError("Column names do not match design matrix widths")
    if X_full.shape[0] != X_reduced.shape[0]:
        raise DesignError(
            f"Full design has {X_full.shape[0]} samples but reduced has {X_reduced.shape[0]}"
        )

    missing = set(reduced_names) - set(full_names)
    if missing:
        raise DesignError(f"Reduced design columns {sorted(missing)} are not in the full design")
    extra = [c for c in full_names if c not in set(reduced_names)]
    if len(extra) != 1:
        raise DesignError(
            f"Full and reduced designs must differ by exactly one column, got {extra}"
        )
    coef_name = extra[0]
    coef_index = full_names.index(coef_name)

    # Reduced columns must carry the same values as in the full design
    for j, name in enumerate(reduced_names):
        if not np.allclose(X_reduced[:, j], X_full[:, full_names.index(name)], equal_nan=True):
            raise DesignError(f"Column '{name}' differs between full and reduced designs")
    if np.isnan(X_full).any():
        raise DesignError("Design matrices must not contain missing values")

    _validate_full(X_full, full_names)

    return NestedDesign(
        X_full=X_full,
        X_reduced=np.delete(X_full, coef_index, axis=1),
        col_names=list(full_names),
        coef_name=coef_name,
        coef_index=coef_index,
        sample_mask=np.ones(X_full.shape[0], dtype=bool),
    )


def build_nested_design(
    formula: str,
    covariates: pd.DataFrame,
    coef_name: str | None = None,
) -> NestedDesign:
    """
    Build full and reduced designs from an R-style formula.

    Samples with a missing value in any formula covariate are dropped and
    recorded in ``sample_mask``.

    Args:
        formula: e.g. ``"methylation ~ disease + age"``; only the right-hand
            side is used
        covariates: Per-sample covariate table
        coef_name: Design column to test; defaults to the first non-intercept
            column (``disease`` above)

    Returns:
        NestedDesign

    Raises:
        DesignError: Invalid formula, no testable column, or rank deficiency

    Example:
        >>> design = build_nested_design("methylation ~ disease + age", covs)
        >>> design.coef_name
        'disease'
    """
    import patsy

    rhs = formula_rhs(formula)
    data = covariates.reset_index(drop=True)

    try:
        X = patsy.dmatrix(rhs, data=data, return_type='dataframe')
    except patsy.PatsyError as e:
        raise DesignError(
            f"Invalid formula '{formula}': {e}\n"
            f"Available columns: {list(covariates.columns)}"
        ) from e

    col_names = [str(c) for c in X.columns]
    candidates = [c for c in col_names if c != INTERCEPT]
    if not candidates:
        raise DesignError(f"Formula '{formula}' has no term to test")
    if coef_name is None:
        coef_name = candidates[0]
    elif coef_name not in candidates:
        raise DesignError(f"Coefficient '{coef_name}' not among design columns {candidates}")

    sample_mask = np.zeros(len(data), dtype=bool)
    sample_mask[X.index.values] = True

    X_full = X.values.astype(np.float64)
    coef_index = col_names.index(coef_name)
    _validate_full(X_full, col_names)

    return NestedDesign(
        X_full=X_full,
        X_reduced=np.delete(X_full, coef_index, axis=1),
        col_names=col_names,
        coef_name=coef_name,
        coef_index=coef_index,
        sample_mask=sample_mask,
    )
