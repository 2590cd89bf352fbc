"""
Cluster-level models: per-site fits reduced to one result per cluster.

Three methods share the ``(covariate, p, coef)`` output shape:

    liptak    per-site OLS, p-values combined with Stouffer-Liptak
    z-score   per-site OLS, p-values combined with the weighted z-score method
    bumping   residual-permutation test of the smoothed coefficient sum

A cluster with a single site skips all of them and is reported from an
ordinary single-site linear model.

``run_clusters`` applies one method to many clusters in parallel. A cluster
that fails is reported as a NaN row carrying the error message; it never
aborts the batch. ``run_clusters_x`` repeats the batch once per row of a
feature matrix X (e.g. gene expression), testing that row as the covariate
of interest.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from numpy.typing import NDArray

from clustercorr.config import AnalysisConfig, CombineMethod, CorrelationMethod
from clustercorr.core.cluster import Cluster, CombinedResult
from clustercorr.exceptions import DesignError, SiteFitFailure
from clustercorr.models.vectorized_fit import VectorizedLinearFitter
from clustercorr.stats.bumping import bump_test
from clustercorr.stats.combine import combine
from clustercorr.stats.design_matrix import INTERCEPT, NestedDesign, build_nested_design
from clustercorr.stats.permutation import align_cluster
from clustercorr.utils.correlation_matrix import build_sigma
from clustercorr.utils.fileio import atomic_write_csv

logger = logging.getLogger(__name__)

__all__ = [
    'BUMPING',
    'METHODS',
    'cluster_combine',
    'cluster_model',
    'lm_site',
    'run_clusters',
    'run_clusters_x',
]

BUMPING = "bumping"
METHODS = (CombineMethod.STOUFFER_LIPTAK.value, CombineMethod.ZSCORE.value, BUMPING)

RESULT_COLUMNS = ['covariate', 'p', 'coef', 'error']


def _site_weights(weights: Optional[NDArray[np.float64]]) -> Optional[NDArray[np.float64]]:
    """Per-site combination weights from observation weights: log2(1 + mean)."""
    if weights is None:
        return None
    return np.log2(1.0 + np.nanmean(weights, axis=1))


def cluster_combine(
    cluster: Cluster,
    design: NestedDesign | str,
    config: Optional[AnalysisConfig] = None,
    weights: Optional[NDArray[np.float64]] = None,
    algorithm: CombineMethod | str | None = None,
) -> CombinedResult:
    """
    Fit every site and combine the per-site p-values into one.

    Args:
        cluster: Cluster with its covariate table
        design: NestedDesign, or a formula such as
            ``"methylation ~ disease + age"`` over ``cluster.covariates``
        config: Correlation method, combine algorithm, p-value floor. A
            cluster with missing values always uses signed pairwise-complete
            Pearson for Sigma
        weights: Optional observation weights (n_sites × n_samples); sites
            are then fit by WLS and weighted in the combination by
            ``log2(1 + mean weight)``
        algorithm: Overrides ``config.combine_method``

    Returns:
        CombinedResult; ``coef`` is the (site-weighted) mean per-site
        coefficient

    Raises:
        SiteFitFailure: A site cannot be fit
        DegenerateSiteError: A site has an undefined correlation
    """
    config = config or AnalysisConfig()
    algorithm = CombineMethod(algorithm) if algorithm is not None else config.combine_method
    if isinstance(design, str):
        design = build_nested_design(design, cluster.covariates)

    cluster = align_cluster(cluster, design)
    if weights is None:
        weights = cluster.weights
    elif design.drops_samples:
        weights = np.atleast_2d(np.asarray(weights, dtype=np.float64))[:, design.sample_mask]

    fit = VectorizedLinearFitter(design.X_full).fit(cluster.data, weights)
    if fit.n_failed:
        bad = [cluster.site_ids[i] for i in np.flatnonzero(fit.failed)]
        raise SiteFitFailure(
            f"Sites {bad} could not be fit", site_index=int(np.flatnonzero(fit.failed)[0])
        )

    pvalues = fit.p_values(design.coef_index)
    coefs = fit.coef(design.coef_index)
    site_weights = _site_weights(weights)

    if cluster.has_missing:
        # Pairwise-complete Pearson, signed, when measurements are missing
        logger.debug("Cluster has missing values; building Sigma with signed Pearson")
        sigma = build_sigma(cluster, method=CorrelationMethod.PEARSON, absolute=False)
    else:
        sigma = build_sigma(
            cluster, method=config.correlation_method, absolute=config.absolute_sigma
        )
    p = combine(pvalues, sigma, site_weights, algorithm=algorithm, config=config)
    coef = float(np.average(coefs, weights=site_weights))

    return CombinedResult(
        covariate=design.coef_name,
        p=p,
        coef=coef,
        additional={'n_sites': cluster.n_sites},
    )


def lm_site(
    formula: str,
    covariates: pd.DataFrame,
    values: Sequence[float],
    weights: Optional[Sequence[float]] = None,
    min_pvalue: float = 1e-13,
) -> CombinedResult:
    """
    Single-site linear model for the first non-intercept term of a formula.

    Args:
        formula: ``"methylation ~ disease + age"``; the response column is
            added to a copy of ``covariates``
        covariates: Per-sample covariate table
        values: Site measurements, one per sample (NaN dropped)
        weights: Optional observation weights (WLS)
        min_pvalue: Replaces a p-value that underflows to 0

    Returns:
        CombinedResult for the first term on the right-hand side

    Raises:
        DesignError: Invalid formula or no testable term
        SiteFitFailure: No residual degrees of freedom or undefined p-value
    """
    import patsy
    import statsmodels.api as sm

    if "~" not in formula:
        raise DesignError(f"Formula '{formula}' has no response")
    response = formula.split("~", 1)[0].strip() or "methylation"

    data = covariates.reset_index(drop=True).copy()
    data[response] = np.asarray(values, dtype=np.float64)

    try:
        y, X = patsy.dmatrices(formula, data, return_type='dataframe')
    except patsy.PatsyError as e:
        raise DesignError(f"Invalid formula '{formula}': {e}") from e

    terms = [c for c in X.columns if c != INTERCEPT]
    if not terms:
        raise DesignError(f"Formula '{formula}' has no term to test")
    covariate = terms[0]

    if len(y) - X.shape[1] < 1:
        raise SiteFitFailure(
            f"{len(y)} observations for {X.shape[1]} parameters in '{formula}'"
        )

    if weights is None:
        result = sm.OLS(y, X).fit()
    else:
        w = np.asarray(weights, dtype=np.float64)[X.index.values]
        result = sm.WLS(y, X, weights=w).fit()

    p = float(result.pvalues[covariate])
    coef = float(result.params[covariate])
    if np.isnan(p):
        raise SiteFitFailure(f"p-value for '{covariate}' is undefined (perfect fit?)")

    return CombinedResult(covariate=covariate, p=p if p > 0.0 else min_pvalue, coef=coef)


def cluster_model(
    cluster: Cluster,
    formula: str,
    method: Optional[str] = None,
    config: Optional[AnalysisConfig] = None,
    weights: Optional[NDArray[np.float64]] = None,
) -> CombinedResult:
    """
    Test the first right-hand-side term of ``formula`` across a cluster.

    Args:
        cluster: Cluster with its covariate table
        formula: e.g. ``"methylation ~ disease + age"``
        method: "liptak", "z-score" or "bumping"; defaults to
            ``config.combine_method``
        config: Analysis configuration
        weights: Optional observation weights (n_sites × n_samples)

    Returns:
        CombinedResult

    Example:
        >>> result = cluster_model(cluster, "methylation ~ disease", method="bumping",
        ...                        config=AnalysisConfig(seed=7))
        >>> result.covariate
        'disease'
    """
    config = config or AnalysisConfig()
    method = method or config.combine_method.value
    if method not in METHODS:
        raise ValueError(f"Unknown method '{method}'. Available: {list(METHODS)}")

    if weights is None:
        weights = cluster.weights

    if cluster.n_sites == 1:
        return lm_site(
            formula,
            cluster.covariates,
            cluster.data[0],
            weights=None if weights is None else np.atleast_2d(weights)[0],
            min_pvalue=config.min_pvalue,
        )

    design = build_nested_design(formula, cluster.covariates)
    if method == BUMPING:
        return bump_test(cluster, design, weights=weights, config=config)
    return cluster_combine(cluster, design, config, weights=weights, algorithm=method)


def _cluster_items(clusters) -> list:
    if isinstance(clusters, Mapping):
        return list(clusters.items())
    return list(enumerate(clusters, start=1))


def _weights_by_id(items: list, weights) -> dict:
    if weights is None:
        return {cid: None for cid, _ in items}
    if isinstance(weights, Mapping):
        return {cid: weights.get(cid) for cid, _ in items}
    if len(weights) != len(items):
        raise ValueError(f"Got {len(weights)} weight matrices for {len(items)} clusters")
    return {cid: w for (cid, _), w in zip(items, weights)}


def _run_one(
    cluster_id: object,
    cluster: Cluster,
    formula: str,
    method: Optional[str],
    config: AnalysisConfig,
    weights: Optional[NDArray[np.float64]],
) -> dict:
    try:
        result = cluster_model(cluster, formula, method, config, weights)
    except Exception as e:
        logger.warning("Cluster %s failed: %s", cluster_id, e)
        return {
            'cluster_id': cluster_id,
            'covariate': None,
            'p': np.nan,
            'coef': np.nan,
            'error': f"{type(e).__name__}: {e}",
        }
    return {'cluster_id': cluster_id, **result.to_dict(), 'error': None}


def run_clusters(
    clusters: Mapping[object, Cluster] | Sequence[Cluster],
    formula: str,
    method: Optional[str] = None,
    config: Optional[AnalysisConfig] = None,
    weights: Optional[Mapping[object, NDArray[np.float64]] | Sequence[NDArray[np.float64]]] = None,
    output_path: Optional[str | os.PathLike] = None,
) -> pd.DataFrame:
    """
    Apply ``cluster_model`` to many clusters in parallel.

    Args:
        clusters: Clusters keyed by id, or a sequence (ids 1..n)
        formula: Model formula shared by all clusters
        method: "liptak", "z-score" or "bumping"
        config: Analysis configuration; ``n_jobs`` workers process clusters
            and each cluster's trials then run serially
        weights: Optional observation weights per cluster, keyed or ordered
            like ``clusters``
        output_path: Write the table here (CSV, or TSV for .tsv/.txt)

    Returns:
        DataFrame indexed by cluster id with columns covariate, p, coef,
        error plus method-specific extras. Failed clusters have NaN p/coef
        and the error message.
    """
    config = config or AnalysisConfig()
    if method is not None and method not in METHODS:
        raise ValueError(f"Unknown method '{method}'. Available: {list(METHODS)}")

    items = _cluster_items(clusters)
    weight_of = _weights_by_id(items, weights)

    n_workers = min(effective_n_jobs(config.n_jobs), max(len(items), 1))
    inner = replace(config, n_jobs=1) if n_workers > 1 else config

    logger.info("Testing %d clusters with method=%s (n_jobs=%d)",
                len(items), method or config.combine_method.value, n_workers)

    if n_workers > 1:
        rows = Parallel(n_jobs=n_workers)(
            delayed(_run_one)(cid, cluster, formula, method, inner, weight_of[cid])
            for cid, cluster in items
        )
    else:
        rows = [
            _run_one(cid, cluster, formula, method, inner, weight_of[cid])
            for cid, cluster in items
        ]

    table = pd.DataFrame(rows)
    if table.empty:
        table = pd.DataFrame(columns=['cluster_id'] + RESULT_COLUMNS)
    table = table.set_index('cluster_id')

    n_failed = int(table['error'].notna().sum())
    if n_failed:
        logger.warning("%d of %d clusters failed", n_failed, len(table))

    if output_path is not None:
        sep = "\t" if str(output_path).endswith((".tsv", ".txt")) else ","
        atomic_write_csv(output_path, table, sep=sep)

    return table


def _term_name(name: object) -> str:
    name = str(name)
    return name if name.isidentifier() else f"Q('{name}')"


def _with_covariate(cluster: Cluster, name: str, values: NDArray[np.float64]) -> Cluster:
    covariates = cluster.covariates.copy()
    covariates[name] = values
    return Cluster(
        cluster.data,
        site_ids=cluster.site_ids,
        sample_ids=cluster.sample_ids,
        covariates=covariates,
        weights=cluster.weights,
    )


def _align_row(row: pd.Series, cluster: Cluster) -> NDArray[np.float64]:
    """Row of X in the cluster's sample order, by label when possible."""
    if row.index.isin(cluster.sample_ids).all() and cluster.sample_ids.isin(row.index).all():
        return row.reindex(cluster.sample_ids).to_numpy(dtype=np.float64)
    if len(row) != cluster.n_samples:
        raise DesignError(
            f"X row '{row.name}' has {len(row)} samples but cluster has {cluster.n_samples}"
        )
    return row.to_numpy(dtype=np.float64)


def _run_x_row(
    row: pd.Series,
    items: list,
    formula: str,
    method: Optional[str],
    config: AnalysisConfig,
    weight_of: dict,
) -> pd.DataFrame:
    lhs, rhs = (part.strip() for part in formula.split("~", 1))
    term = _term_name(row.name)
    row_formula = f"{lhs} ~ {term}" if rhs == "1" else f"{lhs} ~ {term} + {rhs}"

    augmented = {}
    for cid, cluster in items:
        augmented[cid] = _with_covariate(cluster, str(row.name), _align_row(row, cluster))

    table = run_clusters(augmented, row_formula, method=method, config=config, weights=weight_of)
    table['X'] = row.name
    table['model'] = row_formula
    return table


def run_clusters_x(
    clusters: Mapping[object, Cluster] | Sequence[Cluster],
    formula: str,
    X: pd.DataFrame,
    method: Optional[str] = None,
    config: Optional[AnalysisConfig] = None,
    weights: Optional[Mapping[object, NDArray[np.float64]] | Sequence[NDArray[np.float64]]] = None,
    output_path: Optional[str | os.PathLike] = None,
) -> pd.DataFrame:
    """
    Test every row of ``X`` (e.g. expression of nearby genes) against every cluster.

    Each row is added to the covariates and becomes the tested first term:
    ``methylation ~ disease`` turns into ``methylation ~ <row> + disease``, and
    ``methylation ~ 1`` into ``methylation ~ <row>``.

    Args:
        clusters: Clusters keyed by id, or a sequence (ids 1..n)
        formula: Base formula; its right-hand side is kept as adjustment terms
        X: Features × samples table. Columns are matched to each cluster's
            sample ids by label, or by position when the labels differ.
        method: "liptak", "z-score" or "bumping"
        config: Analysis configuration; ``n_jobs`` workers process rows of X
            and each row's clusters then run serially
        weights: Optional observation weights per cluster
        output_path: Write the table here (CSV, or TSV for .tsv/.txt)

    Returns:
        ``run_clusters`` table for every row of X stacked together, with
        ``X`` (row name) and ``model`` (formula used) columns added

    Example:
        >>> table = run_clusters_x(clusters, "methylation ~ age", expression,
        ...                        method="liptak")
        >>> table.groupby('X')['p'].min()
    """
    config = config or AnalysisConfig()
    if "~" not in formula:
        raise DesignError(f"Formula '{formula}' has no response")
    if method is not None and method not in METHODS:
        raise ValueError(f"Unknown method '{method}'. Available: {list(METHODS)}")
    if not isinstance(X, pd.DataFrame):
        raise TypeError(f"X must be pd.DataFrame, got {type(X)}")
    if not X.index.is_unique:
        raise ValueError("X row names must be unique")

    items = _cluster_items(clusters)
    weight_of = _weights_by_id(items, weights)
    if len(X):
        for _, cluster in items:
            _align_row(X.iloc[0], cluster)

    n_workers = min(effective_n_jobs(config.n_jobs), max(len(X), 1))
    inner = replace(config, n_jobs=1)

    logger.info("Testing %d rows of X against %d clusters (n_jobs=%d)",
                len(X), len(items), n_workers)

    rows = (X.loc[name] for name in X.index)
    if n_workers > 1:
        tables = Parallel(n_jobs=n_workers)(
            delayed(_run_x_row)(row, items, formula, method, inner, weight_of)
            for row in rows
        )
    else:
        tables = [_run_x_row(row, items, formula, method, inner, weight_of) for row in rows]

    if tables:
        table = pd.concat(tables)
    else:
        table = pd.DataFrame(columns=RESULT_COLUMNS + ['X', 'model'])
        table.index.name = 'cluster_id'

    if output_path is not None:
        sep = "\t" if str(output_path).endswith((".tsv", ".txt")) else ","
        atomic_write_csv(output_path, table, sep=sep)

    return table
