#!/usr/bin/env python3
"""
Normalization benchmark for single-cell RNA-seq analysis

Each candidate normalization is applied to the raw counts, then scored on
how much batch and QC signal is left in the top principal components and how
well the cells separate into clusters.
"""

import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
import matplotlib.pyplot as plt
from sklearn.metrics import silhouette_score

from scrna_report.params import NORMALIZATION_PARAMS


def _from_counts(adata):
    norm = adata.copy()
    if "counts" in norm.layers:
        norm.X = norm.layers["counts"].copy()
    else:
        norm.layers["counts"] = norm.X.copy()
    norm.X = norm.X.astype(np.float32)
    return norm


def _log_only(adata, target_sum):
    sc.pp.log1p(adata)


def _total(adata, target_sum):
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)


def _total_hvg_exclude(adata, target_sum):
    sc.pp.normalize_total(
        adata, target_sum=target_sum, exclude_highly_expressed=True, max_fraction=0.05
    )
    sc.pp.log1p(adata)


def _pearson_residuals(adata, target_sum):
    sc.experimental.pp.normalize_pearson_residuals(adata)


def _scaled(adata, target_sum):
    _total(adata, target_sum)
    sc.pp.scale(adata, max_value=10)


NORMALIZATION_METHODS = {
    "none": _log_only,
    "total": _total,
    "total_hvg_exclude": _total_hvg_exclude,
    "pearson_residuals": _pearson_residuals,
    "scaled": _scaled,
}

# Metric name -> True when higher values are better
METRIC_DIRECTIONS = {
    "batch_silhouette": False,
    "qc_correlation": False,
    "cluster_silhouette": True,
}


def apply_normalization(adata, method, target_sum=None):
    """Return a normalized copy of ``adata``

    Args:
        adata: AnnData object with raw counts in ``layers["counts"]`` or X
        method: Key of NORMALIZATION_METHODS
        target_sum: Library size used by scaling methods

    Returns:
        Normalized AnnData copy with the method recorded in ``uns["normalization"]``
    """
    if method not in NORMALIZATION_METHODS:
        raise ValueError(
            f"Unknown normalization method: {method}. "
            f"Choose from {sorted(NORMALIZATION_METHODS)}"
        )
    if target_sum is None:
        target_sum = NORMALIZATION_PARAMS["target_sum"]

    norm = _from_counts(adata)
    NORMALIZATION_METHODS[method](norm, target_sum)
    norm.uns["normalization"] = method
    return norm


def score_normalization(adata, batch_key="batch", qc_keys=None, n_pcs=None, resolution=1.0):
    """Score a normalized AnnData

    Metrics:
    - batch_silhouette: silhouette of batch labels on PCs (lower is better)
    - qc_correlation: max |Pearson r| between the top 3 PCs and QC covariates
      (lower is better)
    - cluster_silhouette: silhouette of a Leiden clustering on PCs (higher is better)

    Returns:
        Dict of metric name -> value (NaN when a metric is undefined)
    """
    if qc_keys is None:
        qc_keys = NORMALIZATION_PARAMS["qc_keys"]
    if n_pcs is None:
        n_pcs = NORMALIZATION_PARAMS["n_pcs"]

    n_comps = int(min(n_pcs, adata.n_obs - 1, adata.n_vars - 1))
    sc.pp.pca(adata, n_comps=n_comps)
    X = adata.obsm["X_pca"]

    scores = {}

    batches = adata.obs[batch_key].astype(str) if batch_key in adata.obs else None
    if batches is not None and batches.nunique() > 1:
        scores["batch_silhouette"] = float(silhouette_score(X, batches))
    else:
        scores["batch_silhouette"] = np.nan

    top = X[:, : min(3, X.shape[1])]
    correlations = []
    for key in qc_keys:
        if key not in adata.obs:
            continue
        covariate = adata.obs[key].to_numpy(dtype=float)
        if np.std(covariate) == 0:
            continue
        for i in range(top.shape[1]):
            if np.std(top[:, i]) == 0:
                continue
            correlations.append(abs(np.corrcoef(top[:, i], covariate)[0, 1]))
    scores["qc_correlation"] = float(max(correlations)) if correlations else np.nan

    sc.pp.neighbors(adata, use_rep="X_pca", n_neighbors=min(15, adata.n_obs - 1))
    sc.tl.leiden(adata, resolution=resolution, key_added="benchmark_leiden", directed=False)
    labels = adata.obs["benchmark_leiden"].astype(str)
    if 1 < labels.nunique() < adata.n_obs:
        scores["cluster_silhouette"] = float(silhouette_score(X, labels))
    else:
        scores["cluster_silhouette"] = np.nan
    scores["n_clusters"] = int(labels.nunique())

    return scores


def rank_normalizations(scores_df):
    """Rank methods on every metric and average the ranks

    Missing metric values rank last.

    Returns:
        DataFrame with ``rank_<metric>`` columns and ``mean_rank``, best first
    """
    ranked = scores_df.copy()
    rank_cols = []
    for metric, higher_is_better in METRIC_DIRECTIONS.items():
        col = f"rank_{metric}"
        ranked[col] = ranked[metric].rank(
            ascending=not higher_is_better, method="average", na_option="bottom"
        )
        rank_cols.append(col)
    ranked["mean_rank"] = ranked[rank_cols].mean(axis=1)
    return ranked.sort_values(["mean_rank", "method"])


def benchmark_normalizations(adata, methods=None, batch_key="batch", save_dir=None):
    """Apply and score every normalization method

    Args:
        adata: AnnData object with raw counts and QC metrics
        methods: List of method names (defaults to NORMALIZATION_PARAMS)
        batch_key: Column in adata.obs holding the batch
        save_dir: Directory for the TSV table and heatmap (optional)

    Returns:
        Ranked DataFrame, best method first
    """
    if methods is None:
        methods = NORMALIZATION_PARAMS["methods"]

    print(f"Benchmarking {len(methods)} normalization methods...")

    rows = []
    for method in methods:
        print(f"  {method}")
        norm = apply_normalization(adata, method)
        scores = score_normalization(norm, batch_key=batch_key)
        scores["method"] = method
        rows.append(scores)

    scores_df = pd.DataFrame(rows)
    ranked = rank_normalizations(scores_df).reset_index(drop=True)

    print("\nNormalization ranking:")
    print(ranked[["method", *METRIC_DIRECTIONS, "mean_rank"]].to_string(index=False))

    if save_dir is not None:
        out_tsv = save_dir / "normalization_benchmark.tsv"
        ranked.to_csv(out_tsv, sep="\t", index=False)
        print(f"  Saved: {out_tsv}")
        plot_normalization_scores(ranked, save_dir)

    return ranked


def plot_normalization_scores(ranked, save_dir):
    """Heatmap of per-metric ranks for each method"""
    rank_cols = [f"rank_{m}" for m in METRIC_DIRECTIONS]
    mat = ranked.set_index("method")[rank_cols + ["mean_rank"]]

    try:
        fig, ax = plt.subplots(figsize=(7, max(3, 0.5 * len(mat))))
        sns.heatmap(mat, annot=True, fmt=".1f", cmap="viridis_r", ax=ax)
        ax.set_title("Normalization ranks (1 = best)")
        plt.tight_layout()
        out_png = save_dir / "normalization_benchmark.png"
        fig.savefig(out_png, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out_png}")
        plt.close(fig)
    except Exception as e:
        print(f"Warning: could not write normalization plot: {e}")
