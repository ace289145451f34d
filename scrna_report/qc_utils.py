#!/usr/bin/env python3
"""
Quality control utilities for single-cell RNA-seq analysis
Handles QC metrics, adaptive outliers, mixture-model filtering and gene filters
"""

import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
from scipy import sparse
from scipy.stats import median_abs_deviation
from sklearn.mixture import GaussianMixture

from scrna_report.params import (
    CELL_FILTERS,
    GENE_FILTERS,
    GENE_PATTERNS,
    MIXTURE_PARAMS,
    OUTLIER_PARAMS,
)

# Direction in which each metric is considered an outlier
DEFAULT_OUTLIER_METRICS = {
    "log1p_total_counts": "lower",
    "log1p_n_genes_by_counts": "lower",
    "percent_mt": "higher",
}


def calculate_qc_metrics(adata):
    """Calculate QC metrics

    Args:
        adata: AnnData object with raw counts in X

    Returns:
        AnnData object with QC metrics added
    """
    print("Calculating QC metrics...")

    # Mitochondrial genes
    adata.var["mt"] = adata.var_names.str.startswith(GENE_PATTERNS["mt_pattern"])
    # Ribosomal genes
    adata.var["ribo"] = adata.var_names.str.match(GENE_PATTERNS["ribo_pattern"])

    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt", "ribo"], percent_top=None, log1p=True, inplace=True
    )

    adata.obs["percent_mt"] = adata.obs["pct_counts_mt"].fillna(0.0)
    adata.obs["percent_ribo"] = adata.obs["pct_counts_ribo"].fillna(0.0)

    print(
        f"  {int(adata.var['mt'].sum())} mitochondrial and "
        f"{int(adata.var['ribo'].sum())} ribosomal genes flagged"
    )

    return adata


def summarize_qc_by_batch(adata, batch_key="batch"):
    """Per-batch cell counts and median QC metrics

    Returns:
        DataFrame indexed by batch
    """
    summary = adata.obs.groupby(batch_key, observed=True).agg(
        n_cells=("total_counts", "size"),
        median_counts=("total_counts", "median"),
        median_genes=("n_genes_by_counts", "median"),
        median_percent_mt=("percent_mt", "median"),
    )
    return summary.round(2)


def _mad_bounds(values, nmads, direction):
    med = np.median(values)
    mad = median_abs_deviation(values, scale="normal")
    lower = med - nmads * mad if direction in ("lower", "both") else -np.inf
    upper = med + nmads * mad if direction in ("higher", "both") else np.inf
    return lower, upper


def flag_mad_outliers(adata, metrics=None, nmads=None, batch_key="batch"):
    """Flag cells that are outliers for any QC metric within their batch

    A cell is an outlier when a metric lies more than ``nmads`` scaled median
    absolute deviations from the batch median in the flagged direction.

    Args:
        adata: AnnData object with QC metrics
        metrics: Dict of metric -> "lower" / "higher" / "both"
        nmads: Number of MADs (defaults to OUTLIER_PARAMS)
        batch_key: Column in adata.obs holding the batch

    Returns:
        AnnData object with boolean ``obs["outlier"]`` and one
        ``obs["outlier_<metric>"]`` column per metric
    """
    if metrics is None:
        metrics = DEFAULT_OUTLIER_METRICS
    if nmads is None:
        nmads = OUTLIER_PARAMS["nmads"]

    missing = [m for m in metrics if m not in adata.obs]
    if missing:
        raise KeyError(f"QC metrics not found in adata.obs: {missing}")

    print(f"Flagging outliers ({nmads} MADs per batch)...")

    combined = np.zeros(adata.n_obs, dtype=bool)
    for metric, direction in metrics.items():
        flags = np.zeros(adata.n_obs, dtype=bool)
        for batch in adata.obs[batch_key].unique():
            mask = (adata.obs[batch_key] == batch).to_numpy()
            values = adata.obs.loc[mask, metric].to_numpy(dtype=float)
            lower, upper = _mad_bounds(values, nmads, direction)
            flags[mask] = (values < lower) | (values > upper)
        adata.obs[f"outlier_{metric}"] = flags
        combined |= flags
        print(f"  {metric}: {flags.sum():,} cells")

    adata.obs["outlier"] = combined
    print(f"  Total outliers: {combined.sum():,} ({combined.mean()*100:.1f}%)")

    return adata


def filter_cells_mixture(
    adata,
    batch_key="batch",
    n_components=None,
    posterior_cutoff=None,
    min_cells=None,
    min_mt_separation=None,
    random_state=None,
):
    """Flag compromised cells with a per-batch Gaussian mixture model

    Fits a mixture over the mitochondrial percentage of each batch. The
    component with the highest mean is taken as the compromised population and
    the one with the lowest mean as intact. Batches where the two means are
    less than ``min_mt_separation`` percentage points apart have no distinct
    compromised population and are skipped. Otherwise a cell is flagged when
    its posterior for the compromised component exceeds ``posterior_cutoff``
    and its mitochondrial percentage is above the intact mean.

    Args:
        adata: AnnData object with QC metrics
        batch_key: Column in adata.obs holding the batch
        n_components: Number of mixture components
        posterior_cutoff: Posterior probability cutoff
        min_cells: Batches with fewer cells are not modelled
        min_mt_separation: Minimum gap between compromised and intact means
        random_state: Seed for the mixture fit

    Returns:
        AnnData object with ``obs["prob_compromised"]`` and ``obs["compromised"]``
    """
    if n_components is None:
        n_components = MIXTURE_PARAMS["n_components"]
    if posterior_cutoff is None:
        posterior_cutoff = MIXTURE_PARAMS["posterior_cutoff"]
    if min_cells is None:
        min_cells = MIXTURE_PARAMS["min_cells"]
    if min_mt_separation is None:
        min_mt_separation = MIXTURE_PARAMS["min_mt_separation"]
    if random_state is None:
        random_state = MIXTURE_PARAMS["random_state"]

    print("Fitting mixture model for compromised cells...")

    prob = np.zeros(adata.n_obs)
    compromised = np.zeros(adata.n_obs, dtype=bool)

    for batch in adata.obs[batch_key].unique():
        mask = (adata.obs[batch_key] == batch).to_numpy()
        n_cells = int(mask.sum())
        if n_cells < min_cells:
            print(f"  Skipping {batch} - only {n_cells} cells")
            continue

        mt = adata.obs.loc[mask, "percent_mt"].to_numpy(dtype=float)
        gmm = GaussianMixture(n_components=n_components, random_state=random_state)
        gmm.fit(mt.reshape(-1, 1))

        mt_means = gmm.means_[:, 0]
        bad = int(np.argmax(mt_means))
        good_mt = float(np.min(mt_means))
        separation = float(mt_means[bad]) - good_mt
        if separation < min_mt_separation:
            print(
                f"  Skipping {batch} - component means only {separation:.1f} "
                f"points apart, no compromised population"
            )
            continue

        posterior = gmm.predict_proba(mt.reshape(-1, 1))[:, bad]
        flags = (posterior > posterior_cutoff) & (mt > good_mt)

        prob[mask] = posterior
        compromised[mask] = flags
        print(f"  {batch}: {flags.sum():,} / {n_cells:,} compromised")

    adata.obs["prob_compromised"] = prob
    adata.obs["compromised"] = compromised

    return adata


def _genes_passing(counts, min_counts, min_cells):
    if sparse.issparse(counts):
        passing = (counts >= min_counts).sum(axis=0)
        passing = np.asarray(passing).ravel()
    else:
        passing = (np.asarray(counts) >= min_counts).sum(axis=0)
    return passing >= min_cells


def filter_cells_and_genes(
    adata,
    min_genes=None,
    max_genes=None,
    max_mt_pct=None,
    min_counts=None,
    max_counts=None,
    max_ribo_pct=None,
    gene_min_counts=None,
    gene_min_cells=None,
):
    """Apply QC filtering

    Fixed thresholds default to CELL_FILTERS; ``outlier``, ``compromised`` and
    ``predicted_doublet`` flags are honored when present. Genes are then kept
    when they have at least ``gene_min_counts`` UMIs in ``gene_min_cells`` cells.

    Returns:
        Filtered AnnData copy
    """
    min_genes = CELL_FILTERS["min_genes"] if min_genes is None else min_genes
    max_genes = CELL_FILTERS["max_genes"] if max_genes is None else max_genes
    max_mt_pct = CELL_FILTERS["max_mt_pct"] if max_mt_pct is None else max_mt_pct
    gene_min_counts = GENE_FILTERS["min_counts"] if gene_min_counts is None else gene_min_counts
    gene_min_cells = GENE_FILTERS["min_cells"] if gene_min_cells is None else gene_min_cells

    print("Applying QC filters...")
    print(f"Starting with {adata.n_obs} cells and {adata.n_vars} genes")

    obs = adata.obs
    keep = (
        (obs["n_genes_by_counts"] >= min_genes)
        & (obs["n_genes_by_counts"] <= max_genes)
        & (obs["percent_mt"] < max_mt_pct)
    )

    # Optional count filters
    if min_counts is not None:
        keep &= obs["total_counts"] >= min_counts
    if max_counts is not None:
        keep &= obs["total_counts"] <= max_counts

    # Optional ribosomal filter
    if max_ribo_pct is not None:
        keep &= obs["percent_ribo"] < max_ribo_pct

    for flag in ("outlier", "compromised", "predicted_doublet"):
        if flag in obs:
            n_flagged = int((keep & obs[flag].astype(bool)).sum())
            keep &= ~obs[flag].astype(bool)
            print(f"  Removing {n_flagged:,} cells flagged '{flag}'")

    adata = adata[keep.to_numpy()].copy()

    counts = adata.layers["counts"] if "counts" in adata.layers else adata.X
    gene_mask = _genes_passing(counts, gene_min_counts, gene_min_cells)
    adata = adata[:, gene_mask].copy()

    print(f"After filtering: {adata.n_obs} cells and {adata.n_vars} genes")

    return adata


def plot_qc_metrics(adata, save_dir=None, batch_key="batch"):
    """Plot QC metrics per batch

    Args:
        adata: AnnData object with QC metrics
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting QC metrics...")

    metrics = ["n_genes_by_counts", "total_counts", "percent_mt", "percent_ribo"]
    fig, axes = plt.subplots(2, 2, figsize=(12, 8))
    for ax, metric in zip(axes.flatten(), metrics):
        sc.pl.violin(
            adata,
            metric,
            groupby=batch_key,
            jitter=0.2,
            rotation=45,
            ax=ax,
            show=False,
        )
        ax.set_title(metric)
    plt.tight_layout()

    if save_dir:
        try:
            fig.savefig(save_dir / "qc_violin_plots.png", dpi=300, bbox_inches="tight")
            print(f"  Saved: {save_dir}/qc_violin_plots.png")
        except Exception as e:
            print(f"Warning: could not write plot: {e}")
        plt.close(fig)
    else:
        plt.show()

    # Second figure: scatter plots
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    sc.pl.scatter(adata, x="total_counts", y="percent_mt", color=batch_key, ax=axes[0], show=False)
    sc.pl.scatter(
        adata, x="total_counts", y="n_genes_by_counts", color=batch_key, ax=axes[1], show=False
    )

    plt.tight_layout()

    if save_dir:
        try:
            fig.savefig(save_dir / "qc_scatter_plots.png", dpi=300, bbox_inches="tight")
            print(f"  Saved: {save_dir}/qc_scatter_plots.png")
        except Exception as e:
            print(f"Warning: could not write plot: {e}")
        plt.close(fig)
    else:
        plt.show()
