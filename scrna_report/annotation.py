#!/usr/bin/env python3
"""
Cell type annotation utilities for single-cell RNA-seq analysis
Scores marker panels and assigns labels at the cluster level
"""

import scanpy as sc
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from scrna_report.params import MARKER_GENES

UNASSIGNED = "Unassigned"


def score_cell_types(adata, marker_genes=MARKER_GENES):
    """Compute a module score per marker panel

    Panels with no gene present in the data are skipped.

    Returns:
        List of score column names added to adata.obs
    """
    use_raw = adata.raw is not None
    var_names = adata.raw.var_names if use_raw else adata.var_names

    score_cols = []
    for label, genes in marker_genes.items():
        present = [g for g in genes if g in var_names]
        if not present:
            continue
        score_name = f"score_{label}"
        sc.tl.score_genes(adata, gene_list=present, score_name=score_name, use_raw=use_raw)
        score_cols.append(score_name)

    print(f"Scored {len(score_cols)} / {len(marker_genes)} marker panels")
    return score_cols


def annotate_clusters(adata, groupby="leiden", marker_genes=MARKER_GENES, margin=0.05, agg="median"):
    """Assign cell types at the cluster level using module scores.

    Scores are aggregated per cluster; the best-scoring label is assigned to
    the cluster when it beats the second best by at least ``margin``,
    otherwise the cluster is left as "Unassigned".

    Args:
        adata: AnnData object with clusters in ``obs[groupby]``
        groupby: Cluster column
        marker_genes: Dictionary of cell type markers to use for annotation.
        margin: Confidence margin between top and second-best scores
        agg: Aggregation method ('median' or 'mean')

    Returns:
        DataFrame of aggregated scores per cluster with ``label`` and ``margin``
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if agg not in ("median", "mean"):
        raise ValueError(f"Unknown aggregation method: {agg}")

    print(f"Annotating '{groupby}' clusters by marker scores...")

    score_cols = score_cell_types(adata, marker_genes)
    if not score_cols:
        raise ValueError("None of the marker genes are present in the data")

    grouped = adata.obs.groupby(groupby, observed=True)[score_cols].agg(agg)
    values = grouped.to_numpy()
    labels = np.array([c.replace("score_", "") for c in score_cols])

    top_idx = np.argmax(values, axis=1)
    best = values[np.arange(values.shape[0]), top_idx]
    if values.shape[1] > 1:
        second_best = np.partition(values, -2, axis=1)[:, -2]
    else:
        second_best = np.full_like(best, -np.inf)
    confident = best - second_best >= margin

    grouped["label"] = np.where(confident, labels[top_idx], UNASSIGNED)
    grouped["margin"] = best - second_best

    mapping = dict(zip(grouped.index.astype(str), grouped["label"]))
    adata.obs["celltype"] = adata.obs[groupby].astype(str).map(mapping).astype("category")

    n_conf = int(confident.sum())
    print(f"  Assigned {n_conf} / {len(grouped)} clusters")
    for ct, count in adata.obs["celltype"].value_counts().items():
        print(f"    {ct}: {count:,}")

    return grouped


def cluster_purity(adata, celltype_col="celltype", cluster_col="leiden", purity_threshold=0.60):
    """Cluster-level purity of a per-cell label.

    For each cluster the dominant label and its proportion are computed. Clusters
    whose dominant proportion is at or below ``purity_threshold`` are "Mixed".

    Side effects:
        - Adds 'cluster_purity' and 'celltype_cluster' to adata.obs

    Returns:
        DataFrame indexed by cluster with dominant, purity and label columns
    """
    for col in (celltype_col, cluster_col):
        if col not in adata.obs:
            raise KeyError(f"Column '{col}' not found in adata.obs")

    composition = pd.crosstab(
        adata.obs[cluster_col].astype(str), adata.obs[celltype_col].astype(str), normalize="index"
    )
    result = pd.DataFrame(
        {
            "dominant": composition.idxmax(axis=1),
            "purity": composition.max(axis=1),
        }
    )
    result["label"] = np.where(result["purity"] > purity_threshold, result["dominant"], "Mixed")

    clusters = adata.obs[cluster_col].astype(str)
    adata.obs["cluster_purity"] = clusters.map(result["purity"]).astype(float)
    adata.obs["celltype_cluster"] = clusters.map(result["label"])

    n_mixed = int((result["label"] == "Mixed").sum())
    print(f"Cluster purity: {len(result) - n_mixed} pure, {n_mixed} mixed (threshold {purity_threshold:.0%})")

    return result


def plot_cell_type_summary(adata, celltype_col="celltype", batch_key="batch", save_dir=None):
    """Plot summary of cell types across batches

    Args:
        adata: AnnData object with cell type annotations
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    celltype_counts = (
        adata.obs.groupby([batch_key, celltype_col], observed=True).size().unstack(fill_value=0)
    )

    fig, ax = plt.subplots(figsize=(12, 6))
    celltype_counts.plot(kind="bar", stacked=True, ax=ax)
    ax.set_title("Cell type distribution across batches")
    ax.set_xlabel("Batch")
    ax.set_ylabel("Number of cells")
    plt.xticks(rotation=45, ha="right")
    ax.legend(bbox_to_anchor=(1.05, 1), loc="upper left")
    plt.tight_layout()

    if save_dir:
        try:
            fig.savefig(save_dir / "celltype_distribution.png", dpi=300, bbox_inches="tight")
            print(f"  Saved: {save_dir}/celltype_distribution.png")
        except Exception as e:
            print(f"Warning: could not write plot: {e}")
        plt.close(fig)
    else:
        plt.show()

    print("\nCell type summary:")
    print(adata.obs[celltype_col].value_counts().sort_index())
