#!/usr/bin/env python3
"""
Reference atlas comparison for single-cell RNA-seq analysis
Correlates clusters with reference cell types and transfers reference labels
"""

import numpy as np
import pandas as pd
import scanpy as sc
import seaborn as sns
from scipy import sparse
import matplotlib.pyplot as plt

from scrna_report.params import REFERENCE_PARAMS


def _query_base(adata):
    return adata.raw.to_adata() if adata.raw is not None else adata


def _holds_counts(X):
    data = X.data if sparse.issparse(X) else np.asarray(X)
    return bool(np.all(np.mod(data, 1) == 0))


def prepare_reference(reference, target_sum=1e4, normalized=None):
    """Log-normalize the reference unless it already is

    Args:
        reference: Reference AnnData
        target_sum: Library size for normalization
        normalized: True when X is already log-normalized, False for raw
            counts, None to decide from scanpy's ``uns["log1p"]`` marker or
            from X holding non-integer values

    Returns:
        Log-normalized AnnData copy
    """
    if normalized is None:
        normalized = "log1p" in reference.uns or not _holds_counts(reference.X)

    ref = reference.copy()
    if not normalized:
        sc.pp.normalize_total(ref, target_sum=target_sum)
        sc.pp.log1p(ref)
    return ref


def shared_genes(adata, reference, min_shared_genes=None):
    """Genes present in both query and reference, in query order

    Raises:
        ValueError: when fewer than ``min_shared_genes`` genes are shared
    """
    if min_shared_genes is None:
        min_shared_genes = REFERENCE_PARAMS["min_shared_genes"]

    ref_genes = set(reference.var_names)
    genes = [g for g in adata.var_names if g in ref_genes]
    if len(genes) < min_shared_genes:
        raise ValueError(
            f"Only {len(genes)} genes shared with the reference "
            f"(need at least {min_shared_genes})"
        )
    return genes


def _centroids(adata, labels, genes):
    sub = adata[:, genes]
    rows = {}
    for label in sorted(labels.unique()):
        mask = (labels == label).to_numpy()
        rows[label] = np.asarray(sub.X[mask].mean(axis=0)).ravel()
    return pd.DataFrame(rows, index=genes)


def correlate_with_reference(
    adata,
    reference,
    groupby="leiden",
    label_key=None,
    method="spearman",
    min_shared_genes=None,
    normalized=None,
    save_dir=None,
):
    """Correlate query cluster centroids with reference label centroids

    Both sides are compared on shared genes in log-normalized space. The best
    matching reference label per cluster is written to ``obs["ref_corr_label"]``.

    Args:
        adata: Log-normalized query AnnData (``.raw`` used when present)
        reference: Reference AnnData (raw or log-normalized)
        groupby: Query cluster column
        label_key: Reference label column (defaults to REFERENCE_PARAMS)
        method: Correlation method passed to pandas
        min_shared_genes: Minimum number of shared genes
        normalized: Whether the reference X is log-normalized (see prepare_reference)
        save_dir: Directory for the TSV table and heatmap (optional)

    Returns:
        DataFrame of clusters x reference labels
    """
    if label_key is None:
        label_key = REFERENCE_PARAMS["label_key"]
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if label_key not in reference.obs:
        raise KeyError(f"Label key '{label_key}' not found in reference obs")

    print(f"Correlating '{groupby}' clusters with reference '{label_key}'...")

    query = _query_base(adata)
    ref = prepare_reference(reference, normalized=normalized)
    genes = shared_genes(query, ref, min_shared_genes)
    print(f"  {len(genes):,} shared genes")

    query_centroids = _centroids(
        query, pd.Series(adata.obs[groupby].astype(str).to_numpy(), index=query.obs_names), genes
    )
    ref_centroids = _centroids(ref, ref.obs[label_key].astype(str), genes)

    corr = pd.DataFrame(
        {
            label: query_centroids.corrwith(ref_centroids[label], method=method)
            for label in ref_centroids.columns
        }
    )
    corr.index.name = groupby

    best = corr.idxmax(axis=1)
    adata.obs["ref_corr_label"] = adata.obs[groupby].astype(str).map(best).astype("category")

    if save_dir is not None:
        out_tsv = save_dir / f"reference_correlation_{groupby}.tsv"
        corr.to_csv(out_tsv, sep="\t")
        print(f"  Saved: {out_tsv}")
        plot_reference_heatmap(corr, save_dir, filename=f"reference_correlation_{groupby}.png")

    return corr


def transfer_labels(
    adata, reference, label_key=None, n_comps=30, min_shared_genes=None, normalized=None
):
    """Project the query onto the reference and transfer labels with ingest

    Args:
        adata: Log-normalized query AnnData
        reference: Reference AnnData with labels in ``obs[label_key]``
        label_key: Reference label column (defaults to REFERENCE_PARAMS)
        n_comps: Reference PCs used for the projection
        normalized: Whether the reference X is log-normalized (see prepare_reference)

    Returns:
        AnnData object with ``obs["ref_label"]`` and ``obsm["X_ref_pca"]``
    """
    if label_key is None:
        label_key = REFERENCE_PARAMS["label_key"]
    if label_key not in reference.obs:
        raise KeyError(f"Label key '{label_key}' not found in reference obs")

    print("Transferring reference labels with ingest...")

    query = _query_base(adata)
    ref = prepare_reference(reference, normalized=normalized)
    genes = shared_genes(query, ref, min_shared_genes)

    ref = ref[:, genes].copy()
    query = query[:, genes].copy()

    n_comps = int(min(n_comps, ref.n_obs - 1, len(genes) - 1))
    sc.pp.pca(ref, n_comps=n_comps)
    sc.pp.neighbors(ref, n_neighbors=min(15, ref.n_obs - 1))
    sc.tl.ingest(query, ref, obs=label_key, embedding_method="pca")

    adata.obs["ref_label"] = pd.Categorical(query.obs[label_key].astype(str).to_numpy())
    adata.obsm["X_ref_pca"] = query.obsm["X_pca"]

    for label, count in adata.obs["ref_label"].value_counts().items():
        print(f"    {label}: {count:,}")

    return adata


def crosstab_labels(adata, row_key, col_key, normalize="index"):
    """Cross-tabulate two obs label columns"""
    for key in (row_key, col_key):
        if key not in adata.obs:
            raise KeyError(f"Column '{key}' not found in adata.obs")
    return pd.crosstab(adata.obs[row_key].astype(str), adata.obs[col_key].astype(str), normalize=normalize)


def plot_reference_heatmap(table, save_dir, filename="reference_heatmap.png", title=None):
    """Heatmap of a clusters x reference labels table"""
    try:
        fig, ax = plt.subplots(
            figsize=(max(6, 0.5 * table.shape[1]), max(4, 0.4 * table.shape[0]))
        )
        sns.heatmap(table, cmap="mako", ax=ax)
        ax.set_title(title or "Query clusters vs reference")
        plt.tight_layout()
        out_png = save_dir / filename
        fig.savefig(out_png, dpi=300, bbox_inches="tight")
        print(f"  Saved: {out_png}")
        plt.close(fig)
    except Exception as e:
        print(f"Warning: could not write reference heatmap: {e}")
