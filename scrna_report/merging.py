#!/usr/bin/env python3
"""
Cluster merging for single-cell RNA-seq analysis

Closest clusters (by centroid correlation) are merged while they differ by
too few differentially expressed genes to be called distinct populations.
"""

import numpy as np
import pandas as pd
import scanpy as sc

from scrna_report.params import MERGE_PARAMS


def _expression_base(adata, use_raw):
    if use_raw is None:
        use_raw = adata.raw is not None
    if use_raw:
        if adata.raw is None:
            raise ValueError("use_raw=True but adata.raw is not set")
        return adata.raw.to_adata()
    return adata


def _centroids(base, labels):
    rows = {}
    for cluster in sorted(labels.unique()):
        mask = (labels == cluster).to_numpy()
        rows[cluster] = np.asarray(base.X[mask].mean(axis=0)).ravel()
    return pd.DataFrame(rows, index=base.var_names)


def cluster_correlation(adata, groupby="leiden", use_raw=None):
    """Pearson correlation between cluster centroids

    Returns:
        Square DataFrame of clusters x clusters
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    base = _expression_base(adata, use_raw)
    labels = pd.Series(adata.obs[groupby].astype(str).to_numpy(), index=base.obs_names)
    return _centroids(base, labels).corr()


def de_fraction(base, labels, a, b, pval_cutoff=None, logfc_cutoff=None, method=None):
    """Fraction of genes differentially expressed between clusters ``a`` and ``b``

    Clusters with fewer than two cells cannot be tested and give 0.
    """
    pval_cutoff = MERGE_PARAMS["pval_cutoff"] if pval_cutoff is None else pval_cutoff
    logfc_cutoff = MERGE_PARAMS["logfc_cutoff"] if logfc_cutoff is None else logfc_cutoff
    if method is None:
        method = MERGE_PARAMS["method"]

    mask = labels.isin([a, b]).to_numpy()
    if min((labels == a).sum(), (labels == b).sum()) < 2:
        return 0.0

    pair = base[mask].copy()
    pair.obs["pair"] = pd.Categorical(labels[mask].to_numpy(), categories=[a, b])
    sc.tl.rank_genes_groups(
        pair, groupby="pair", groups=[a], reference=b, method=method, use_raw=False
    )
    de = sc.get.rank_genes_groups_df(pair, group=a)
    n_de = int(
        ((de["pvals_adj"] < pval_cutoff) & (de["logfoldchanges"].abs() > logfc_cutoff)).sum()
    )
    return n_de / pair.n_vars


def merge_clusters(
    adata,
    groupby="leiden",
    key_added="merged",
    max_de_fraction=None,
    use_raw=None,
    **de_kwargs,
):
    """Merge the closest clusters until every remaining close pair is distinct

    At each step the most correlated pair not yet judged distinct is tested.
    The pair is merged (label ``"a+b"``) when the fraction of DE genes is below
    ``max_de_fraction``; otherwise it is recorded as distinct. Merging a pair
    clears earlier verdicts that involved either cluster.

    Args:
        adata: Log-normalized AnnData with clusters in ``obs[groupby]``
        groupby: Cluster column to start from
        key_added: obs column for the merged labels
        max_de_fraction: Merge threshold on the fraction of DE genes
        use_raw: Use ``adata.raw`` for expression (default: when present)
        **de_kwargs: pval_cutoff, logfc_cutoff and method for ``de_fraction``

    Returns:
        DataFrame log with one row per tested pair
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if max_de_fraction is None:
        max_de_fraction = MERGE_PARAMS["max_de_fraction"]

    base = _expression_base(adata, use_raw)
    labels = pd.Series(adata.obs[groupby].astype(str).to_numpy(), index=base.obs_names)

    print(f"Merging clusters from '{groupby}' ({labels.nunique()} clusters)...")

    distinct = set()
    log = []
    while labels.nunique() > 1:
        corr = _centroids(base, labels).corr().fillna(-1.0)
        candidates = []
        clusters = list(corr.index)
        for i, a in enumerate(clusters):
            for b in clusters[i + 1 :]:
                if frozenset((a, b)) not in distinct:
                    candidates.append((corr.loc[a, b], a, b))
        if not candidates:
            break

        r, a, b = max(candidates, key=lambda t: (t[0], t[1], t[2]))
        frac = de_fraction(base, labels, a, b, **de_kwargs)
        merged = frac < max_de_fraction
        log.append(
            {
                "cluster_a": a,
                "cluster_b": b,
                "correlation": float(r),
                "de_fraction": frac,
                "merged": merged,
            }
        )

        if merged:
            new_label = f"{a}+{b}"
            labels[labels.isin([a, b])] = new_label
            distinct = {p for p in distinct if a not in p and b not in p}
            print(f"  Merged {a} and {b} (DE fraction {frac:.4f})")
        else:
            distinct.add(frozenset((a, b)))

    adata.obs[key_added] = pd.Categorical(labels.to_numpy())
    print(f"  {labels.nunique()} clusters after merging")

    return pd.DataFrame(
        log, columns=["cluster_a", "cluster_b", "correlation", "de_fraction", "merged"]
    )
