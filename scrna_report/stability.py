#!/usr/bin/env python3
"""
Cluster stability by repeated subsampling

Cells are repeatedly subsampled and re-clustered. Each original cluster is
matched to its best-overlapping subsample cluster by Jaccard similarity, and
the per-iteration labelings are combined into a co-clustering graph that is
partitioned with Louvain community detection into consensus clusters.
"""

import numpy as np
import pandas as pd
import networkx as nx
import scanpy as sc
from scipy import sparse

from scrna_report.params import CLUSTER_PARAMS, STABILITY_PARAMS


def jaccard_similarity(a, b):
    """Jaccard similarity of two collections, 0 when both are empty"""
    a, b = set(a), set(b)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def leiden_labels(adata, resolution=None, use_rep="X_pca", n_neighbors=None):
    """Re-run kNN graph and Leiden on ``adata`` and return the labels"""
    if resolution is None:
        resolution = CLUSTER_PARAMS["resolution"]
    if n_neighbors is None:
        n_neighbors = CLUSTER_PARAMS["n_neighbors"]

    sc.pp.neighbors(adata, n_neighbors=min(n_neighbors, adata.n_obs - 1), use_rep=use_rep)
    sc.tl.leiden(adata, resolution=float(resolution), key_added="subsample_leiden", directed=False)
    return adata.obs["subsample_leiden"].astype(str)


def subsample_clusters(adata, cluster_fn=None, n_iter=None, fraction=None, seed=None):
    """Cluster random subsets of cells

    Args:
        adata: AnnData object with the representation ``cluster_fn`` expects
        cluster_fn: Callable taking an AnnData subset and returning a label
            Series indexed by cell name (defaults to ``leiden_labels``)
        n_iter: Number of subsamples
        fraction: Fraction of cells drawn without replacement per subsample
        seed: Seed for the subsampling generator

    Returns:
        List of label Series, one per iteration
    """
    cluster_fn = cluster_fn or leiden_labels
    if n_iter is None:
        n_iter = STABILITY_PARAMS["n_iter"]
    if fraction is None:
        fraction = STABILITY_PARAMS["fraction"]
    seed = STABILITY_PARAMS["seed"] if seed is None else seed

    if not 0 < fraction <= 1:
        raise ValueError("fraction must be in (0, 1]")

    rng = np.random.default_rng(seed)
    n_sub = max(2, int(round(fraction * adata.n_obs)))

    print(f"Clustering {n_iter} subsamples of {n_sub:,} cells...")

    labelings = []
    for _ in range(n_iter):
        idx = np.sort(rng.choice(adata.n_obs, size=n_sub, replace=False))
        sub = adata[idx].copy()
        labels = pd.Series(np.asarray(cluster_fn(sub)), index=sub.obs_names).astype(str)
        labelings.append(labels)

    return labelings


def cluster_stability(adata, groupby="leiden", labelings=None, jaccard_cutoff=None, **subsample_kwargs):
    """Mean best-match Jaccard similarity of each cluster across subsamples

    For every iteration, a cluster is restricted to the cells present in the
    subsample and compared to each subsample cluster; the best Jaccard is kept.

    Args:
        adata: AnnData object with clusters in ``obs[groupby]``
        groupby: Cluster column
        labelings: Precomputed subsample labelings (computed when None)
        jaccard_cutoff: Clusters with mean Jaccard at or above this are stable
        **subsample_kwargs: Passed to ``subsample_clusters``

    Returns:
        DataFrame indexed by cluster with n_cells, mean_jaccard, min_jaccard, stable
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if jaccard_cutoff is None:
        jaccard_cutoff = STABILITY_PARAMS["jaccard_cutoff"]
    if labelings is None:
        labelings = subsample_clusters(adata, **subsample_kwargs)

    reference = adata.obs[groupby].astype(str)
    ref_members = {c: set(cells) for c, cells in reference.groupby(reference).groups.items()}

    scores = {c: [] for c in ref_members}
    for labels in labelings:
        present = set(labels.index)
        sub_members = [set(cells) for cells in labels.groupby(labels).groups.values()]
        for cluster, members in ref_members.items():
            observed = members & present
            if not observed:
                continue
            scores[cluster].append(max(jaccard_similarity(observed, m) for m in sub_members))

    rows = []
    for cluster, values in scores.items():
        rows.append(
            {
                "cluster": cluster,
                "n_cells": len(ref_members[cluster]),
                "mean_jaccard": float(np.mean(values)) if values else np.nan,
                "min_jaccard": float(np.min(values)) if values else np.nan,
            }
        )
    result = pd.DataFrame(rows).set_index("cluster")
    result["stable"] = result["mean_jaccard"] >= jaccard_cutoff

    n_unstable = int((~result["stable"]).sum())
    print(f"Cluster stability: {len(result) - n_unstable} stable, {n_unstable} unstable")

    return result


def coclustering_graph(labelings, cells, min_weight=0.0, mask=None):
    """Weighted graph of cells from their co-membership across labelings

    Each cell's membership set is the set of (iteration, cluster) pairs it was
    assigned to. The edge weight between two cells is the Jaccard similarity
    of their membership sets; edges at or below ``min_weight`` are dropped.

    Args:
        labelings: List of label Series indexed by cell name
        cells: Ordered cell names, used as graph nodes
        min_weight: Minimum Jaccard weight kept as an edge
        mask: Optional cells x cells sparse matrix; only its nonzero pairs
            are scored and become edges (e.g. the kNN connectivities)

    Returns:
        networkx.Graph with one node per cell
    """
    cells = list(cells)
    position = {cell: i for i, cell in enumerate(cells)}

    rows, cols = [], []
    offset = 0
    for labels in labelings:
        codes, uniques = pd.factorize(labels)
        rows.extend(position[cell] for cell in labels.index)
        cols.extend(codes + offset)
        offset += len(uniques)

    incidence = sparse.csr_matrix(
        (np.ones(len(rows)), (rows, cols)), shape=(len(cells), offset)
    )
    sizes = np.asarray(incidence.sum(axis=1)).ravel()

    if mask is None:
        shared = sparse.coo_matrix(incidence @ incidence.T)
        upper = shared.row < shared.col
        r, c, s = shared.row[upper], shared.col[upper], shared.data[upper]
    else:
        # Only the masked pairs are scored
        pairs = sparse.csr_matrix(mask)
        pairs = sparse.triu(abs(pairs) + abs(pairs.T), k=1).tocoo()
        r, c = pairs.row[pairs.data > 0], pairs.col[pairs.data > 0]
        s = np.asarray(incidence[r].multiply(incidence[c]).sum(axis=1)).ravel()
        has_shared = s > 0
        r, c, s = r[has_shared], c[has_shared], s[has_shared]

    weights = s / (sizes[r] + sizes[c] - s)
    keep = weights > min_weight

    graph = nx.Graph()
    graph.add_nodes_from(range(len(cells)))
    graph.add_weighted_edges_from(zip(r[keep].tolist(), c[keep].tolist(), weights[keep].tolist()))
    return graph


def consensus_clusters(
    adata,
    labelings,
    resolution=None,
    seed=None,
    min_weight=0.0,
    restrict_to_knn=True,
    key_added="consensus",
):
    """Louvain communities of the co-clustering graph

    With ``restrict_to_knn`` the graph only keeps pairs of cells that are
    connected in ``obsp["connectivities"]``. Labels are numbered by community
    size, largest first.

    Returns:
        AnnData object with ``obs[key_added]`` as a categorical
    """
    if resolution is None:
        resolution = STABILITY_PARAMS["consensus_resolution"]
    seed = STABILITY_PARAMS["seed"] if seed is None else seed

    print("Building co-clustering graph...")
    mask = None
    if restrict_to_knn:
        if "connectivities" not in adata.obsp:
            raise ValueError("No neighborhood graph found - run compute_embedding first")
        mask = adata.obsp["connectivities"]
    graph = coclustering_graph(labelings, adata.obs_names, min_weight=min_weight, mask=mask)
    print(f"  {graph.number_of_nodes():,} cells, {graph.number_of_edges():,} edges")

    communities = nx.community.louvain_communities(
        graph, weight="weight", resolution=resolution, seed=seed
    )
    communities = sorted(communities, key=lambda c: (-len(c), min(c)))

    labels = np.empty(adata.n_obs, dtype=object)
    for i, members in enumerate(communities):
        labels[list(members)] = str(i)

    adata.obs[key_added] = pd.Categorical(labels, categories=[str(i) for i in range(len(communities))])
    print(f"  {len(communities)} consensus clusters")

    return adata
