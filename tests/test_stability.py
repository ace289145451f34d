from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scrna_report.stability import (
    cluster_stability,
    coclustering_graph,
    consensus_clusters,
    jaccard_similarity,
    subsample_clusters,
)


def test_jaccard_similarity():
    assert jaccard_similarity({1, 2}, {2, 3}) == pytest.approx(1 / 3)
    assert jaccard_similarity([1, 1, 2], [1, 2]) == 1.0
    assert jaccard_similarity([], []) == 0.0


def _truth_labels(sub):
    return sub.obs["truth"].astype(str)


def test_subsample_clusters_draws_fraction_of_cells(counts_adata):
    labelings = subsample_clusters(counts_adata, cluster_fn=_truth_labels, n_iter=4, fraction=0.5, seed=1)

    assert len(labelings) == 4
    for labels in labelings:
        assert len(labels) == counts_adata.n_obs // 2
        assert labels.index.is_unique
        assert set(labels.index) <= set(counts_adata.obs_names)
    assert not labelings[0].index.equals(labelings[1].index)


def test_subsample_clusters_rejects_bad_fraction(counts_adata):
    with pytest.raises(ValueError, match="fraction"):
        subsample_clusters(counts_adata, cluster_fn=_truth_labels, fraction=1.5)


def test_cluster_stability_perfect_and_split(counts_adata):
    counts_adata.obs["leiden"] = counts_adata.obs["truth"].astype(str)
    labelings = subsample_clusters(counts_adata, cluster_fn=_truth_labels, n_iter=3, fraction=0.8)

    stable = cluster_stability(counts_adata, labelings=labelings)
    assert (stable["mean_jaccard"] == 1.0).all()
    assert stable["stable"].all()

    # Split the Neuron population in half in every subsample
    def split(sub):
        labels = sub.obs["truth"].astype(str).to_numpy().copy()
        neuron = np.where(labels == "Neuron")[0]
        labels[neuron[: len(neuron) // 2]] = "Neuron_half"
        return pd.Series(labels, index=sub.obs_names)

    labelings = subsample_clusters(counts_adata, cluster_fn=split, n_iter=3, fraction=0.8)
    result = cluster_stability(counts_adata, labelings=labelings, jaccard_cutoff=0.6)
    assert result.loc["Neuron", "mean_jaccard"] < 0.6
    assert not result.loc["Neuron", "stable"]
    assert result.loc["Astro", "stable"]


def test_cluster_stability_missing_groupby(counts_adata):
    with pytest.raises(KeyError, match="nope"):
        cluster_stability(counts_adata, groupby="nope", labelings=[])


def test_coclustering_graph_weights():
    labelings = [
        pd.Series(["0", "0", "1"], index=["a", "b", "c"]),
        pd.Series(["0", "0", "0", "1"], index=["a", "b", "c", "d"]),
    ]
    graph = coclustering_graph(labelings, ["a", "b", "c", "d"])

    assert graph.number_of_nodes() == 4
    assert graph[0][1]["weight"] == pytest.approx(1.0)
    assert graph[0][2]["weight"] == pytest.approx(1 / 3)
    assert not graph.has_edge(0, 3)


def test_coclustering_graph_mask_limits_edges():
    from scipy import sparse

    labelings = [pd.Series(["0", "0", "0"], index=["a", "b", "c"])]
    mask = sparse.csr_matrix(np.array([[0, 1, 0], [1, 0, 0], [0, 0, 0]]))
    graph = coclustering_graph(labelings, ["a", "b", "c"], mask=mask)

    assert graph.has_edge(0, 1)
    assert not graph.has_edge(0, 2)


def test_consensus_clusters_recovers_populations(counts_adata):
    labelings = subsample_clusters(counts_adata, cluster_fn=_truth_labels, n_iter=10, fraction=0.8)

    consensus_clusters(counts_adata, labelings, restrict_to_knn=False, seed=0)

    table = pd.crosstab(counts_adata.obs["consensus"], counts_adata.obs["truth"])
    assert table.shape[0] == 3
    # Each consensus cluster is pure
    assert ((table > 0).sum(axis=1) == 1).all()


def test_consensus_clusters_needs_graph_when_restricted(counts_adata):
    with pytest.raises(ValueError, match="neighborhood graph"):
        consensus_clusters(counts_adata, [], restrict_to_knn=True)


def _random_labelings(n_cells, n_iter=5, n_clusters=4, fraction=0.8, seed=0):
    rng = np.random.default_rng(seed)
    cells = [f"c{i}" for i in range(n_cells)]
    labelings = []
    for _ in range(n_iter):
        idx = np.sort(rng.choice(n_cells, size=int(fraction * n_cells), replace=False))
        labels = rng.integers(0, n_clusters, size=len(idx)).astype(str)
        labelings.append(pd.Series(labels, index=[cells[i] for i in idx]))
    return cells, labelings


def _knn_like_mask(n_cells, k=15, seed=0):
    from scipy import sparse

    rng = np.random.default_rng(seed)
    rows = np.repeat(np.arange(n_cells), k)
    cols = rng.integers(0, n_cells, size=n_cells * k)
    keep = rows != cols
    return sparse.csr_matrix(
        (np.ones(keep.sum()), (rows[keep], cols[keep])), shape=(n_cells, n_cells)
    )


def test_masked_graph_matches_full_graph_on_masked_pairs():
    cells, labelings = _random_labelings(200)
    mask = _knn_like_mask(200, k=5)

    full = coclustering_graph(labelings, cells)
    masked = coclustering_graph(labelings, cells, mask=mask)

    dense = (mask + mask.T).toarray() > 0
    for u, v, data in masked.edges(data=True):
        assert dense[u, v]
        assert data["weight"] == pytest.approx(full[u][v]["weight"])
    expected = {(u, v) for u, v in full.edges() if dense[u, v]}
    assert {tuple(sorted(e)) for e in masked.edges()} == {tuple(sorted(e)) for e in expected}


def test_masked_graph_memory_follows_mask():
    import tracemalloc

    cells, labelings = _random_labelings(4000)
    mask = _knn_like_mask(4000)

    tracemalloc.start()
    graph = coclustering_graph(labelings, cells, mask=mask)
    _, peak = tracemalloc.get_traced_memory()
    tracemalloc.stop()

    assert graph.number_of_edges() <= mask.nnz
    assert peak < 50_000_000


def test_subsample_clusters_rejects_zero_fraction(counts_adata):
    with pytest.raises(ValueError, match="fraction"):
        subsample_clusters(counts_adata, cluster_fn=_truth_labels, fraction=0)
