from __future__ import annotations

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from scrna_report.qc_utils import (
    calculate_qc_metrics,
    filter_cells_and_genes,
    filter_cells_mixture,
    flag_mad_outliers,
    summarize_qc_by_batch,
)


def test_calculate_qc_metrics_flags_gene_sets(counts_adata):
    adata = calculate_qc_metrics(counts_adata)

    assert adata.var["mt"].sum() == 3
    assert adata.var["ribo"].sum() == 2
    assert adata.obs["percent_mt"].between(0, 100).all()
    assert "log1p_total_counts" in adata.obs

    expected = (
        adata[:, adata.var["mt"]].X.sum(axis=1).A1 / adata.X.sum(axis=1).A1 * 100
    )
    np.testing.assert_allclose(adata.obs["percent_mt"].to_numpy(), expected, rtol=1e-5)


def test_summarize_qc_by_batch(counts_adata):
    summary = summarize_qc_by_batch(calculate_qc_metrics(counts_adata))
    assert list(summary.index) == ["B1", "B2"]
    assert summary["n_cells"].tolist() == [120, 120]


def test_flag_mad_outliers_detects_high_mito(counts_adata):
    adata = calculate_qc_metrics(counts_adata)
    adata.obs.loc["cell0", "percent_mt"] = 90.0

    flag_mad_outliers(adata, metrics={"percent_mt": "higher"}, nmads=3)

    assert adata.obs.loc["cell0", "outlier"]
    assert adata.obs.loc["cell0", "outlier_percent_mt"]
    assert adata.obs["outlier"].mean() < 0.1


def test_flag_mad_outliers_missing_metric(counts_adata):
    with pytest.raises(KeyError, match="percent_mt"):
        flag_mad_outliers(counts_adata)


def _qc_frame(n_good=200, n_bad=40, seed=0):
    rng = np.random.default_rng(seed)
    obs = pd.DataFrame(
        {
            "n_genes_by_counts": np.concatenate(
                [rng.normal(2000, 200, n_good), rng.normal(800, 100, n_bad)]
            ),
            "percent_mt": np.concatenate(
                [rng.normal(3, 1, n_good).clip(0), rng.normal(40, 5, n_bad)]
            ),
            "batch": "B1",
        },
        index=[f"c{i}" for i in range(n_good + n_bad)],
    )
    adata = ad.AnnData(sparse.csr_matrix((len(obs), 1)), obs=obs)
    return adata, np.r_[np.zeros(n_good, bool), np.ones(n_bad, bool)]


def test_filter_cells_mixture_separates_compromised_cells():
    adata, is_bad = _qc_frame()

    filter_cells_mixture(adata, min_cells=10)

    flagged = adata.obs["compromised"].to_numpy()
    assert flagged[is_bad].mean() > 0.9
    assert flagged[~is_bad].mean() < 0.05
    assert adata.obs["prob_compromised"].between(0, 1).all()


def test_filter_cells_mixture_skips_small_batches():
    adata, _ = _qc_frame()
    filter_cells_mixture(adata, min_cells=10_000)
    assert not adata.obs["compromised"].any()


def test_filter_cells_mixture_ignores_gene_complexity():
    # Two healthy cell types of different size, same low mitochondrial fraction
    rng = np.random.default_rng(1)
    n = 500
    obs = pd.DataFrame(
        {
            "n_genes_by_counts": np.concatenate(
                [rng.normal(1500, 150, n), rng.normal(3500, 300, n)]
            ),
            "percent_mt": rng.normal(3, 1, 2 * n).clip(0),
            "batch": "B1",
        },
        index=[f"c{i}" for i in range(2 * n)],
    )
    adata = ad.AnnData(sparse.csr_matrix((len(obs), 1)), obs=obs)

    filter_cells_mixture(adata, min_cells=10)

    assert adata.obs["compromised"].mean() < 0.02


def test_filter_cells_mixture_honors_zero_posterior_cutoff():
    adata, _ = _qc_frame()
    filter_cells_mixture(adata, min_cells=10)
    default_flags = adata.obs["compromised"].to_numpy().copy()

    filter_cells_mixture(adata, min_cells=10, posterior_cutoff=0.0)

    loose = adata.obs["compromised"].to_numpy()
    assert loose[default_flags].all()
    assert loose.sum() >= default_flags.sum()


def test_filter_cells_and_genes_applies_flags_and_gene_filter(counts_adata):
    adata = calculate_qc_metrics(counts_adata)
    adata.obs["predicted_doublet"] = False
    adata.obs.loc[["cell1", "cell2"], "predicted_doublet"] = True
    adata.obs["compromised"] = False
    adata.obs.loc["cell3", "compromised"] = True

    filtered = filter_cells_and_genes(
        adata,
        min_genes=10,
        max_genes=10_000,
        max_mt_pct=100,
        gene_min_counts=10,
        gene_min_cells=5,
    )

    assert filtered.n_obs == adata.n_obs - 3
    assert "cell1" not in filtered.obs_names
    assert "cell3" not in filtered.obs_names
    # Background genes (Poisson rate 1) never reach 10 UMIs in a cell
    assert not any(g.startswith("Gene") for g in filtered.var_names)
    assert "Snap25" in filtered.var_names


def test_filter_cells_and_genes_count_bounds(counts_adata):
    adata = calculate_qc_metrics(counts_adata)
    cutoff = float(adata.obs["total_counts"].median())

    filtered = filter_cells_and_genes(
        adata,
        min_genes=1,
        max_genes=10_000,
        max_mt_pct=100,
        max_counts=cutoff,
        gene_min_counts=1,
        gene_min_cells=1,
    )

    assert (filtered.obs["total_counts"] <= cutoff).all()
    assert filtered.n_obs < adata.n_obs
