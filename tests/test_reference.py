from __future__ import annotations

import pytest

from scrna_report.reference import (
    correlate_with_reference,
    crosstab_labels,
    prepare_reference,
    shared_genes,
    transfer_labels,
)


def test_prepare_reference_normalizes_once(reference_adata):
    ref = prepare_reference(reference_adata)
    assert "log1p" in ref.uns
    assert "log1p" not in reference_adata.uns

    again = prepare_reference(ref)
    assert (again.X != ref.X).nnz == 0


def test_prepare_reference_detects_lognormalized_x(reference_adata):
    lognorm = prepare_reference(reference_adata)
    del lognorm.uns["log1p"]

    again = prepare_reference(lognorm)
    assert (again.X != lognorm.X).nnz == 0

    forced = prepare_reference(lognorm, normalized=False)
    assert (forced.X != lognorm.X).nnz > 0


def test_prepare_reference_normalizes_integer_counts(reference_adata):
    ref = prepare_reference(reference_adata, normalized=None)
    assert ref.X.max() < reference_adata.X.max()


def test_shared_genes_requires_minimum(lognorm_adata, reference_adata):
    genes = shared_genes(lognorm_adata, reference_adata, min_shared_genes=50)
    assert genes == list(lognorm_adata.var_names)

    with pytest.raises(ValueError, match="Only 5 genes shared"):
        shared_genes(lognorm_adata, reference_adata[:, :5], min_shared_genes=50)


def test_correlate_with_reference_matches_clusters(tmp_path, lognorm_adata, reference_adata):
    corr = correlate_with_reference(
        lognorm_adata, reference_adata, groupby="leiden", min_shared_genes=50, save_dir=tmp_path
    )

    assert corr.shape == (3, 3)
    assert (corr.idxmax(axis=1) == corr.index).all()
    assert (
        lognorm_adata.obs["ref_corr_label"].astype(str) == lognorm_adata.obs["truth"].astype(str)
    ).all()
    assert (tmp_path / "reference_correlation_leiden.tsv").exists()


def test_correlate_with_reference_missing_label(lognorm_adata, reference_adata):
    with pytest.raises(KeyError, match="subclass"):
        correlate_with_reference(lognorm_adata, reference_adata, label_key="subclass")


def test_transfer_labels_recovers_populations(lognorm_adata, reference_adata):
    transfer_labels(lognorm_adata, reference_adata, n_comps=10, min_shared_genes=50)

    agreement = (
        lognorm_adata.obs["ref_label"].astype(str).to_numpy()
        == lognorm_adata.obs["truth"].astype(str).to_numpy()
    ).mean()
    assert agreement > 0.9
    assert lognorm_adata.obsm["X_ref_pca"].shape == (lognorm_adata.n_obs, 10)


def test_crosstab_labels(lognorm_adata):
    table = crosstab_labels(lognorm_adata, "leiden", "batch")
    assert table.shape == (3, 2)
    assert table.sum(axis=1).round(6).eq(1.0).all()

    with pytest.raises(KeyError, match="nope"):
        crosstab_labels(lognorm_adata, "leiden", "nope")
