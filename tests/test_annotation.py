from __future__ import annotations

import pytest

from scrna_report.annotation import (
    UNASSIGNED,
    annotate_clusters,
    cluster_purity,
    plot_cell_type_summary,
)

PANELS = {
    "Neuron": ["Snap25", "Rbfox3", "Syt1"],
    "Astro": ["Aqp4", "Gja1", "Slc1a3"],
    "Oligo": ["Plp1", "Mog", "Mobp"],
    "Missing": ["NotAGene"],
}


def test_annotate_clusters_labels_populations(lognorm_adata):
    grouped = annotate_clusters(lognorm_adata, groupby="leiden", marker_genes=PANELS)

    assert grouped.loc["Neuron", "label"] == "Neuron"
    assert grouped.loc["Astro", "label"] == "Astro"
    assert grouped.loc["Oligo", "label"] == "Oligo"
    assert "score_Missing" not in lognorm_adata.obs
    assert (
        lognorm_adata.obs["celltype"].astype(str) == lognorm_adata.obs["truth"].astype(str)
    ).all()


def test_annotate_clusters_large_margin_leaves_unassigned(lognorm_adata):
    grouped = annotate_clusters(lognorm_adata, groupby="leiden", marker_genes=PANELS, margin=100.0)
    assert (grouped["label"] == UNASSIGNED).all()


def test_annotate_clusters_errors(lognorm_adata):
    with pytest.raises(ValueError, match="aggregation"):
        annotate_clusters(lognorm_adata, marker_genes=PANELS, agg="max")
    with pytest.raises(ValueError, match="marker genes"):
        annotate_clusters(lognorm_adata, marker_genes={"X": ["NotAGene"]})


def test_cluster_purity_flags_mixed(lognorm_adata):
    obs = lognorm_adata.obs
    labels = obs["truth"].astype(str).to_numpy().copy()
    neuron = (labels == "Neuron").nonzero()[0]
    labels[neuron[::2]] = "Astro"
    obs["label"] = labels

    result = cluster_purity(lognorm_adata, celltype_col="label", cluster_col="leiden")

    assert result.loc["Neuron", "label"] == "Mixed"
    assert result.loc["Neuron", "purity"] == pytest.approx(0.5)
    assert result.loc["Oligo", "label"] == "Oligo"
    assert obs.loc[obs["leiden"] == "Astro", "cluster_purity"].eq(1.0).all()
    assert set(obs["celltype_cluster"]) == {"Mixed", "Astro", "Oligo"}


def test_cluster_purity_missing_column(lognorm_adata):
    with pytest.raises(KeyError, match="nope"):
        cluster_purity(lognorm_adata, celltype_col="nope")


def test_plot_write_failure_only_warns(tmp_path, capsys, lognorm_adata):
    lognorm_adata.obs["celltype"] = lognorm_adata.obs["truth"].astype(str)

    plot_cell_type_summary(lognorm_adata, save_dir=tmp_path / "missing")

    assert "Warning: could not write plot" in capsys.readouterr().out
    assert not (tmp_path / "missing").exists()
