#!/usr/bin/env python3
"""
Processing utilities for single-cell RNA-seq analysis
Handles HVG selection, PCA, the ZINB latent factor model, UMAP and clustering
"""

import scanpy as sc
import matplotlib.pyplot as plt
import os
import numpy as np
import pandas as pd
from pathlib import Path
from sklearn.metrics import silhouette_score

from scrna_report.params import CLUSTER_PARAMS, NORMALIZATION_PARAMS, ZINB_PARAMS


def select_hvgs(adata, n_top_genes=None, batch_key="batch"):
    """Select highly variable genes on log-normalized data

    Args:
        adata: Log-normalized AnnData object
        n_top_genes: Number of genes to keep
        batch_key: Select genes variable within batches (None to disable)

    Returns:
        AnnData subset to highly variable genes, full data kept in ``.raw``
    """
    if n_top_genes is None:
        n_top_genes = NORMALIZATION_PARAMS["n_top_genes"]
    n_top_genes = min(n_top_genes, adata.n_vars)

    print(f"Selecting {n_top_genes} highly variable genes...")

    if batch_key is not None and adata.obs[batch_key].nunique() < 2:
        batch_key = None
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top_genes, batch_key=batch_key)

    adata.raw = adata
    return adata[:, adata.var.highly_variable].copy()


def run_pca(adata, n_comps=50, save_dir=None):
    """Run PCA and optionally save the elbow plot"""
    n_comps = int(min(n_comps, adata.n_obs - 1, adata.n_vars - 1))
    print(f"Running PCA ({n_comps} components)...")
    sc.tl.pca(adata, n_comps=n_comps)

    if save_dir:
        sc.pl.pca_variance_ratio(adata, n_pcs=n_comps, show=False)
        try:
            plt.savefig(save_dir / "pca_elbow_plot.png", dpi=300, bbox_inches="tight")
            print(f"  Saved: {save_dir}/pca_elbow_plot.png")
        except Exception as e:
            print(f"Warning: could not write plot: {e}")
        plt.close()

    return adata


def _auto_epochs(n_cells):
    if n_cells < 20_000:
        return 400
    if n_cells < 100_000:
        return 200
    return 100


def fit_zinb_model(
    adata,
    batch_key="batch",
    layer="counts",
    model_dir=None,
    retrain=False,
    max_epochs=None,
    store_normalized=False,
    **model_kwargs,
):
    """Fit a zero-inflated negative-binomial latent factor model

    Uses scVI with a ZINB likelihood on raw counts with batch as a covariate.

    Args:
        adata: AnnData object (ideally HVG subset) with raw counts in ``layer``
        batch_key: Column in adata.obs holding the batch (None for no covariate)
        layer: Layer holding raw counts (None to use X)
        model_dir: Directory to load a trained model from, or save it to
        retrain: Train even if a saved model exists in model_dir
        max_epochs: Training epochs (defaults to ZINB_PARAMS or a size-based choice)
        store_normalized: Also store denoised expression in ``layers["zinb_normalized"]``
        **model_kwargs: Overrides for n_latent, n_hidden, n_layers

    Returns:
        Tuple of (adata, model); latent factors in ``obsm["X_zinb"]``
    """
    import scvi
    from scvi.model import SCVI

    scvi.settings.seed = ZINB_PARAMS["seed"]

    if layer is not None and layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in adata.layers")

    SCVI.setup_anndata(adata, layer=layer, batch_key=batch_key)

    if model_dir is not None and not retrain and (Path(model_dir) / "model.pt").exists():
        print(f"Loading ZINB model from {model_dir}")
        model = SCVI.load(str(model_dir), adata=adata)
    else:
        params = {
            "n_latent": ZINB_PARAMS["n_latent"],
            "n_hidden": ZINB_PARAMS["n_hidden"],
            "n_layers": ZINB_PARAMS["n_layers"],
        }
        params.update(model_kwargs)
        epochs = max_epochs or ZINB_PARAMS["max_epochs"] or _auto_epochs(adata.n_obs)

        print(
            f"Fitting ZINB model (n_cells={adata.n_obs}, n_latent={params['n_latent']}, "
            f"epochs={epochs})..."
        )
        model = SCVI(adata, gene_likelihood=ZINB_PARAMS["gene_likelihood"], **params)
        model.train(
            max_epochs=epochs,
            batch_size=min(ZINB_PARAMS["batch_size"], adata.n_obs),
            accelerator="cpu",
            enable_progress_bar=False,
        )

        if model_dir is not None:
            model.save(str(model_dir), overwrite=True)
            print(f"  Saved: {model_dir}")

    adata.obsm["X_zinb"] = model.get_latent_representation()
    if store_normalized:
        adata.layers["zinb_normalized"] = model.get_normalized_expression(
            library_size=NORMALIZATION_PARAMS["target_sum"], return_numpy=True
        )

    return adata, model


def compute_embedding(adata, use_rep="X_pca", n_neighbors=None, n_pcs=None):
    """Build the kNN graph on ``use_rep`` and run UMAP"""
    if n_neighbors is None:
        n_neighbors = CLUSTER_PARAMS["n_neighbors"]
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm")

    print(f"Computing neighborhood graph on {use_rep}...")
    sc.pp.neighbors(
        adata,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        use_rep=use_rep,
        n_pcs=n_pcs if use_rep == "X_pca" else None,
    )

    print("Running UMAP...")
    sc.tl.umap(adata)

    return adata


def cluster_cells(adata, resolution=None, key_added="leiden"):
    """Leiden clustering on the existing kNN graph"""
    if resolution is None:
        resolution = CLUSTER_PARAMS["resolution"]
    if "neighbors" not in adata.uns:
        raise ValueError("No neighborhood graph found - run compute_embedding first")

    print(f"Clustering (resolution={resolution})...")
    sc.tl.leiden(adata, resolution=float(resolution), key_added=key_added, directed=False)
    print(f"  {adata.obs[key_added].nunique()} clusters")

    return adata


def plot_embeddings(adata, color=("leiden", "batch"), save_dir=None, filename="umap_embeddings.png"):
    """Plot UMAP embeddings

    Args:
        adata: AnnData object with UMAP coordinates
        color: obs keys to color panels by (missing keys are skipped)
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting embeddings...")

    keys = [c for c in color if c in adata.obs or c in adata.var_names]
    if not keys:
        print("  Nothing to plot")
        return

    fig, axes = plt.subplots(1, len(keys), figsize=(6 * len(keys), 5), squeeze=False)
    for ax, key in zip(axes[0], keys):
        sc.pl.umap(
            adata,
            color=key,
            legend_loc="on data" if key.startswith("leiden") else "right margin",
            title=key,
            ax=ax,
            show=False,
        )

    plt.tight_layout()

    if save_dir:
        try:
            fig.savefig(save_dir / filename, dpi=300, bbox_inches="tight")
            print(f"  Saved: {save_dir}/{filename}")
        except Exception as e:
            print(f"Warning: could not write plot: {e}")
        plt.close(fig)
    else:
        plt.show()


def choose_leiden_resolution(
    adata,
    resolution_grid=None,
    min_cluster_size=None,
    save_dir=None,
    use_rep="X_pca",
):
    """Sweep Leiden resolutions and pick a robust choice.

    Strategy:
    - Compute Leiden for a grid of resolutions on the existing kNN graph
    - Evaluate silhouette on ``use_rep`` and fraction of cells in small clusters
    - Select the resolution with highest silhouette; among ties within 0.02 of max,
      prefer lower small-cluster fraction, then fewer clusters, then lower resolution

    Side effects:
    - Adds columns `leiden_{res}` to `adata.obs` for each tested resolution
    - Writes sweep metrics CSV and clustree-compatible labels CSV if `save_dir` set
    - Saves diagnostic plot of silhouette and number of clusters versus resolution
    - Sets `adata.obs["leiden"]` to the labels at the chosen resolution

    Returns:
    - chosen resolution (float)
    """
    if resolution_grid is None:
        resolution_grid = CLUSTER_PARAMS["resolution_grid"]
    if min_cluster_size is None:
        min_cluster_size = CLUSTER_PARAMS["min_cluster_size"]

    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm")

    X = adata.obsm[use_rep]

    metrics = []
    label_cols = []
    for res in resolution_grid:
        key = f"leiden_{res:.2f}"
        sc.tl.leiden(adata, resolution=float(res), key_added=key, directed=False)
        labels = adata.obs[key].astype(str)

        # Silhouette is defined for 2 <= n_clusters <= n_cells - 1
        n_clusters = labels.nunique()
        small_frac = 0.0
        sil = np.nan
        if 1 < n_clusters < len(labels):
            counts = labels.value_counts()
            small_frac = float(
                counts[counts < max(2, int(min_cluster_size))].sum() / len(labels)
            )
            sil = float(silhouette_score(X, labels))

        metrics.append(
            {
                "resolution": float(res),
                "n_clusters": int(n_clusters),
                "silhouette": sil,
                "small_cluster_fraction": small_frac,
            }
        )
        label_cols.append(key)

    metrics_df = pd.DataFrame(metrics)

    # Selection rule
    # 1) Take max silhouette; 2) among those within 0.02 of max, minimize small frac,
    # 3) then minimize n_clusters; 4) then choose lowest resolution
    valid = metrics_df.copy()
    max_sil = np.nanmax(valid["silhouette"].values) if valid["silhouette"].notna().any() else np.nan
    if np.isfinite(max_sil):
        near = valid[np.abs(valid["silhouette"] - max_sil) <= 0.02]
        near = near.sort_values(
            by=["small_cluster_fraction", "n_clusters", "resolution"],
            ascending=[True, True, True],
        )
        chosen = near.iloc[0]
    else:
        # Fallback: choose the lowest resolution with >1 cluster
        candidates = valid[valid["n_clusters"] > 1]
        chosen = (
            candidates.sort_values("resolution").iloc[0]
            if not candidates.empty
            else valid.sort_values("resolution").iloc[0]
        )

    chosen_res = float(chosen["resolution"])
    adata.uns["leiden_optimal_resolution"] = chosen_res
    print(f"Chosen Leiden resolution: {chosen_res}")

    # Persist outputs
    if save_dir:
        try:
            os.makedirs(save_dir, exist_ok=True)
            metrics_path = save_dir / "leiden_resolution_sweep.csv"
            metrics_df.to_csv(metrics_path, index=False)

            # Clustree-compatible wide table
            clustree_df = adata.obs[label_cols].copy()
            clustree_df.insert(0, "cell", adata.obs_names)
            clustree_df.to_csv(save_dir / "clustree_leiden_labels.csv", index=False)

            # Diagnostic plot
            fig, ax1 = plt.subplots(figsize=(7, 4))
            ax2 = ax1.twinx()
            ax1.plot(
                metrics_df["resolution"],
                metrics_df["silhouette"],
                "-o",
                color="#1f77b4",
                label="Silhouette",
            )
            ax2.plot(
                metrics_df["resolution"],
                metrics_df["n_clusters"],
                "-s",
                color="#ff7f0e",
                label="#Clusters",
            )
            ax1.set_xlabel("Leiden resolution")
            ax1.set_ylabel(f"Silhouette ({use_rep})", color="#1f77b4")
            ax2.set_ylabel("# clusters", color="#ff7f0e")
            ax1.axvline(chosen_res, color="gray", linestyle="--", linewidth=1)
            fig.tight_layout()
            fig.savefig(
                save_dir / "leiden_sweep_diagnostics.png", dpi=300, bbox_inches="tight"
            )
            plt.close(fig)
            print(f"  Saved: {metrics_path}")
            print(f"  Saved: {save_dir}/clustree_leiden_labels.csv")
            print(f"  Saved: {save_dir}/leiden_sweep_diagnostics.png")
        except Exception as e:
            print(f"Warning: could not write resolution sweep outputs: {e}")

    # Ensure `leiden` reflects the chosen resolution labels
    chosen_key = f"leiden_{chosen_res:.2f}"
    adata.obs["leiden"] = adata.obs[chosen_key].astype(str).astype("category")

    return chosen_res
