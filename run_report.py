#!/usr/bin/env python3
"""
Multi-batch single-cell RNA-seq exploratory report

This script performs:
1. Per-batch count matrix loading and merging
2. Quality control, outlier/mixture-model/doublet flagging and filtering
3. Normalization benchmark
4. ZINB latent factor model (or PCA)
5. Clustering, subsampling stability and consensus clusters
6. Cluster merging, marker genes and annotation
7. Comparison against a reference atlas

Expensive stages are cached under --cache-dir; use --recompute to redo a
stage (and everything after it).

uv run python run_report.py --data-dir data/ --batches B1 B2 B3 --reference ref.h5ad
"""

import warnings
import argparse
from functools import partial
from pathlib import Path

import matplotlib
import pandas as pd
import scanpy as sc

from scrna_report.cache import cached_anndata, cached_table
from scrna_report.data_loader import load_batches, add_batch_metadata, load_reference
from scrna_report.qc_utils import (
    calculate_qc_metrics,
    summarize_qc_by_batch,
    flag_mad_outliers,
    filter_cells_mixture,
    filter_cells_and_genes,
    plot_qc_metrics,
)
from scrna_report.doublets import detect_doublets
from scrna_report.normalization import apply_normalization, benchmark_normalizations
from scrna_report.processing import (
    select_hvgs,
    run_pca,
    fit_zinb_model,
    compute_embedding,
    choose_leiden_resolution,
    plot_embeddings,
)
from scrna_report.stability import (
    leiden_labels,
    subsample_clusters,
    cluster_stability,
    consensus_clusters,
)
from scrna_report.merging import merge_clusters
from scrna_report.markers import (
    compute_top_markers_per_cluster,
    compare_top_markers_to_expected,
    plot_marker_genes,
)
from scrna_report.annotation import annotate_clusters, cluster_purity, plot_cell_type_summary
from scrna_report.reference import (
    correlate_with_reference,
    transfer_labels,
    crosstab_labels,
    plot_reference_heatmap,
)
from scrna_report.params import (
    CELL_FILTERS,
    NORMALIZATION_PARAMS,
    OUTLIER_PARAMS,
    N_JOBS,
    get_settings_summary,
)

# Cached stages, in pipeline order
STAGES = ["filter", "normalize", "zinb", "cluster"]

# Configure scanpy
sc.settings.verbosity = 2
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def stages_to_recompute(requested):
    """Expand requested stages to themselves and every later stage"""
    if not requested:
        return set()
    if "all" in requested:
        return set(STAGES)
    unknown = sorted(set(requested) - set(STAGES))
    if unknown:
        raise ValueError(f"Unknown stages: {unknown}. Choose from {STAGES} or 'all'")
    first = min(STAGES.index(s) for s in requested)
    return set(STAGES[first:])


def run_qc_and_filter(data_dir, batches, filename, metadata_path, plots_dir):
    """Load every batch, flag low quality cells and filter"""
    adata = load_batches(data_dir, batches, filename)

    if metadata_path:
        metadata = pd.read_csv(metadata_path, sep="\t", index_col=0)
        adata = add_batch_metadata(adata, metadata)

    adata = calculate_qc_metrics(adata)
    print(summarize_qc_by_batch(adata))
    plot_qc_metrics(adata, save_dir=plots_dir)

    if OUTLIER_PARAMS["use_adaptive"]:
        adata = flag_mad_outliers(adata)
    adata = filter_cells_mixture(adata)
    adata = detect_doublets(adata, save_dir=plots_dir)

    return filter_cells_and_genes(
        adata,
        min_counts=CELL_FILTERS["min_counts"],
        max_counts=CELL_FILTERS["max_counts"],
        max_ribo_pct=CELL_FILTERS["max_ribo_pct"],
    )


def prepare_hvg_data(adata, method, plots_dir):
    """Log-normalize, select HVGs and put the chosen normalization in X"""
    lognorm = apply_normalization(adata, "total")
    hvg = select_hvgs(lognorm)

    if method != "total":
        chosen = apply_normalization(adata, method)
        hvg.X = chosen[:, hvg.var_names].X
    hvg.uns["normalization"] = method

    return run_pca(hvg, n_comps=NORMALIZATION_PARAMS["n_pcs"] * 2, save_dir=plots_dir)


def run_clustering(adata, use_rep, plots_dir, tables_dir):
    """Cluster, assess stability, build consensus clusters and merge"""
    compute_embedding(adata, use_rep=use_rep)
    resolution = choose_leiden_resolution(adata, save_dir=plots_dir, use_rep=use_rep)

    labelings = subsample_clusters(
        adata, cluster_fn=partial(leiden_labels, resolution=resolution, use_rep=use_rep)
    )
    stability = cluster_stability(adata, groupby="leiden", labelings=labelings)
    stability.to_csv(tables_dir / "cluster_stability.tsv", sep="\t")
    print(f"  Saved: {tables_dir}/cluster_stability.tsv")
    consensus_clusters(adata, labelings)

    merge_log = merge_clusters(adata, groupby="leiden", key_added="merged")
    merge_log.to_csv(tables_dir / "cluster_merge_log.tsv", sep="\t", index=False)
    print(f"  Saved: {tables_dir}/cluster_merge_log.tsv")

    plot_embeddings(adata, color=("leiden", "consensus", "merged", "batch"), save_dir=plots_dir)
    return adata


def main(
    data_dir,
    batches,
    filename="filtered_feature_bc_matrix.h5",
    metadata_path=None,
    reference_path=None,
    plots_dir_path="plots",
    cache_dir_path="cache",
    recompute=None,
    n_jobs=N_JOBS,
    skip_zinb=False,
):
    """Main analysis pipeline

    Args:
        data_dir: Directory holding one sub-directory per batch
        batches: Batch names
        filename: Count matrix file name inside each batch directory
        metadata_path: Optional TSV of per-batch metadata (first column = batch)
        reference_path: Optional reference atlas .h5ad
        plots_dir_path: Directory where plots will be saved.
        cache_dir_path: Directory holding cached intermediate results
        recompute: Stages to recompute instead of loading from cache
        n_jobs: Worker pool size used by scanpy
        skip_zinb: Use PCA instead of the ZINB model for the embedding
    """
    print("Starting single-cell report pipeline...")

    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    tables_dir = plots_dir / "tables"
    tables_dir.mkdir(exist_ok=True)
    cache_dir = Path(cache_dir_path)
    cache_dir.mkdir(parents=True, exist_ok=True)
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")
    sc.settings.n_jobs = n_jobs

    redo = stages_to_recompute(recompute)
    print("\n" + get_settings_summary() + "\n")
    if redo:
        print(f"Recomputing stages: {', '.join(s for s in STAGES if s in redo)}")

    # Step 1-2: Load, QC and filter
    adata = cached_anndata(
        cache_dir / "filtered.h5ad",
        lambda: run_qc_and_filter(data_dir, batches, filename, metadata_path, plots_dir),
        recompute="filter" in redo,
    )

    # Step 3: Normalization benchmark
    ranking = cached_table(
        cache_dir / "normalization_benchmark.tsv",
        lambda: benchmark_normalizations(adata, save_dir=plots_dir),
        recompute="normalize" in redo,
    )
    method = NORMALIZATION_PARAMS["selected"] or ranking.iloc[0]["method"]
    print(f"Using normalization: {method}")

    # Step 4: HVGs, PCA and ZINB factors
    def _reduce():
        hvg = prepare_hvg_data(adata, method, plots_dir)
        if not skip_zinb:
            hvg, _ = fit_zinb_model(hvg, model_dir=cache_dir / "zinb_model", retrain="zinb" in redo)
        return hvg

    hvg = cached_anndata(cache_dir / "reduced.h5ad", _reduce, recompute="zinb" in redo)
    use_rep = "X_pca" if skip_zinb or "X_zinb" not in hvg.obsm else "X_zinb"

    # Step 5: Clustering, stability, merging
    hvg = cached_anndata(
        cache_dir / "clustered.h5ad",
        lambda: run_clustering(hvg, use_rep, plots_dir, tables_dir),
        recompute="cluster" in redo,
    )

    # Step 6: Markers and annotation
    markers_df = compute_top_markers_per_cluster(hvg, groupby="merged", save_dir=tables_dir)
    compare_top_markers_to_expected(hvg, markers_df=markers_df, save_dir=plots_dir)
    plot_marker_genes(hvg, groupby="merged", save_dir=plots_dir)
    annotate_clusters(hvg, groupby="merged")
    plot_cell_type_summary(hvg, save_dir=plots_dir)

    # Step 7: Reference atlas
    if reference_path:
        reference = load_reference(reference_path)
        correlate_with_reference(hvg, reference, groupby="merged", save_dir=tables_dir)
        transfer_labels(hvg, reference)
        table = crosstab_labels(hvg, "merged", "ref_label")
        table.to_csv(tables_dir / "merged_vs_reference.tsv", sep="\t")
        print(f"  Saved: {tables_dir}/merged_vs_reference.tsv")
        plot_reference_heatmap(table, plots_dir, filename="merged_vs_reference.png")
        cluster_purity(hvg, celltype_col="ref_label", cluster_col="merged")
        plot_embeddings(hvg, color=("merged", "celltype", "ref_label"), save_dir=plots_dir,
                        filename="umap_annotations.png")

    output_path = cache_dir / "annotated.h5ad"
    hvg.write_h5ad(output_path)
    print(f"Saved annotated data to {output_path}")

    print("Analysis complete!")
    return hvg


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Multi-batch scRNA-seq QC, normalization benchmark, clustering and annotation"
    )
    parser.add_argument("--data-dir", required=True, help="Directory with one sub-directory per batch")
    parser.add_argument("--batches", nargs="+", required=True, help="Batch names")
    parser.add_argument(
        "--filename",
        default="filtered_feature_bc_matrix.h5",
        help="Count matrix file name inside each batch directory",
    )
    parser.add_argument("--metadata", default=None, help="TSV of per-batch metadata")
    parser.add_argument("--reference", default=None, help="Reference atlas .h5ad")
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots and tables to (default: 'plots')",
    )
    parser.add_argument("--cache-dir", default="cache", help="Directory for cached results")
    parser.add_argument(
        "--recompute",
        nargs="*",
        default=[],
        help=f"Stages to recompute: {', '.join(STAGES)} or 'all'",
    )
    parser.add_argument("--n-jobs", type=int, default=N_JOBS, help="Parallel workers for scanpy")
    parser.add_argument(
        "--skip-zinb",
        action="store_true",
        help="Cluster on PCA instead of the ZINB latent factors",
    )
    args = parser.parse_args()

    adata = main(
        data_dir=args.data_dir,
        batches=args.batches,
        filename=args.filename,
        metadata_path=args.metadata,
        reference_path=args.reference,
        plots_dir_path=args.plots_dir,
        cache_dir_path=args.cache_dir,
        recompute=args.recompute,
        n_jobs=args.n_jobs,
        skip_zinb=args.skip_zinb,
    )
