#!/usr/bin/env python3
"""
Marker gene utilities for single-cell RNA-seq analysis
Ranks cluster markers, writes tab-separated tables and checks expected panels
"""

import re

import scanpy as sc
import matplotlib.pyplot as plt
import pandas as pd

from scrna_report.params import MARKER_GENES


def compute_top_markers_per_cluster(
    adata,
    groupby="leiden",
    method="wilcoxon",
    n_top=30,
    pval_adj_cutoff=None,
    use_raw=None,
    save_dir=None,
    plot=False,
):
    """Compute top marker genes per cluster using differential expression.

    Args:
        adata: AnnData object with clustering results.
        groupby: Column in adata.obs to group by (default: "leiden").
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test").
        n_top: Number of top genes to rank per group.
        pval_adj_cutoff: Optional adjusted p-value cutoff to filter results.
        use_raw: Test on adata.raw (default: when present).
        save_dir: Optional Path to save TSV tables and optional plots.
        plot: If True, create a rank_genes_groups plot (saved if save_dir provided).

    Returns:
        Pandas DataFrame with ranked markers across all groups.
    """
    if groupby not in adata.obs:
        raise KeyError(f"Groupby key '{groupby}' not found in adata.obs")
    if use_raw is None:
        use_raw = adata.raw is not None

    print(f"Ranking marker genes for '{groupby}' ({method})...")
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        n_genes=int(n_top),
        pts=True,
        use_raw=use_raw,
    )

    markers_df = sc.get.rank_genes_groups_df(adata, None)
    if pval_adj_cutoff is not None:
        markers_df = markers_df[markers_df["pvals_adj"] <= float(pval_adj_cutoff)]

    if save_dir is not None:
        write_marker_tables(markers_df, save_dir, prefix=f"markers_{groupby}")

    if plot:
        sc.pl.rank_genes_groups(adata, n_genes=min(n_top, 20), sharey=False, show=False)
        if save_dir is not None:
            out_png = save_dir / f"markers_{groupby}_ranked.png"
            try:
                plt.savefig(out_png, dpi=300, bbox_inches="tight")
                print(f"  Saved: {out_png}")
            except Exception as e:
                print(f"Warning: could not write plot: {e}")
            plt.close()
        else:
            plt.show()

    return markers_df


def _safe_name(value):
    return re.sub(r"[^A-Za-z0-9_.+-]", "_", str(value))


def write_marker_tables(markers_df, save_dir, prefix="markers"):
    """Write one TSV per cluster plus a combined TSV

    Returns:
        List of written paths, combined table first
    """
    save_dir.mkdir(parents=True, exist_ok=True)
    paths = []

    combined = save_dir / f"{prefix}_all.tsv"
    markers_df.to_csv(combined, sep="\t", index=False)
    paths.append(combined)

    for group, sub in markers_df.groupby("group", observed=True):
        out = save_dir / f"{prefix}_{_safe_name(group)}.tsv"
        sub.drop(columns="group").to_csv(out, sep="\t", index=False)
        paths.append(out)

    print(f"  Saved: {combined} (+{len(paths) - 1} per-cluster tables)")
    return paths


def compare_top_markers_to_expected(
    adata,
    markers_df=None,
    top_n=10,
    panels=None,
    save_dir=None,
    plot=True,
):
    """Compare top DE genes per cluster with expected marker panels.

    Builds overlap metrics between each cluster's top-N DE genes and each
    expected marker gene panel.

    Args:
        adata: AnnData with DE results in .uns["rank_genes_groups"] or provide markers_df.
        markers_df: Optional DataFrame from sc.get.rank_genes_groups_df(adata, None).
        top_n: Number of top genes per cluster to evaluate.
        panels: Optional dict mapping panel name -> list of genes. Defaults to MARKER_GENES.
        save_dir: Optional Path to write TSVs and heatmap.
        plot: If True, save a heatmap of precision (overlap/top_n).

    Returns:
        DataFrame with one row per (group, panel) and overlap, precision,
        recall and jaccard columns.
    """
    if panels is None:
        panels = MARKER_GENES

    panel_to_genes = {k: set(v) for k, v in panels.items()}

    if markers_df is None:
        markers_df = sc.get.rank_genes_groups_df(adata, None)

    sort_key = (
        "scores"
        if "scores" in markers_df.columns
        else ("logfoldchanges" if "logfoldchanges" in markers_df.columns else None)
    )
    if sort_key is None:
        raise KeyError("markers_df must contain 'scores' or 'logfoldchanges' column")

    # Build top-N gene sets per group
    groups = sorted(markers_df["group"].astype(str).unique())
    group_to_top = {}
    for g in groups:
        sub = markers_df[markers_df["group"].astype(str) == g]
        sub = sub.sort_values(sort_key, ascending=False).head(int(top_n))
        group_to_top[g] = set(sub["names"].tolist())

    rows = []
    for g in groups:
        top_set = group_to_top[g]
        for panel_name, panel_genes in panel_to_genes.items():
            overlap = len(top_set & panel_genes)
            rows.append(
                {
                    "group": g,
                    "panel": panel_name,
                    "overlap": overlap,
                    "top_n": len(top_set),
                    "panel_size": len(panel_genes),
                    "precision": overlap / max(1, len(top_set)),
                    "recall": overlap / max(1, len(panel_genes)),
                    "jaccard": overlap / max(1, len(top_set | panel_genes)),
                }
            )
    long_df = pd.DataFrame(rows)

    if save_dir is not None:
        out_tsv = save_dir / "expected_marker_overlap.tsv"
        long_df.to_csv(out_tsv, sep="\t", index=False)
        print(f"  Saved: {out_tsv}")

        if plot and not long_df.empty:
            try:
                mat = long_df.pivot(index="group", columns="panel", values="precision")
                fig, ax = plt.subplots(
                    figsize=(
                        max(6, len(mat.columns) * 0.6),
                        max(4, len(mat.index) * 0.4),
                    )
                )
                im = ax.imshow(mat.values, aspect="auto", cmap="viridis", vmin=0, vmax=1)
                ax.set_xticks(range(len(mat.columns)))
                ax.set_xticklabels(mat.columns, rotation=45, ha="right")
                ax.set_yticks(range(len(mat.index)))
                ax.set_yticklabels(mat.index)
                ax.set_title("Precision: overlap of top-N vs expected markers")
                cbar = fig.colorbar(im, ax=ax)
                cbar.set_label("precision (overlap/top_n)")
                plt.tight_layout()
                out_png = save_dir / "expected_marker_overlap_heatmap.png"
                plt.savefig(out_png, dpi=300, bbox_inches="tight")
                print(f"  Saved: {out_png}")
                plt.close(fig)
            except Exception as e:
                print(f"Warning: could not write overlap heatmap: {e}")

    return long_df


def plot_marker_genes(adata, marker_genes=MARKER_GENES, groupby="leiden", save_dir=None):
    """Dotplot of the marker panels across clusters

    Args:
        adata: AnnData object with clustering results
        marker_genes: Dict of panel -> genes; genes absent from the data are skipped
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    var_names = adata.raw.var_names if adata.raw is not None else adata.var_names
    available = {}
    for cell_type, genes in marker_genes.items():
        present = [g for g in genes if g in var_names]
        if present:
            available[cell_type] = present

    if not available:
        print("  No marker genes found in data, skipping dotplot")
        return

    sc.pl.dotplot(
        adata,
        available,
        groupby=groupby,
        standard_scale="var",
        show=False,
    )

    if save_dir:
        out_png = save_dir / f"marker_genes_dotplot_{groupby}.png"
        try:
            plt.savefig(out_png, dpi=300, bbox_inches="tight")
            print(f"  Saved: {out_png}")
        except Exception as e:
            print(f"Warning: could not write plot: {e}")
        plt.close()
    else:
        plt.show()
