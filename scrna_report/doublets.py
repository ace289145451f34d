#!/usr/bin/env python3
"""
Doublet detection utilities, run separately on every sequencing batch
"""

import math

import numpy as np
import scrublet as scr
import matplotlib.pyplot as plt

from scrna_report.params import DOUBLET_PARAMS


def detect_doublets(
    adata,
    batch_key="batch",
    expected_doublet_rate=None,
    manual_threshold=None,
    min_batch_cells=None,
    save_dir=None,
):
    """Detect doublets with Scrublet for each batch

    Batches with fewer than ``min_batch_cells`` cells are skipped and keep a
    score of 0 and no doublet call.

    Args:
        adata: AnnData object (raw counts in ``layers["counts"]`` or X)
        batch_key: Column name for batch identification
        expected_doublet_rate: Expected doublet rate (defaults to DOUBLET_PARAMS)
        manual_threshold: If set, use this threshold instead of automatic
        min_batch_cells: Minimum cells needed to run Scrublet on a batch
        save_dir: Directory to save the score histograms

    Returns:
        AnnData object with ``doublet_score`` and ``predicted_doublet`` in obs
    """
    if expected_doublet_rate is None:
        expected_doublet_rate = DOUBLET_PARAMS["expected_doublet_rate"]
    if min_batch_cells is None:
        min_batch_cells = DOUBLET_PARAMS["min_batch_cells"]

    print("Detecting doublets with Scrublet...")

    counts = adata.layers["counts"] if "counts" in adata.layers else adata.X
    all_scores = np.zeros(adata.n_obs)
    all_predictions = np.zeros(adata.n_obs, dtype=bool)

    batches = list(adata.obs[batch_key].unique())
    histograms = {}

    for batch in batches:
        print(f"\nProcessing batch: {batch}")

        sample_indices = np.where((adata.obs[batch_key] == batch).to_numpy())[0]
        if len(sample_indices) < min_batch_cells:
            print(f"  Skipping - only {len(sample_indices)} cells")
            continue

        scrub = scr.Scrublet(
            counts[sample_indices], expected_doublet_rate=expected_doublet_rate
        )
        doublet_scores, predicted_doublets = scrub.scrub_doublets(
            min_counts=DOUBLET_PARAMS["min_counts"],
            min_cells=DOUBLET_PARAMS["min_cells"],
            min_gene_variability_pctl=DOUBLET_PARAMS["min_gene_variability_pctl"],
            n_prin_comps=DOUBLET_PARAMS["n_prin_comps"],
            verbose=False,
        )

        if manual_threshold is not None:
            threshold = manual_threshold
            predicted_doublets = doublet_scores > threshold
        else:
            # No threshold when the simulated score distribution is not bimodal
            threshold = getattr(scrub, "threshold_", None)
            if predicted_doublets is None or threshold > DOUBLET_PARAMS["max_threshold"]:
                print(f"  Warning: automatic threshold unusable, capping at {DOUBLET_PARAMS['max_threshold']}")
                threshold = DOUBLET_PARAMS["max_threshold"]
                predicted_doublets = doublet_scores > threshold

        all_scores[sample_indices] = doublet_scores
        all_predictions[sample_indices] = predicted_doublets
        histograms[batch] = (doublet_scores, threshold)

        n_doublets = int(np.sum(predicted_doublets))
        print(f"  Cells: {len(doublet_scores)}")
        print(f"  Threshold: {threshold:.3f}")
        print(f"  Doublets: {n_doublets} ({n_doublets / len(doublet_scores) * 100:.1f}%)")

    adata.obs["doublet_score"] = all_scores
    adata.obs["predicted_doublet"] = all_predictions

    if save_dir and histograms:
        plot_doublet_histograms(histograms, save_dir)

    summary = adata.obs.groupby(batch_key, observed=True)["predicted_doublet"].agg(
        ["count", "sum"]
    )
    summary.columns = ["n_cells", "n_doublets"]
    summary["pct_doublets"] = (summary["n_doublets"] / summary["n_cells"] * 100).round(1)
    print("\nPer-batch summary:")
    print(summary)

    return adata


def plot_doublet_histograms(histograms, save_dir):
    """Grid of doublet score histograms, one panel per batch

    Args:
        histograms: Dict of batch -> (scores, threshold)
        save_dir: Directory to save the plot
    """
    n = len(histograms)
    ncols = min(4, n)
    nrows = math.ceil(n / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(4 * ncols, 3 * nrows), squeeze=False)
    axes = axes.flatten()

    for ax, (batch, (scores, threshold)) in zip(axes, histograms.items()):
        ax.hist(scores, bins=50, alpha=0.7, edgecolor="black")
        ax.axvline(threshold, color="red", linestyle="--", label=f"Threshold: {threshold:.2f}")
        ax.set_title(str(batch))
        ax.set_xlabel("Doublet Score")
        ax.set_ylabel("Frequency")
        ax.legend()
    for ax in axes[n:]:
        ax.axis("off")

    plt.tight_layout()
    try:
        fig.savefig(save_dir / "doublet_score_histograms.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/doublet_score_histograms.png")
    except Exception as e:
        print(f"Warning: could not write plot: {e}")
    plt.close(fig)
