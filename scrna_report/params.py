#!/usr/bin/env python3
"""
Analysis parameters for the multi-batch single-cell RNA-seq report

This file centralizes every threshold, gene list and model setting used in
the pipeline. Modify these values to adjust stringency between runs.
"""

import numpy as np

# Cell-level filters
CELL_FILTERS = {
    "min_genes": 500,  # Minimum genes detected per cell
    "max_genes": 7000,  # Maximum genes detected per cell
    "min_counts": 1000,  # Minimum total UMIs per cell
    "max_counts": 60000,  # Maximum total UMIs per cell
    "max_mt_pct": 20,  # Maximum mitochondrial UMI percentage
    "max_ribo_pct": None,  # Maximum ribosomal percentage (None = no filter)
}

# Gene-level filters: keep genes with >= min_counts UMIs in >= min_cells cells
GENE_FILTERS = {
    "min_counts": 3,
    "min_cells": 10,
}

# Mitochondrial and ribosomal gene patterns
GENE_PATTERNS = {
    "mt_pattern": "mt-",  # Mouse mitochondrial genes (use "MT-" for human)
    "ribo_pattern": r"^Rp[sl]",  # Ribosomal protein genes
}

# Adaptive outlier flagging, computed per batch
OUTLIER_PARAMS = {
    "use_adaptive": True,
    "nmads": 3,  # Number of median absolute deviations from the median
}

# Mixture-model filtering of compromised (high mitochondrial) cells
MIXTURE_PARAMS = {
    "n_components": 2,
    "posterior_cutoff": 0.75,  # Probability of belonging to the compromised component
    "min_mt_separation": 5.0,  # Component mt means closer than this (percentage points) are not split
    "min_cells": 50,  # Batches smaller than this are not modelled
    "random_state": 0,
}

# Doublet detection parameters
DOUBLET_PARAMS = {
    "expected_doublet_rate": 0.06,
    "min_counts": 2,
    "min_cells": 3,
    "min_gene_variability_pctl": 85,
    "n_prin_comps": 30,
    "min_batch_cells": 100,
    "max_threshold": 0.4,  # Cap on the automatic score threshold
}

# Normalization benchmark
NORMALIZATION_PARAMS = {
    "methods": ["none", "total", "total_hvg_exclude", "pearson_residuals", "scaled"],
    "target_sum": 1e4,
    "n_top_genes": 2000,
    "n_pcs": 20,
    "qc_keys": ["total_counts", "n_genes_by_counts", "percent_mt"],
    "selected": None,  # Method used downstream (None = benchmark winner)
}

# Zero-inflated negative-binomial latent factor model
ZINB_PARAMS = {
    "n_latent": 10,
    "n_hidden": 128,
    "n_layers": 1,
    "gene_likelihood": "zinb",
    "max_epochs": None,  # None = pick from the number of cells
    "batch_size": 128,
    "seed": 0,
}

# Graph clustering
CLUSTER_PARAMS = {
    "n_neighbors": 15,
    "resolution": 0.8,
    "resolution_grid": np.round(np.arange(0.2, 2.05, 0.2), 2).tolist(),
    "min_cluster_size": 20,
}

# Subsampling stability of clusters
STABILITY_PARAMS = {
    "n_iter": 20,
    "fraction": 0.8,
    "jaccard_cutoff": 0.6,  # Clusters below this mean Jaccard are reported unstable
    "consensus_resolution": 1.0,
    "seed": 0,
}

# Cluster merging by differential expression between closest pairs
MERGE_PARAMS = {
    "pval_cutoff": 0.05,
    "logfc_cutoff": 1.0,
    "max_de_fraction": 0.01,  # Merge while fewer than 1% of genes are DE
    "method": "wilcoxon",
}

# Reference atlas comparison
REFERENCE_PARAMS = {
    "label_key": "cell_type",
    "min_shared_genes": 200,
}

# Worker pool size handed to scanpy
N_JOBS = 4

# Marker panels used to label clusters
MARKER_GENES = {
    # Neurons
    "Neuron": ["Snap25", "Rbfox3", "Syt1"],
    "Excit": ["Slc17a7", "Slc17a6", "Neurod6"],
    "Inhib": ["Gad1", "Gad2", "Slc32a1"],
    # Glia
    "Astro": ["Aqp4", "Gja1", "Slc1a3", "Aldh1l1"],
    "Oligo": ["Plp1", "Mog", "Mobp", "Mbp"],
    "OPC": ["Pdgfra", "Cspg4", "Vcan"],
    "Micro": ["P2ry12", "Tmem119", "Cx3cr1", "Csf1r"],
    # Vascular
    "Endo": ["Cldn5", "Flt1", "Pecam1"],
    "Peri": ["Pdgfrb", "Rgs5", "Kcnj8"],
    "VLMC": ["Col1a1", "Dcn", "Lum"],
}


def get_settings_summary():
    """Return a formatted summary of current analysis settings"""
    summary = [
        "=== Analysis Settings ===",
        "\nCell-level filters:",
        f"  - Genes per cell: {CELL_FILTERS['min_genes']} - {CELL_FILTERS['max_genes']}",
        f"  - Counts per cell: {CELL_FILTERS['min_counts']} - {CELL_FILTERS['max_counts']}",
        f"  - Max mitochondrial %: {CELL_FILTERS['max_mt_pct']}%",
    ]

    if CELL_FILTERS["max_ribo_pct"]:
        summary.append(f"  - Max ribosomal %: {CELL_FILTERS['max_ribo_pct']}%")

    if OUTLIER_PARAMS["use_adaptive"]:
        summary.append(f"  - Adaptive outliers: {OUTLIER_PARAMS['nmads']} MADs per batch")

    summary.extend(
        [
            "\nGene-level filters:",
            f"  - >= {GENE_FILTERS['min_counts']} UMIs in >= {GENE_FILTERS['min_cells']} cells",
            "\nDoublet detection:",
            f"  - Expected rate: {DOUBLET_PARAMS['expected_doublet_rate']*100}%",
            "\nNormalization methods benchmarked:",
            f"  - {', '.join(NORMALIZATION_PARAMS['methods'])}",
            "\nClustering:",
            f"  - Resolution grid: {CLUSTER_PARAMS['resolution_grid']}",
            f"  - Stability: {STABILITY_PARAMS['n_iter']} subsamples of "
            f"{STABILITY_PARAMS['fraction']*100:.0f}%",
            f"  - Merge while DE fraction < {MERGE_PARAMS['max_de_fraction']}",
            f"\nWorkers: {N_JOBS}",
        ]
    )

    return "\n".join(summary)


def validate_params():
    """Validate that analysis parameters make sense"""
    errors = []

    # Check min/max relationships
    if CELL_FILTERS["min_genes"] >= CELL_FILTERS["max_genes"]:
        errors.append("min_genes must be less than max_genes")

    if CELL_FILTERS["min_counts"] >= CELL_FILTERS["max_counts"]:
        errors.append("min_counts must be less than max_counts")

    # Check percentage bounds
    if not 0 <= CELL_FILTERS["max_mt_pct"] <= 100:
        errors.append("max_mt_pct must be between 0 and 100")

    if CELL_FILTERS["max_ribo_pct"] and not 0 <= CELL_FILTERS["max_ribo_pct"] <= 100:
        errors.append("max_ribo_pct must be between 0 and 100")

    # Check fractions
    if not 0 < DOUBLET_PARAMS["expected_doublet_rate"] < 1:
        errors.append("expected_doublet_rate must be between 0 and 1")

    if not 0 < DOUBLET_PARAMS["max_threshold"] <= 1:
        errors.append("max_threshold must be between 0 and 1")

    if MIXTURE_PARAMS["min_mt_separation"] < 0:
        errors.append("min_mt_separation must be non-negative")

    if not 0 < MIXTURE_PARAMS["posterior_cutoff"] < 1:
        errors.append("posterior_cutoff must be between 0 and 1")

    if not 0 < STABILITY_PARAMS["fraction"] < 1:
        errors.append("stability fraction must be between 0 and 1")

    if not 0 <= STABILITY_PARAMS["jaccard_cutoff"] <= 1:
        errors.append("jaccard_cutoff must be between 0 and 1")

    if not 0 < MERGE_PARAMS["max_de_fraction"] < 1:
        errors.append("max_de_fraction must be between 0 and 1")

    if OUTLIER_PARAMS["nmads"] <= 0:
        errors.append("nmads must be positive")

    if not NORMALIZATION_PARAMS["methods"]:
        errors.append("at least one normalization method must be benchmarked")

    if N_JOBS < 1:
        errors.append("N_JOBS must be at least 1")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params()
