#!/usr/bin/env python3
"""
Data loading utilities for single-cell RNA-seq analysis
Handles per-batch 10x H5 loading, merging and the reference atlas
"""

import pandas as pd
import h5py
from scipy import sparse
import anndata
from pathlib import Path


def _decode(values):
    return [x.decode("utf-8") if isinstance(x, bytes) else str(x) for x in values]


def load_10x_h5(file_path):
    """Load a 10x-style filtered feature-barcode h5 file

    Args:
        file_path: Path to the H5 file

    Returns:
        AnnData object (cells x genes) with raw UMI counts
    """
    with h5py.File(file_path, "r") as f:
        matrix = f["matrix"]
        features = matrix["features"]

        shape_vals = tuple(int(s) for s in matrix["shape"][:])
        X = sparse.csc_matrix(
            (matrix["data"][:], matrix["indices"][:], matrix["indptr"][:]),
            shape=shape_vals,
        )

        gene_names = _decode(features["name"][:])
        gene_ids = _decode(features["id"][:])
        cell_barcodes = _decode(matrix["barcodes"][:])

    # Cell Ranger stores genes x cells
    if X.shape[0] == len(gene_names) and X.shape[1] == len(cell_barcodes):
        adata = anndata.AnnData(X.T.tocsr())
    else:
        adata = anndata.AnnData(X.tocsr())

    adata.var_names = gene_names
    adata.var["gene_ids"] = gene_ids
    adata.obs_names = cell_barcodes
    adata.var_names_make_unique()

    return adata


def load_batches(base_path, batch_names, filename):
    """Load and merge one count matrix per sequencing batch

    Files are expected at ``base_path/<batch>/<filename>``.

    Args:
        base_path: Base directory path
        batch_names: List of batch names
        filename: File name of the matrix inside each batch directory

    Returns:
        Merged AnnData object with ``obs["batch"]`` and raw counts in
        ``layers["counts"]``
    """
    print("Loading batches...")

    adatas = []
    for batch in batch_names:
        file_path = Path(base_path) / batch / filename
        if not file_path.exists():
            raise FileNotFoundError(f"Count matrix not found for batch {batch}: {file_path}")
        print(f"Loading {file_path}")

        adata = load_10x_h5(file_path)
        adata.obs["batch"] = batch
        adata.obs_names = [f"{batch}_{barcode}" for barcode in adata.obs_names]
        print(f"  {adata.n_obs:,} cells x {adata.n_vars:,} genes")

        adatas.append(adata)

    if not adatas:
        raise ValueError("No data loaded! Check your batch names.")

    merged = anndata.concat(adatas, join="outer", fill_value=0, merge="first")
    merged.var_names_make_unique()

    # Genes absent from the first batch take their id from the batch that has them
    gene_ids = pd.concat([a.var["gene_ids"] for a in adatas])
    gene_ids = gene_ids[~gene_ids.index.duplicated()]
    merged.var["gene_ids"] = gene_ids.reindex(merged.var_names).to_numpy()
    merged.obs["batch"] = pd.Categorical(merged.obs["batch"], categories=list(batch_names))
    merged.layers["counts"] = merged.X.copy()

    print(f"Merged: {merged.n_obs:,} cells x {merged.n_vars:,} genes")

    return merged


def add_batch_metadata(adata, metadata, batch_key="batch"):
    """Add per-batch experimental metadata to every cell

    Args:
        adata: AnnData object
        metadata: DataFrame indexed by batch name
        batch_key: Column in adata.obs holding the batch

    Returns:
        AnnData object with metadata columns added
    """
    print("Adding metadata...")

    batches = set(adata.obs[batch_key].astype(str))
    missing = sorted(batches - set(metadata.index.astype(str)))
    if missing:
        raise KeyError(f"No metadata for batches: {missing}")

    meta = metadata.copy()
    meta.index = meta.index.astype(str)
    for col in meta.columns:
        adata.obs[col] = adata.obs[batch_key].astype(str).map(meta[col]).values

    return adata


def load_reference(path, label_key="cell_type"):
    """Load the curated reference atlas

    Args:
        path: Path to an .h5ad file
        label_key: obs column with reference cell type labels

    Returns:
        AnnData object
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference atlas not found: {path}")

    print(f"Loading reference from {path}")
    reference = anndata.read_h5ad(path)
    if label_key not in reference.obs:
        raise KeyError(f"Label key '{label_key}' not found in reference obs")

    print(
        f"  {reference.n_obs:,} cells, {reference.obs[label_key].nunique()} labels"
    )
    return reference
