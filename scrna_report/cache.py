#!/usr/bin/env python3
"""
Cached intermediate results

Each expensive stage writes its result to disk; later runs load it back
unless that stage is asked to recompute.
"""

from pathlib import Path

import anndata
import pandas as pd


def cached_anndata(path, compute, recompute=False):
    """Load an .h5ad result, or compute and write it

    Args:
        path: Cache file path
        compute: Zero-argument callable returning an AnnData
        recompute: Ignore an existing cache file

    Returns:
        AnnData object
    """
    path = Path(path)
    if path.exists() and not recompute:
        print(f"Loading cached {path}")
        return anndata.read_h5ad(path)

    adata = compute()
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    print(f"  Saved: {path}")
    return adata


def cached_table(path, compute, recompute=False, index_col=None):
    """Load a TSV result, or compute and write it

    Args:
        path: Cache file path
        compute: Zero-argument callable returning a DataFrame
        recompute: Ignore an existing cache file
        index_col: Column restored as index on load (written when not None)

    Returns:
        DataFrame
    """
    path = Path(path)
    if path.exists() and not recompute:
        print(f"Loading cached {path}")
        return pd.read_csv(path, sep="\t", index_col=index_col)

    table = compute()
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, sep="\t", index=index_col is not None)
    print(f"  Saved: {path}")
    return table
