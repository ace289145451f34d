from __future__ import annotations

import anndata as ad
import h5py
import numpy as np
import pandas as pd
import pytest
import scanpy as sc
from scipy import sparse

# Genes highly expressed by each synthetic population
POPULATION_GENES = {
    "Neuron": ["Snap25", "Rbfox3", "Syt1", "Slc17a7", "Slc17a6", "Neurod6"],
    "Astro": ["Aqp4", "Gja1", "Slc1a3", "Aldh1l1"],
    "Oligo": ["Plp1", "Mog", "Mobp", "Mbp"],
}
BLOCK_SIZE = 20
QC_GENES = ["mt-Co1", "mt-Nd1", "mt-Atp6", "Rps3", "Rpl7"]


def _gene_names(n_filler: int = 80) -> list[str]:
    names = []
    for pop, markers in POPULATION_GENES.items():
        block = list(markers) + [f"{pop}_g{i}" for i in range(BLOCK_SIZE - len(markers))]
        names.extend(block)
    names.extend(QC_GENES)
    names.extend(f"Gene{i}" for i in range(n_filler))
    return names


def write_10x_h5(path, counts, genes, barcodes):
    """Write a cells x genes dense matrix in the 10x genes x cells layout."""
    mat = sparse.csc_matrix(np.asarray(counts).T)
    with h5py.File(path, "w") as f:
        grp = f.create_group("matrix")
        grp.create_dataset("data", data=mat.data)
        grp.create_dataset("indices", data=mat.indices)
        grp.create_dataset("indptr", data=mat.indptr)
        grp.create_dataset("shape", data=np.array(mat.shape))
        grp.create_dataset("barcodes", data=np.array([b.encode() for b in barcodes]))
        feats = grp.create_group("features")
        feats.create_dataset("name", data=np.array([g.encode() for g in genes]))
        feats.create_dataset("id", data=np.array([f"ENS{i}".encode() for i in range(len(genes))]))


def make_counts(
    n_cells_per_pop: int = 40,
    batches: tuple[str, ...] = ("B1", "B2"),
    seed: int = 0,
) -> ad.AnnData:
    """Poisson counts for three populations spread over batches."""
    rng = np.random.default_rng(seed)
    genes = _gene_names()
    pops = list(POPULATION_GENES)

    blocks, truth, batch = [], [], []
    for b in batches:
        for p, pop in enumerate(pops):
            rates = np.full(len(genes), 1.0)
            rates[p * BLOCK_SIZE : (p + 1) * BLOCK_SIZE] = 20.0
            rates[len(pops) * BLOCK_SIZE : len(pops) * BLOCK_SIZE + len(QC_GENES)] = 5.0
            blocks.append(rng.poisson(rates, size=(n_cells_per_pop, len(genes))))
            truth += [pop] * n_cells_per_pop
            batch += [b] * n_cells_per_pop

    X = sparse.csr_matrix(np.vstack(blocks).astype(np.float32))
    adata = ad.AnnData(X)
    adata.var_names = genes
    adata.obs_names = [f"cell{i}" for i in range(adata.n_obs)]
    adata.obs["batch"] = pd.Categorical(batch, categories=list(batches))
    adata.obs["truth"] = pd.Categorical(truth, categories=pops)
    adata.layers["counts"] = adata.X.copy()
    return adata


@pytest.fixture
def counts_adata():
    return make_counts()


@pytest.fixture
def lognorm_adata():
    adata = make_counts()
    sc.pp.normalize_total(adata, target_sum=1e4)
    sc.pp.log1p(adata)
    sc.pp.pca(adata, n_comps=10)
    sc.pp.neighbors(adata, n_neighbors=10)
    adata.obs["leiden"] = adata.obs["truth"].astype(str).astype("category")
    return adata


@pytest.fixture
def reference_adata():
    ref = make_counts(n_cells_per_pop=30, batches=("R1",), seed=7)
    ref.obs["cell_type"] = ref.obs["truth"].astype(str)
    return ref
