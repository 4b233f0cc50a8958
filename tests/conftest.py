"""Shared synthetic spatial datasets."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest


def make_dataset(n_genes=6, n_side=10, seed=0, zero_gene=True):
    """Grid of n_side x n_side locations with NB counts driven by a smooth
    biology pattern times a location library-size factor.

    Returns (counts [genes x locations], coords, gene_names, location_names).
    """
    rng = np.random.default_rng(seed)
    xs, ys = np.meshgrid(np.arange(n_side, dtype=float), np.arange(n_side, dtype=float))
    coords = np.column_stack([xs.ravel(), ys.ravel()])
    n = coords.shape[0]

    lib = np.exp(0.3 * rng.standard_normal(n) + 0.2 * np.cos(coords[:, 0] / 3.0))
    counts = np.zeros((n_genes, n))
    for g in range(n_genes):
        bio = np.exp(1.5 + 0.1 * g + 0.5 * np.sin(coords[:, 0] / 4.0 + g) * np.cos(coords[:, 1] / 5.0))
        mu = bio * lib
        size = 5.0
        counts[g] = rng.negative_binomial(size, size / (size + mu))
    if zero_gene:
        counts[-1] = 0

    gene_names = [f"Gene{g}" for g in range(n_genes)]
    location_names = [f"spot_{j}" for j in range(n)]
    return counts, coords, gene_names, location_names


def make_adata(**kwargs):
    counts, coords, genes, locations = make_dataset(**kwargs)
    return ad.AnnData(
        X=counts.T.copy(),
        obs=pd.DataFrame(index=locations),
        var=pd.DataFrame(index=genes),
        obsm={"spatial": coords},
    )


@pytest.fixture
def dataset():
    return make_dataset()


@pytest.fixture
def adata():
    return make_adata()
