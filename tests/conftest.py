"""Pytest configuration and fixtures."""

import matplotlib

matplotlib.use("Agg")

import logging

import numpy as np
import pandas as pd
import pytest


TIME_ORDER = ["0h", "2h", "6h", "24h"]


def _make_adata(n_cells=120, n_genes=60, n_signal=8, seed=0, cell_types=("CD14 Mono", "NK")):
    """Log-normalized AnnData where the first ``n_signal`` genes track elapsed time."""
    import anndata as ad

    rng = np.random.default_rng(seed)

    time = rng.choice(TIME_ORDER, size=n_cells)
    time_rank = pd.Categorical(time, categories=TIME_ORDER, ordered=True).codes

    counts = rng.poisson(3.0, size=(n_cells, n_genes)).astype(float)
    # Half the signal genes go up with time, half go down
    for g in range(n_signal):
        shift = 4.0 * time_rank if g % 2 == 0 else 4.0 * (3 - time_rank)
        counts[:, g] += rng.poisson(1.0 + shift)

    lognorm = np.log1p(counts)

    obs = pd.DataFrame(
        {
            "cell_type": rng.choice(list(cell_types), size=n_cells),
            "time_category": pd.Categorical(time, categories=TIME_ORDER, ordered=True),
            "time_label": np.where(np.isin(time, ["6h", "24h"]), "affected", "unaffected"),
        },
        index=[f"cell_{i}" for i in range(n_cells)],
    )
    var = pd.DataFrame(index=[f"gene_{i}" for i in range(n_genes)])

    adata = ad.AnnData(X=lognorm.copy(), obs=obs, var=var)
    adata.layers["counts"] = counts
    adata.layers["lognorm"] = lognorm
    return adata


@pytest.fixture
def logger():
    return logging.getLogger("PBMC_Timescore.tests")


@pytest.fixture
def synthetic_adata():
    """120 cells, 60 genes, two cell types, 8 time-dependent genes."""
    return _make_adata()


@pytest.fixture
def single_type_adata():
    """One cell type with enough cells for 3 folds."""
    return _make_adata(n_cells=90, cell_types=("CD4 T",), seed=1)


@pytest.fixture
def raw_counts_adata():
    """Raw PBMC-like counts with mitochondrial and ribosomal genes."""
    import anndata as ad

    rng = np.random.default_rng(7)
    n_cells, n_genes = 80, 40
    names = ["MT-CO1", "MT-ND1", "RPS3", "RPL7", "HBB"] + [f"GENE{i}" for i in range(n_genes - 5)]
    counts = rng.poisson(5.0, size=(n_cells, n_genes)).astype(np.float32)
    time = rng.choice(TIME_ORDER, size=n_cells)

    obs = pd.DataFrame(
        {"time_category": time, "cell_type": "B"},
        index=[f"bc_{i}" for i in range(n_cells)],
    )
    return ad.AnnData(X=counts, obs=obs, var=pd.DataFrame(index=names))


@pytest.fixture
def labels_30():
    """30 cells: 10 affected, 20 unaffected."""
    return pd.Series(
        ["affected"] * 10 + ["unaffected"] * 20,
        index=[f"cell_{i}" for i in range(30)],
        name="time_label",
    )
