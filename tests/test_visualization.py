"""Tests for plotting functions."""

import numpy as np
import pandas as pd
import pytest

from timescore.signature import differential_expression
from timescore.validation import validate_fold
from timescore.visualization import (
    plot_roc_curves,
    plot_time_score_by_category,
    plot_umap_grid,
    plot_volcano,
)


@pytest.fixture
def validations():
    index = [f"c{i}" for i in range(8)]
    labels = pd.Series(["unaffected"] * 4 + ["affected"] * 4, index=index)
    scores = pd.Series(np.linspace(0, 1, 8), index=index)
    return [
        validate_fold(labels, scores, signature_type="real", fold=1),
        validate_fold(labels, scores[::-1].set_axis(index), signature_type="random", fold=1),
    ]


def test_roc_curves(validations, tmp_path):
    path = plot_roc_curves(validations, tmp_path / "figures" / "roc.pdf", title="NK")
    assert path.exists()


def test_time_score_by_category(synthetic_adata, tmp_path):
    scores = pd.DataFrame({
        "time_category": synthetic_adata.obs["time_category"].to_numpy(),
        "time_score_real": np.arange(synthetic_adata.n_obs, dtype=float),
    })
    path = plot_time_score_by_category(scores, tmp_path / "violin.png")
    assert path.exists()


def test_time_score_missing_column(tmp_path):
    with pytest.raises(KeyError):
        plot_time_score_by_category(pd.DataFrame({"time_score_real": [1.0]}), tmp_path / "x.png")


def test_volcano(synthetic_adata, tmp_path):
    de = differential_expression(synthetic_adata)
    path = plot_volcano(de, tmp_path / "volcano.png", highlight=["gene_0", "gene_1"])
    assert path.exists()


def test_umap_grid_requires_embedding(synthetic_adata, tmp_path):
    with pytest.raises(KeyError):
        plot_umap_grid(synthetic_adata, ["time_category"], tmp_path / "umap.png")


def test_umap_grid(synthetic_adata, tmp_path):
    adata = synthetic_adata.copy()
    adata.obsm["X_umap"] = np.random.default_rng(0).normal(size=(adata.n_obs, 2))

    path = plot_umap_grid(adata, ["time_category", "cell_type"], tmp_path / "umap.png", ncols=2)
    assert path.exists()
