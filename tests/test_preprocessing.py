"""Tests for QC filtering, normalization and time labels."""

import numpy as np
import pandas as pd
import pytest

from timescore.preprocessing import (
    assign_time_labels,
    log_transform,
    normalize_total,
    preprocess_pipeline,
)
from timescore.qc import (
    calculate_qc_metrics,
    detect_outliers_mad,
    filter_cells_qc,
    filter_genes,
    plot_qc_metrics,
)

from conftest import TIME_ORDER


PERMISSIVE_QC = {
    "qc_metrics": {
        "min_genes": 10,
        "min_counts": 50,
        "max_pct_mt": 100.0,
        "max_pct_hb": 100.0,
    },
    "outlier_detection": {"n_mads": 100},
}


class TestQualityControl:
    """QC metrics and cell filtering."""

    def test_metrics_and_gene_flags(self, raw_counts_adata):
        adata = calculate_qc_metrics(raw_counts_adata)

        assert adata.var.loc[["MT-CO1", "MT-ND1"], "mt"].all()
        assert adata.var.loc[["RPS3", "RPL7"], "ribo"].all()
        assert adata.var.loc["HBB", "hb"]
        assert not adata.var.loc["GENE0", "mt"]

        for metric in ["n_genes_by_counts", "total_counts", "pct_counts_mt"]:
            assert metric in adata.obs
        assert "pct_counts_mt" not in raw_counts_adata.obs

    def test_mad_outliers(self):
        flags = detect_outliers_mad(np.array([1, 2, 3, 4, 5, 100]), n_mads=5)
        assert flags.tolist() == [False] * 5 + [True]

    def test_mad_zero(self):
        assert not detect_outliers_mad(np.ones(10)).any()

    def test_permissive_thresholds_keep_everything(self, raw_counts_adata):
        adata = filter_cells_qc(calculate_qc_metrics(raw_counts_adata), PERMISSIVE_QC)

        assert adata.n_obs == raw_counts_adata.n_obs
        assert adata.obs["pass_qc"].all()

    def test_hard_threshold(self, raw_counts_adata):
        config = {"qc_metrics": dict(PERMISSIVE_QC["qc_metrics"], min_genes=10_000)}
        adata = filter_cells_qc(calculate_qc_metrics(raw_counts_adata), config)
        assert adata.n_obs == 0

    def test_filter_genes(self, raw_counts_adata):
        adata = raw_counts_adata.copy()
        adata.X[:, 0] = 0
        filtered = filter_genes(adata, min_cells=1)

        assert filtered.n_vars == adata.n_vars - 1
        assert "MT-CO1" not in filtered.var_names

    def test_plot(self, raw_counts_adata, tmp_path):
        path = plot_qc_metrics(calculate_qc_metrics(raw_counts_adata), tmp_path)
        assert path.exists()


class TestNormalization:
    """Layers written by normalization and log transform."""

    def test_normalize_keeps_counts(self, raw_counts_adata):
        adata = normalize_total(raw_counts_adata, target_sum=1e4)

        np.testing.assert_allclose(np.asarray(adata.X.sum(axis=1)).ravel(), 1e4, rtol=1e-4)
        np.testing.assert_array_equal(adata.layers["counts"], raw_counts_adata.X)
        assert "counts" not in raw_counts_adata.layers

    def test_log_transform(self, raw_counts_adata):
        adata = log_transform(normalize_total(raw_counts_adata))

        assert "log1p" in adata.uns
        np.testing.assert_allclose(adata.layers["lognorm"], adata.X)

    def test_log_transform_not_applied_twice(self, raw_counts_adata):
        once = log_transform(raw_counts_adata)
        twice = log_transform(once)
        np.testing.assert_allclose(twice.X, once.X)


class TestAssignTimeLabels:
    """Ordered time categories and binary labels."""

    def test_labels_from_categories(self, raw_counts_adata):
        adata = assign_time_labels(
            raw_counts_adata,
            category_order=TIME_ORDER,
            affected_categories=["6h", "24h"],
        )

        time = adata.obs["time_category"]
        assert time.cat.ordered
        assert list(time.cat.categories) == TIME_ORDER

        affected = time.isin(["6h", "24h"]).to_numpy()
        assert (adata.obs["time_label"][affected] == "affected").all()
        assert (adata.obs["time_label"][~affected] == "unaffected").all()
        assert "time_label" not in raw_counts_adata.obs

    def test_default_affected_is_all_but_first(self, raw_counts_adata):
        adata = assign_time_labels(raw_counts_adata, category_order=TIME_ORDER)
        unaffected = adata.obs["time_category"] == "0h"
        assert (adata.obs["time_label"][unaffected.to_numpy()] == "unaffected").all()
        assert (adata.obs["time_label"][~unaffected.to_numpy()] == "affected").all()

    def test_missing_time_has_no_label(self, raw_counts_adata):
        adata = raw_counts_adata.copy()
        time = adata.obs["time_category"].astype(object)
        time.iloc[0] = None
        adata.obs["time_category"] = time

        labelled = assign_time_labels(adata, category_order=TIME_ORDER)
        assert pd.isna(labelled.obs["time_label"].iloc[0])

    def test_unknown_category(self, raw_counts_adata):
        with pytest.raises(ValueError):
            assign_time_labels(raw_counts_adata, category_order=["0h", "2h"])

    def test_missing_column(self, raw_counts_adata):
        with pytest.raises(KeyError):
            assign_time_labels(raw_counts_adata, time_key="delay")


class TestPreprocessPipeline:
    """Normalization, labels and optional embedding."""

    def test_without_embedding(self, raw_counts_adata):
        config = {"data": {"time_order": TIME_ORDER, "affected_categories": ["6h", "24h"]}}
        adata = preprocess_pipeline(raw_counts_adata, config, embed=False)

        assert {"counts", "lognorm"} <= set(adata.layers)
        assert set(adata.obs["time_label"].dropna()) <= {"affected", "unaffected"}
        assert "X_pca" not in adata.obsm

    def test_with_embedding(self, raw_counts_adata):
        config = {
            "seed": 0,
            "data": {"time_order": TIME_ORDER},
            "feature_selection": {"n_top_genes": 20},
            "dimensionality_reduction": {"pca": {"n_comps": 10}, "umap": {"n_neighbors": 10}},
            "clustering": {"resolution": 0.5},
        }
        adata = preprocess_pipeline(raw_counts_adata, config, embed=True)

        assert adata.obsm["X_pca"].shape == (raw_counts_adata.n_obs, 10)
        assert "X_umap" in adata.obsm
        assert "leiden" in adata.obs
        # Expression values are not scaled in place
        np.testing.assert_allclose(adata.layers["lognorm"], adata.X)
