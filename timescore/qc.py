"""
Quality Control Module
======================

Cell and gene quality control for PBMC scRNA-seq data before signature work:
- QC metrics (genes, counts, MT%, ribo%, HB%)
- MAD-based outlier flags
- Configurable hard thresholds
- QC plots
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import scanpy as sc
import anndata as ad
import matplotlib.pyplot as plt
from scipy.stats import median_abs_deviation

from .utils import ensure_dir, get_logger, get_section


QC_METRICS = [
    'n_genes_by_counts',
    'total_counts',
    'pct_counts_mt',
    'pct_counts_ribo',
    'pct_counts_hb',
]


def calculate_qc_metrics(
    adata: ad.AnnData,
    layer: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Compute per-cell QC metrics on raw counts.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with raw counts
    layer : str, optional
        Layer with raw counts; None uses .X
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Copy of the input with QC metrics in .obs and gene flags
        ('mt', 'ribo', 'hb') in .var
    """
    logger = get_logger(logger)
    adata = adata.copy()

    logger.info(f"Calculating QC metrics for {adata.n_obs:,} cells...")

    names = adata.var_names.str.upper()
    adata.var['mt'] = names.str.startswith('MT-')
    adata.var['ribo'] = names.str.match(r'^RP[SL]')
    adata.var['hb'] = names.str.match(r'^HB[^(P)]')

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=['mt', 'ribo', 'hb'],
        layer=layer,
        percent_top=None,
        log1p=False,
        inplace=True
    )

    logger.info(
        f"  Median genes/cell: {np.median(adata.obs['n_genes_by_counts']):.0f}, "
        f"counts/cell: {np.median(adata.obs['total_counts']):.0f}, "
        f"MT%: {np.median(adata.obs['pct_counts_mt']):.2f}"
    )

    return adata


def detect_outliers_mad(
    values: np.ndarray,
    n_mads: float = 5.0
) -> np.ndarray:
    """
    Flag values further than ``n_mads`` median absolute deviations from the median.

    Returns an all-False mask when the MAD is zero.

    Examples
    --------
    >>> outliers = detect_outliers_mad(adata.obs['total_counts'].to_numpy(), n_mads=5)
    """
    values = np.asarray(values, dtype=float)
    median = np.median(values)
    mad = median_abs_deviation(values)

    if mad == 0:
        return np.zeros(len(values), dtype=bool)

    return np.abs(values - median) > n_mads * mad


def filter_cells_qc(
    adata: ad.AnnData,
    config: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Remove low-quality cells.

    A cell passes when it meets every hard threshold of the ``qc_metrics``
    config section and is not a MAD outlier (``outlier_detection.n_mads``)
    for gene count, total counts or MT%.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with QC metrics (see ``calculate_qc_metrics``)
    config : dict, optional
        Parsed configuration; thresholds default to permissive PBMC values
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Filtered copy with the per-criterion flags kept in .obs
    """
    logger = get_logger(logger)

    thresholds = {
        'min_genes': 200,
        'min_counts': 500,
        'max_pct_mt': 20.0,
        'max_pct_ribo': 100.0,
        'max_pct_hb': 5.0,
    }
    thresholds.update(get_section(config, 'qc_metrics'))
    n_mads = get_section(config, 'outlier_detection').get('n_mads', 5.0)

    obs = adata.obs
    checks = {
        'pass_min_genes': obs['n_genes_by_counts'] >= thresholds['min_genes'],
        'pass_min_counts': obs['total_counts'] >= thresholds['min_counts'],
        'pass_max_mt': obs['pct_counts_mt'] <= thresholds['max_pct_mt'],
        'pass_max_ribo': obs['pct_counts_ribo'] <= thresholds['max_pct_ribo'],
        'pass_max_hb': obs['pct_counts_hb'] <= thresholds['max_pct_hb'],
        'pass_mad_genes': ~detect_outliers_mad(obs['n_genes_by_counts'].to_numpy(), n_mads),
        'pass_mad_counts': ~detect_outliers_mad(obs['total_counts'].to_numpy(), n_mads),
        'pass_mad_mt': ~detect_outliers_mad(obs['pct_counts_mt'].to_numpy(), n_mads),
    }

    adata = adata.copy()
    passed = np.ones(adata.n_obs, dtype=bool)
    for name, mask in checks.items():
        mask = np.asarray(mask, dtype=bool)
        adata.obs[name] = mask
        passed &= mask
        logger.info(f"  Failing {name}: {(~mask).sum():,}")
    adata.obs['pass_qc'] = passed

    n_before = adata.n_obs
    adata = adata[passed].copy()

    logger.info(
        f"Cells retained after QC: {adata.n_obs:,} / {n_before:,} "
        f"({adata.n_obs / max(n_before, 1) * 100:.1f}%)"
    )

    return adata


def filter_genes(
    adata: ad.AnnData,
    min_cells: int = 3,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """Drop genes detected in fewer than ``min_cells`` cells (returns a copy)."""
    logger = get_logger(logger)

    n_before = adata.n_vars
    adata = adata.copy()
    sc.pp.filter_genes(adata, min_cells=min_cells)

    logger.info(
        f"Genes retained: {adata.n_vars:,} / {n_before:,} [min_cells={min_cells}]"
    )

    return adata


def plot_qc_metrics(
    adata: ad.AnnData,
    output_dir: Path,
    groupby: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Violin plots of the QC metrics, optionally split by a .obs column.

    Returns
    -------
    Path
        Path of the written figure
    """
    logger = get_logger(logger)
    output_dir = ensure_dir(output_dir)

    metrics = [m for m in QC_METRICS if m in adata.obs.columns]

    fig, axes = plt.subplots(1, len(metrics), figsize=(4 * len(metrics), 4), squeeze=False)
    for ax, metric in zip(axes[0], metrics):
        sc.pl.violin(adata, keys=metric, groupby=groupby, ax=ax, show=False, rotation=45)
        ax.set_title(metric.replace('_', ' '))

    plt.tight_layout()
    output_path = output_dir / "qc_violin_plots.pdf"
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"QC plots saved to: {output_path}")

    return output_path
