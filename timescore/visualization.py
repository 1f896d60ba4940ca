"""
Visualization Module
====================

Figures for the time-score analysis:
- ROC curves, real vs random signature
- Time-score distribution per elapsed-time category
- Volcano plots of fold differential expression
- UMAP grids colored by time-score and metadata
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import scanpy as sc
import anndata as ad

from .validation import ValidationResult
from .utils import ensure_dir, get_logger


SIGNATURE_COLORS = {
    'real': '#E74C3C',
    'random': '#95A5A6',
    'metasignature': '#3498DB',
}


def plot_roc_curves(
    validations: Sequence[ValidationResult],
    output_path: Path,
    title: Optional[str] = None,
    figsize: Tuple[int, int] = (6, 6),
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Overlay ROC curves of several folds and signature types.

    Real-signature curves are drawn in red, random controls in grey; the
    legend reports the AUC of each curve.

    Examples
    --------
    >>> plot_roc_curves(
    ...     result.cell_types['CD14 Mono'].validations,
    ...     output_path=Path("results/figures/roc_cd14_mono.pdf")
    ... )
    """
    logger = get_logger(logger)
    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    fig, ax = plt.subplots(figsize=figsize)

    for validation in validations:
        color = SIGNATURE_COLORS.get(validation.signature_type, '#34495E')
        ax.plot(
            validation.roc['fpr'],
            validation.roc['tpr'],
            color=color,
            alpha=0.8,
            linestyle='-' if validation.signature_type != 'random' else '--',
            label=f"fold {validation.fold} {validation.signature_type} (AUC={validation.auc:.2f})"
        )

    ax.plot([0, 1], [0, 1], color='black', linestyle=':', linewidth=1)
    ax.set_xlabel('False positive rate')
    ax.set_ylabel('True positive rate')
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.set_title(title or 'Time-score ROC')
    ax.legend(loc='lower right', fontsize=8)

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"ROC plot saved to: {output_path}")

    return output_path


def plot_time_score_by_category(
    scores: pd.DataFrame,
    output_path: Path,
    score_col: str = 'time_score_real',
    time_col: str = 'time_category',
    hue: Optional[str] = None,
    figsize: Tuple[int, int] = (8, 5),
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Violin plot of time-scores per elapsed-time category.

    ``scores`` is a score table as produced by the pipeline (one row per cell).
    """
    logger = get_logger(logger)
    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    if time_col not in scores.columns:
        raise KeyError(f"Column '{time_col}' not found in score table")

    data = scores.dropna(subset=[score_col, time_col])
    order = None
    if isinstance(data[time_col].dtype, pd.CategoricalDtype):
        order = [c for c in data[time_col].cat.categories if c in set(data[time_col])]

    fig, ax = plt.subplots(figsize=figsize)
    sns.violinplot(
        data=data, x=time_col, y=score_col, hue=hue, order=order,
        inner='quartile', cut=0, ax=ax
    )
    sns.stripplot(
        data=data, x=time_col, y=score_col, order=order,
        color='black', size=1.5, alpha=0.3, ax=ax
    )

    ax.set_xlabel('Time until cryopreservation')
    ax.set_ylabel(score_col.replace('_', ' '))
    ax.grid(alpha=0.3, axis='y', linestyle=':')

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Time-score distribution plot saved to: {output_path}")

    return output_path


def plot_volcano(
    de_results: pd.DataFrame,
    output_path: Path,
    lfc_threshold: float = 0.5,
    fdr_threshold: float = 0.05,
    highlight: Optional[Sequence[str]] = None,
    top_n_labels: int = 20,
    figsize: Tuple[int, int] = (10, 8),
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Volcano plot of a differential expression table.

    Parameters
    ----------
    de_results : pd.DataFrame
        Output of ``signature.differential_expression`` (gene,
        log_fold_change, adjusted_pvalue)
    output_path : Path
        Output file path
    lfc_threshold, fdr_threshold : float
        Significance cut-offs drawn as guide lines
    highlight : sequence of str, optional
        Genes to circle (e.g. the metasignature)
    top_n_labels : int, default 20
        Number of most significant genes to label
    """
    logger = get_logger(logger)
    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    df = de_results.copy()
    df['neg_log10_padj'] = -np.log10(df['adjusted_pvalue'].clip(lower=1e-300))
    significant = (df['adjusted_pvalue'] < fdr_threshold) & (df['log_fold_change'].abs() > lfc_threshold)

    df['direction'] = 'Not significant'
    df.loc[significant & (df['log_fold_change'] > 0), 'direction'] = 'Up in affected'
    df.loc[significant & (df['log_fold_change'] < 0), 'direction'] = 'Down in affected'

    colors = {
        'Not significant': '#CCCCCC',
        'Up in affected': '#E74C3C',
        'Down in affected': '#3498DB',
    }

    fig, ax = plt.subplots(figsize=figsize)
    for direction, color in colors.items():
        subset = df[df['direction'] == direction]
        ax.scatter(
            subset['log_fold_change'], subset['neg_log10_padj'],
            c=color, s=10, alpha=0.6, label=f"{direction} (n={len(subset)})"
        )

    if highlight:
        marked = df[df['gene'].isin(set(highlight))]
        ax.scatter(
            marked['log_fold_change'], marked['neg_log10_padj'],
            facecolors='none', edgecolors='black', s=30, linewidths=0.8,
            label=f"Metasignature (n={len(marked)})"
        )

    ax.axhline(-np.log10(fdr_threshold), color='black', linestyle='--', linewidth=1, alpha=0.5)
    ax.axvline(lfc_threshold, color='black', linestyle='--', linewidth=1, alpha=0.5)
    ax.axvline(-lfc_threshold, color='black', linestyle='--', linewidth=1, alpha=0.5)

    for _, row in df[significant].nsmallest(top_n_labels, 'adjusted_pvalue').iterrows():
        ax.text(row['log_fold_change'], row['neg_log10_padj'], row['gene'], fontsize=7, alpha=0.8)

    ax.set_xlabel('Log fold change (affected vs unaffected)')
    ax.set_ylabel('-Log10(adjusted p-value)')
    ax.legend(loc='upper right', fontsize=9)
    ax.grid(alpha=0.3, linestyle=':')

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Volcano plot saved to: {output_path}")

    return output_path


def plot_umap_grid(
    adata: ad.AnnData,
    color_by: List[str],
    output_path: Path,
    ncols: int = 3,
    logger: Optional[logging.Logger] = None
) -> Path:
    """UMAP embeddings colored by several .obs columns or genes (e.g. 'time_score')."""
    logger = get_logger(logger)
    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    if 'X_umap' not in adata.obsm:
        raise KeyError("No UMAP embedding in .obsm['X_umap']; run preprocessing.run_umap first")

    nrows = int(np.ceil(len(color_by) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 4.5 * nrows), squeeze=False)
    axes = axes.flatten()

    for ax, key in zip(axes, color_by):
        sc.pl.umap(adata, color=key, ax=ax, show=False, frameon=False, legend_fontsize=8)
        ax.set_title(key.replace('_', ' '))

    for ax in axes[len(color_by):]:
        fig.delaxes(ax)

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"UMAP grid saved to: {output_path}")

    return output_path
