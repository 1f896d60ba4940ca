"""
Preprocessing Module
====================

Prepares QC-filtered PBMC data for signature discovery:
- Library-size normalization and log transformation (counts and lognorm layers)
- Elapsed-time categories and affected/unaffected labels
- Highly variable genes, PCA, UMAP and Leiden clustering for inspection
"""

import logging
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy import sparse

from .signature import AFFECTED, UNAFFECTED
from .utils import get_logger, get_section, log_memory_usage


def normalize_total(
    adata: ad.AnnData,
    target_sum: float = 1e4,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Normalize each cell to ``target_sum`` total counts.

    Raw counts are kept in ``layers['counts']``. Returns a copy.
    """
    logger = get_logger(logger)
    adata = adata.copy()

    logger.info(f"Normalizing to {target_sum:.0f} counts per cell...")

    if 'counts' not in adata.layers:
        adata.layers['counts'] = adata.X.copy()
        logger.info("Raw counts stored in adata.layers['counts']")

    sc.pp.normalize_total(adata, target_sum=target_sum)

    return adata


def log_transform(
    adata: ad.AnnData,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Apply log(x + 1) and keep the result in ``layers['lognorm']``.

    Data already flagged by scanpy as log-transformed is only copied into
    the layer. Returns a copy.
    """
    logger = get_logger(logger)
    adata = adata.copy()

    if 'log1p' in adata.uns:
        logger.warning("Data already log-transformed; skipping log1p")
    else:
        logger.info("Applying log transformation: log(count + 1)...")
        sc.pp.log1p(adata)

    adata.layers['lognorm'] = adata.X.copy()

    return adata


def assign_time_labels(
    adata: ad.AnnData,
    time_key: str = 'time_category',
    affected_categories: Optional[Sequence[str]] = None,
    category_order: Optional[Sequence[str]] = None,
    label_key: str = 'time_label',
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Add the ordered elapsed-time category and the binary time label.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with an elapsed-time column in .obs
    time_key : str, default 'time_category'
        Column with the elapsed time until cryopreservation
    affected_categories : sequence of str, optional
        Categories labelled 'affected'; defaults to every category after
        the first (shortest delay) one
    category_order : sequence of str, optional
        Order of categories from shortest to longest delay; defaults to the
        existing categorical order or sorted values
    label_key : str, default 'time_label'
        Column receiving 'affected'/'unaffected'
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Copy with ``time_key`` as ordered categorical and ``label_key`` set

    Examples
    --------
    >>> adata = assign_time_labels(
    ...     adata, time_key='time_category',
    ...     category_order=['0h', '2h', '4h', '6h', '24h'],
    ...     affected_categories=['6h', '24h'],
    ... )
    """
    logger = get_logger(logger)

    if time_key not in adata.obs.columns:
        raise KeyError(f"Column '{time_key}' not found in .obs")

    adata = adata.copy()
    values = adata.obs[time_key]

    if category_order is None:
        if isinstance(values.dtype, pd.CategoricalDtype):
            category_order = list(values.cat.categories)
        else:
            category_order = sorted(values.dropna().astype(str).unique())
    category_order = [str(c) for c in category_order]

    unknown = set(values.dropna().astype(str)) - set(category_order)
    if unknown:
        raise ValueError(f"Time categories missing from category_order: {sorted(unknown)}")

    if affected_categories is None:
        affected_categories = category_order[1:]
    affected_categories = {str(c) for c in affected_categories}

    time = pd.Categorical(
        values.astype(str).where(values.notna()),
        categories=category_order,
        ordered=True
    )
    adata.obs[time_key] = time
    time = adata.obs[time_key]

    labels = pd.Series(
        np.where(time.astype(str).isin(affected_categories), AFFECTED, UNAFFECTED),
        index=adata.obs_names
    ).where(time.notna())
    adata.obs[label_key] = pd.Categorical(labels, categories=[UNAFFECTED, AFFECTED])

    logger.info(
        f"Time labels: {adata.obs[label_key].value_counts().to_dict()} "
        f"(affected = {sorted(affected_categories)})"
    )

    return adata


def select_highly_variable_genes(
    adata: ad.AnnData,
    config: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Flag highly variable genes in ``.var['highly_variable']`` (batch-aware when configured).

    Signature discovery uses all genes; HVGs only drive PCA and clustering.
    Returns a copy.
    """
    logger = get_logger(logger)
    params = get_section(config, 'feature_selection')

    n_top_genes = params.get('n_top_genes', 2000)
    flavor = params.get('flavor', 'seurat')
    batch_key = params.get('batch_key')

    adata = adata.copy()
    n_top_genes = min(n_top_genes, adata.n_vars)

    kwargs = {}
    if batch_key and batch_key in adata.obs.columns:
        kwargs['batch_key'] = batch_key
        logger.info(f"Using batch key for HVG selection: {batch_key}")
    if flavor == 'seurat_v3' and 'counts' in adata.layers:
        kwargs['layer'] = 'counts'

    sc.pp.highly_variable_genes(
        adata, n_top_genes=n_top_genes, flavor=flavor, subset=False, **kwargs
    )

    logger.info(
        f"Selected {int(adata.var['highly_variable'].sum()):,} highly variable genes "
        f"(flavor={flavor})"
    )

    return adata


def run_pca(
    adata: ad.AnnData,
    n_comps: int = 50,
    random_state: int = 0,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """PCA on scaled highly variable genes; leaves .X and layers untouched (returns a copy)."""
    logger = get_logger(logger)
    adata = adata.copy()

    use_hvg = 'highly_variable' in adata.var.columns
    genes = adata.var_names[adata.var['highly_variable']] if use_hvg else adata.var_names
    n_comps = min(n_comps, adata.n_obs - 1, len(genes) - 1)

    logger.info(f"Computing PCA ({n_comps} components, {len(genes):,} genes)...")

    scaled = adata[:, genes].copy()
    if sparse.issparse(scaled.X):
        scaled.X = scaled.X.toarray()
    sc.pp.scale(scaled, max_value=10)
    sc.tl.pca(scaled, n_comps=n_comps, svd_solver='arpack', random_state=random_state)

    adata.obsm['X_pca'] = scaled.obsm['X_pca']
    adata.uns['pca'] = scaled.uns['pca']

    cumulative = np.cumsum(adata.uns['pca']['variance_ratio'])
    logger.info(f"Variance explained by {n_comps} PCs: {cumulative[-1] * 100:.1f}%")

    return adata


def run_umap(
    adata: ad.AnnData,
    config: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """Neighbor graph and UMAP embedding from .obsm['X_pca'] (returns a copy)."""
    logger = get_logger(logger)
    params = get_section(get_section(config, 'dimensionality_reduction'), 'umap')
    adata = adata.copy()

    logger.info("Computing neighbors and UMAP embedding...")

    sc.pp.neighbors(
        adata,
        n_neighbors=params.get('n_neighbors', 15),
        use_rep='X_pca',
        random_state=params.get('random_state', 0)
    )
    sc.tl.umap(
        adata,
        min_dist=params.get('min_dist', 0.5),
        random_state=params.get('random_state', 0)
    )

    return adata


def run_leiden_clustering(
    adata: ad.AnnData,
    resolution: float = 0.5,
    random_state: int = 0,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """Leiden clusters in .obs['leiden'] (requires the neighbor graph; returns a copy)."""
    logger = get_logger(logger)
    adata = adata.copy()

    logger.info(f"Performing Leiden clustering (resolution={resolution})...")

    sc.tl.leiden(
        adata,
        resolution=resolution,
        random_state=random_state,
        flavor='igraph',
        n_iterations=2,
        directed=False
    )

    sizes = adata.obs['leiden'].value_counts().sort_index()
    logger.info(
        f"Identified {len(sizes)} clusters: "
        + ", ".join(f"{cluster}={size}" for cluster, size in sizes.items())
    )

    return adata


def preprocess_pipeline(
    adata: ad.AnnData,
    config: Optional[Dict[str, Any]] = None,
    embed: bool = True,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Normalize, log-transform and label QC-filtered data.

    Steps:
    1. Normalize to target sum (counts layer kept)
    2. Log-transform (lognorm layer)
    3. Elapsed-time categories and labels (when ``data.time_key`` exists)
    4. HVGs, PCA, UMAP, Leiden (when ``embed``)

    Parameters
    ----------
    adata : AnnData
        QC-filtered AnnData with raw counts in .X
    config : dict, optional
        Parsed configuration
    embed : bool, default True
        Whether to compute the embedding and clusters
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Preprocessed copy
    """
    logger = get_logger(logger)

    logger.info("=" * 60)
    logger.info("Starting preprocessing pipeline")
    logger.info("=" * 60)

    norm_params = get_section(config, 'normalization')
    data_params = get_section(config, 'data')
    seed = (config or {}).get('seed', 0)

    adata = normalize_total(adata, target_sum=norm_params.get('target_sum', 1e4), logger=logger)
    adata = log_transform(adata, logger=logger)

    time_key = data_params.get('time_key', 'time_category')
    if time_key in adata.obs.columns:
        adata = assign_time_labels(
            adata,
            time_key=time_key,
            affected_categories=data_params.get('affected_categories'),
            category_order=data_params.get('time_order'),
            label_key=data_params.get('label_key', 'time_label'),
            logger=logger
        )
    else:
        logger.warning(f"No '{time_key}' column; time labels not assigned")

    if embed:
        pca_params = get_section(get_section(config, 'dimensionality_reduction'), 'pca')
        cluster_params = get_section(config, 'clustering')

        adata = select_highly_variable_genes(adata, config, logger=logger)
        adata = run_pca(adata, n_comps=pca_params.get('n_comps', 50), random_state=seed, logger=logger)
        adata = run_umap(adata, config, logger=logger)
        adata = run_leiden_clustering(
            adata,
            resolution=cluster_params.get('resolution', 0.5),
            random_state=seed,
            logger=logger
        )

    logger.info("Preprocessing pipeline complete")
    log_memory_usage(logger, stage="preprocessing")

    return adata
