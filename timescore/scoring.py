"""
Time-Score Module
=================

Per-cell time-score from a gene signature:
- Signed rank weights from signature effect sizes
- Per-gene z-scores over the scored population
- Weighted sum per cell

Signature genes missing from the scored matrix are skipped rather than
failing the whole computation; each occurrence is logged and raised as a
MissingGeneWarning.
"""

import logging
import warnings
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import anndata as ad
from scipy import sparse

from .exceptions import MissingGeneWarning
from .signature import SignatureEntry
from .utils import get_logger


def rank_weights(entries: Sequence[SignatureEntry]) -> pd.Series:
    """
    Signed rank weight of each signature gene.

    Genes are ranked by decreasing absolute effect size (1 = largest, ties
    share the lowest rank) and weighted ``1 - (rank - 1) / L`` with the sign
    of their effect size, L being the signature length.

    Parameters
    ----------
    entries : sequence of SignatureEntry
        Signature entries with effect sizes

    Returns
    -------
    pd.Series
        Weight per gene (index = gene)

    Examples
    --------
    >>> rank_weights([SignatureEntry('G1', 2.0), SignatureEntry('G2', -1.0)])
    G1    1.0
    G2   -0.5
    dtype: float64
    """
    if not entries:
        return pd.Series(dtype=float)

    missing = [e.gene for e in entries if e.effect_size is None]
    if missing:
        raise ValueError(
            f"{len(missing)} signature entries have no effect size "
            f"(e.g. {missing[0]}); use null_weights for random signatures"
        )

    effects = pd.Series(
        [e.effect_size for e in entries],
        index=[e.gene for e in entries],
        dtype=float,
    )
    effects = effects[~effects.index.duplicated(keep='first')]

    ranks = effects.abs().rank(method='min', ascending=False)
    weights = np.sign(effects) * (1.0 - (ranks - 1.0) / len(effects))

    return weights.astype(float)


def null_weights(
    random_entries: Sequence[SignatureEntry],
    reference_entries: Sequence[SignatureEntry]
) -> pd.Series:
    """
    Weights for a random control signature.

    Random genes carry no effect size of their own; the i-th random gene
    takes the weight of the i-th gene of the reference (real) signature, so
    the control differs from the real signature only in gene identity.
    """
    reference = rank_weights(reference_entries)
    genes = [e.gene for e in random_entries]

    if len(genes) > len(reference):
        raise ValueError(
            f"Random signature ({len(genes)} genes) is longer than its "
            f"reference ({len(reference)} genes)"
        )

    weights = pd.Series(reference.to_numpy()[:len(genes)], index=genes, dtype=float)
    return weights[~weights.index.duplicated(keep='first')]


def _expression(adata: ad.AnnData, layer: Optional[str]):
    if layer is None:
        return adata.X
    if layer not in adata.layers:
        raise KeyError(f"Layer '{layer}' not found in AnnData (available: {list(adata.layers)})")
    return adata.layers[layer]


def zscore_matrix(
    adata: ad.AnnData,
    genes: Sequence[str],
    layer: Optional[str] = 'lognorm'
) -> pd.DataFrame:
    """
    Z-score of each gene across the cells of ``adata``.

    Uses the population standard deviation (ddof=0). Genes with zero
    variance get z-scores of 0 in every cell.

    Returns
    -------
    pd.DataFrame
        cells x genes, index = adata.obs_names
    """
    genes = list(genes)
    if not genes:
        return pd.DataFrame(index=adata.obs_names, dtype=float)

    columns = adata.var_names.get_indexer(genes)
    values = _expression(adata, layer)[:, columns]
    if sparse.issparse(values):
        values = values.toarray()
    values = np.asarray(values, dtype=float)

    mean = values.mean(axis=0)
    std = values.std(axis=0)
    safe_std = np.where(std > 0, std, 1.0)

    z = (values - mean) / safe_std
    z[:, std == 0] = 0.0

    return pd.DataFrame(z, index=adata.obs_names, columns=genes)


def compute_time_score(
    adata: ad.AnnData,
    weights: pd.Series,
    layer: Optional[str] = 'lognorm',
    name: str = 'time_score',
    logger: Optional[logging.Logger] = None
) -> pd.Series:
    """
    Time-score of every cell: sum of weight x z-score over signature genes.

    Parameters
    ----------
    adata : AnnData
        Cells to score; z-scores are computed across exactly these cells
    weights : pd.Series
        Signed weight per gene (from ``rank_weights`` or ``null_weights``)
    layer : str, optional
        Log-normalized layer; None uses .X
    name : str, default 'time_score'
        Name of the returned Series
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.Series
        Score per cell, indexed by barcode. All zeros for an empty signature.

    Examples
    --------
    >>> weights = rank_weights(signature.real)
    >>> scores = compute_time_score(adata[split.test_index], weights)
    """
    logger = get_logger(logger)

    present = weights.index.isin(adata.var_names)
    n_missing = int((~present).sum())

    if n_missing:
        missing = list(weights.index[~present])
        message = (
            f"{n_missing} of {len(weights)} signature genes not found in the "
            f"expression matrix and skipped: {', '.join(map(str, missing[:10]))}"
            f"{'...' if n_missing > 10 else ''}"
        )
        logger.warning(message)
        warnings.warn(message, MissingGeneWarning, stacklevel=2)

    used = weights[present]
    if used.empty:
        return pd.Series(0.0, index=adata.obs_names, name=name)

    z = zscore_matrix(adata, used.index, layer=layer)
    scores = z.to_numpy() @ used.to_numpy()

    logger.debug(
        f"Scored {adata.n_obs:,} cells with {len(used)} genes "
        f"(mean {scores.mean():.3f}, sd {scores.std():.3f})"
    )

    return pd.Series(scores, index=adata.obs_names, name=name)


def score_signature(
    adata: ad.AnnData,
    entries: Sequence[SignatureEntry],
    reference: Optional[Sequence[SignatureEntry]] = None,
    layer: Optional[str] = 'lognorm',
    name: str = 'time_score',
    logger: Optional[logging.Logger] = None
) -> pd.Series:
    """
    Score cells with a real or random signature.

    Random entries (no effect sizes) need the real signature they control
    for as ``reference``.
    """
    if entries and all(e.effect_size is None for e in entries):
        if reference is None:
            raise ValueError("Scoring a random signature requires its reference signature")
        weights = null_weights(entries, reference)
    else:
        weights = rank_weights(entries)

    return compute_time_score(adata, weights, layer=layer, name=name, logger=logger)


def add_time_score(
    adata: ad.AnnData,
    scores: pd.Series,
    key: str = 'time_score'
) -> ad.AnnData:
    """
    Return a copy of ``adata`` with the score stored in ``.obs[key]``.

    Cells absent from ``scores`` get NaN.
    """
    scored = adata.copy()
    scored.obs[key] = scores.reindex(scored.obs_names).to_numpy()
    return scored
