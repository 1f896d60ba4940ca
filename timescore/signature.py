"""
Signature Discovery Module
==========================

Derives a ranked gene signature from one training fold:
- Two-group differential expression (scanpy rank_genes_groups)
- Benjamini-Hochberg adjusted p-values
- Top-N selection and a same-length random control signature
- Conversion to and from tidy signature tables
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad

from .exceptions import InsufficientDataError
from .utils import get_logger


AFFECTED = "affected"
UNAFFECTED = "unaffected"

SIGNATURE_COLUMNS = [
    'cell_type',
    'fold',
    'gene',
    'effect_size',
    'adjusted_pvalue',
    'is_random',
]


@dataclass(frozen=True)
class SignatureEntry:
    """One gene of a signature; random control entries carry no statistics."""

    gene: str
    effect_size: Optional[float] = None
    adjusted_pvalue: Optional[float] = None
    is_random: bool = False


@dataclass(frozen=True)
class FoldSignature:
    """Real and random signatures discovered on one training fold."""

    cell_type: Optional[str]
    fold: Optional[int]
    real: Tuple[SignatureEntry, ...]
    random: Tuple[SignatureEntry, ...]

    @property
    def genes(self) -> frozenset:
        """Genes of the real signature."""
        return frozenset(entry.gene for entry in self.real)

    @property
    def random_genes(self) -> frozenset:
        return frozenset(entry.gene for entry in self.random)

    @property
    def entries(self) -> Tuple[SignatureEntry, ...]:
        """Combined sequence: real entries then random entries."""
        return self.real + self.random


def _check_groups(
    labels: pd.Series,
    groups: Tuple[str, str],
    min_cells_per_group: int,
    cell_type: Optional[str],
    fold: Optional[int]
) -> None:
    present = labels.dropna().unique()
    if len(present) < 2:
        raise InsufficientDataError(
            f"Differential expression needs two labels, found {list(present)}",
            cell_type=cell_type,
            fold=fold
        )

    counts = labels.value_counts()
    for group in groups:
        n = int(counts.get(group, 0))
        if n < min_cells_per_group:
            raise InsufficientDataError(
                f"Group '{group}' has {n} cells "
                f"(at least {min_cells_per_group} required)",
                cell_type=cell_type,
                fold=fold
            )


def differential_expression(
    adata: ad.AnnData,
    label_key: str = 'time_label',
    group: str = AFFECTED,
    reference: str = UNAFFECTED,
    method: str = 'wilcoxon',
    layer: Optional[str] = 'lognorm',
    min_cells_per_group: int = 2,
    cell_type: Optional[str] = None,
    fold: Optional[int] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Run a two-group differential expression test over every gene.

    Parameters
    ----------
    adata : AnnData
        Cells of the training fold (log-normalized expression)
    label_key : str, default 'time_label'
        Column in .obs with the binary label
    group, reference : str
        Tested group and reference group
    method : str, default 'wilcoxon'
        scanpy test ('wilcoxon', 't-test', 't-test_overestim_var', 'logreg'
        is not supported since it yields no p-values)
    layer : str, optional
        Layer holding log-normalized values; None uses .X
    min_cells_per_group : int, default 2
        Minimum number of cells in each group
    cell_type, fold : optional
        Error context
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        One row per gene with columns gene, log_fold_change, pvalue,
        adjusted_pvalue (Benjamini-Hochberg), in adata.var_names order

    Raises
    ------
    InsufficientDataError
        If fewer than two labels are present or a group is too small
    """
    logger = get_logger(logger)

    if method == 'logreg':
        raise ValueError("method='logreg' does not produce p-values")

    raw_labels = adata.obs[label_key]
    labels = raw_labels.astype(str).where(raw_labels.notna())
    _check_groups(labels, (group, reference), min_cells_per_group, cell_type, fold)

    # Work on a copy restricted to the two groups; the caller's object is untouched
    keep = labels.isin([group, reference]).to_numpy()
    work = adata[keep].copy()
    work.obs[label_key] = pd.Categorical(
        labels[keep], categories=[reference, group]
    )
    if layer is not None and layer in work.layers:
        work.X = work.layers[layer].copy()
    elif layer is not None:
        logger.warning(f"Layer '{layer}' not found, testing on .X")

    logger.info(
        f"Differential expression ({method}): {group} vs {reference}, "
        f"{int((work.obs[label_key] == group).sum()):,} vs "
        f"{int((work.obs[label_key] == reference).sum()):,} cells, "
        f"{work.n_vars:,} genes"
    )

    sc.tl.rank_genes_groups(
        work,
        groupby=label_key,
        groups=[group],
        reference=reference,
        method=method,
        corr_method='benjamini-hochberg',
        n_genes=work.n_vars,
        use_raw=False,
    )

    de = sc.get.rank_genes_groups_df(work, group=group)
    de = de.rename(columns={
        'names': 'gene',
        'logfoldchanges': 'log_fold_change',
        'pvals': 'pvalue',
        'pvals_adj': 'adjusted_pvalue',
    })

    de = (
        de.set_index('gene')
        .reindex(adata.var_names)
        .rename_axis('gene')
        .reset_index()
    )
    de['log_fold_change'] = de['log_fold_change'].fillna(0.0)
    de['pvalue'] = de['pvalue'].fillna(1.0)
    de['adjusted_pvalue'] = de['adjusted_pvalue'].fillna(1.0)

    n_sig = int((de['adjusted_pvalue'] < 0.05).sum())
    logger.info(f"  {n_sig:,} genes with adjusted p < 0.05")

    return de[['gene', 'log_fold_change', 'pvalue', 'adjusted_pvalue']]


def select_top_genes(de_results: pd.DataFrame, top_n: int) -> pd.DataFrame:
    """
    Keep the ``top_n`` most significant genes.

    Genes are ranked by increasing adjusted p-value, ties broken by
    decreasing absolute log-fold-change (then gene name). The selection is
    returned ordered by decreasing absolute log-fold-change.
    """
    ranked = de_results.assign(abs_lfc=de_results['log_fold_change'].abs())
    ranked = ranked.sort_values(
        ['adjusted_pvalue', 'abs_lfc', 'gene'],
        ascending=[True, False, True],
        kind='mergesort'
    ).head(top_n)

    ranked = ranked.sort_values(
        ['abs_lfc', 'gene'], ascending=[False, True], kind='mergesort'
    )
    return ranked.drop(columns='abs_lfc').reset_index(drop=True)


def draw_random_signature(
    genes: Sequence[str],
    n: int,
    random_state: Union[int, np.random.Generator, None] = 0
) -> Tuple[SignatureEntry, ...]:
    """
    Draw ``n`` genes uniformly without replacement as a control signature.

    The draw is over the whole gene universe, so it may overlap the real
    signature.
    """
    genes = np.asarray(list(genes), dtype=object)
    if n > len(genes):
        raise ValueError(f"Cannot draw {n} genes from a universe of {len(genes)}")

    rng = np.random.default_rng(random_state)
    drawn = rng.choice(len(genes), size=n, replace=False)

    return tuple(SignatureEntry(gene=str(genes[i]), is_random=True) for i in drawn)


def discover_signature(
    adata: ad.AnnData,
    label_key: str = 'time_label',
    top_n: int = 300,
    method: str = 'wilcoxon',
    layer: Optional[str] = 'lognorm',
    min_cells_per_group: int = 2,
    random_state: Union[int, np.random.Generator, None] = 0,
    cell_type: Optional[str] = None,
    fold: Optional[int] = None,
    de_results: Optional[pd.DataFrame] = None,
    logger: Optional[logging.Logger] = None
) -> FoldSignature:
    """
    Discover the real and random signatures of one training fold.

    Parameters
    ----------
    adata : AnnData
        Training cells of one cell type
    label_key : str, default 'time_label'
        Column in .obs with 'affected'/'unaffected' labels
    top_n : int, default 300
        Signature length; clamped to the number of genes
    method : str, default 'wilcoxon'
        scanpy differential expression test
    layer : str, optional
        Log-normalized layer
    min_cells_per_group : int, default 2
        Minimum cells per label group
    random_state : int or np.random.Generator, default 0
        Seed for the random control draw
    cell_type, fold : optional
        Identify the fold in records, logs and errors
    de_results : pd.DataFrame, optional
        Precomputed output of ``differential_expression``
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    FoldSignature
        ``top_n`` real entries ordered by decreasing |effect size| and
        ``top_n`` random entries

    Raises
    ------
    InsufficientDataError
        If the DE test cannot run on this fold

    Examples
    --------
    >>> train = adata[split.train_index]
    >>> signature = discover_signature(train, top_n=300, random_state=42)
    >>> len(signature.real), len(signature.random)
    (300, 300)
    """
    logger = get_logger(logger)

    if top_n < 1:
        raise ValueError(f"top_n must be positive, got {top_n}")

    if de_results is None:
        de_results = differential_expression(
            adata,
            label_key=label_key,
            method=method,
            layer=layer,
            min_cells_per_group=min_cells_per_group,
            cell_type=cell_type,
            fold=fold,
            logger=logger
        )

    if top_n > adata.n_vars:
        logger.warning(
            f"top_n={top_n} exceeds the number of genes ({adata.n_vars}); "
            f"using {adata.n_vars}"
        )
        top_n = adata.n_vars

    top = select_top_genes(de_results, top_n)
    real = tuple(
        SignatureEntry(
            gene=str(row.gene),
            effect_size=float(row.log_fold_change),
            adjusted_pvalue=float(row.adjusted_pvalue),
            is_random=False,
        )
        for row in top.itertuples(index=False)
    )

    random = draw_random_signature(adata.var_names, top_n, random_state=random_state)

    overlap = len({e.gene for e in real} & {e.gene for e in random})
    logger.info(
        f"Signature for {cell_type or 'population'}"
        + (f" fold {fold}" if fold is not None else "")
        + f": {len(real)} genes "
        f"({sum(e.effect_size > 0 for e in real)} up, "
        f"{sum(e.effect_size < 0 for e in real)} down), "
        f"random control overlap {overlap}"
    )

    return FoldSignature(cell_type=cell_type, fold=fold, real=real, random=random)


def signature_to_frame(signatures: Union[FoldSignature, Sequence[FoldSignature]]) -> pd.DataFrame:
    """
    Tidy table of one or more fold signatures (2 x top_n rows per fold).

    Examples
    --------
    >>> table = signature_to_frame(result.fold_signatures)
    >>> table.to_csv("results/tables/signatures.csv", index=False)
    """
    if isinstance(signatures, FoldSignature):
        signatures = [signatures]

    rows = []
    for signature in signatures:
        for entry in signature.entries:
            rows.append({
                'cell_type': signature.cell_type,
                'fold': signature.fold,
                'gene': entry.gene,
                'effect_size': entry.effect_size,
                'adjusted_pvalue': entry.adjusted_pvalue,
                'is_random': entry.is_random,
            })

    return pd.DataFrame(rows, columns=SIGNATURE_COLUMNS)


def signature_from_frame(table: pd.DataFrame) -> List[FoldSignature]:
    """Rebuild fold signatures from a table written by ``signature_to_frame``."""
    signatures = []

    grouped = table.groupby(['cell_type', 'fold'], sort=False, dropna=False)
    for (cell_type, fold), rows in grouped:
        entries = [
            SignatureEntry(
                gene=str(row.gene),
                effect_size=None if pd.isna(row.effect_size) else float(row.effect_size),
                adjusted_pvalue=None if pd.isna(row.adjusted_pvalue) else float(row.adjusted_pvalue),
                is_random=bool(row.is_random),
            )
            for row in rows.itertuples(index=False)
        ]
        signatures.append(FoldSignature(
            cell_type=None if pd.isna(cell_type) else cell_type,
            fold=None if pd.isna(fold) else int(fold),
            real=tuple(e for e in entries if not e.is_random),
            random=tuple(e for e in entries if e.is_random),
        ))

    return signatures
