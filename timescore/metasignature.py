"""
Metasignature aggregation: the genes every fold signature of a cell type agrees on.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .signature import FoldSignature, SignatureEntry
from .utils import get_logger


@dataclass(frozen=True)
class Metasignature:
    """Intersection of the real fold signatures of one cell type."""

    cell_type: Optional[str]
    genes: frozenset
    entries: Tuple[SignatureEntry, ...]
    n_folds: int

    def __len__(self) -> int:
        return len(self.genes)

    @property
    def is_empty(self) -> bool:
        return not self.genes

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    'cell_type': self.cell_type,
                    'gene': entry.gene,
                    'mean_effect_size': entry.effect_size,
                    'max_adjusted_pvalue': entry.adjusted_pvalue,
                    'n_folds': self.n_folds,
                }
                for entry in self.entries
            ],
            columns=['cell_type', 'gene', 'mean_effect_size', 'max_adjusted_pvalue', 'n_folds'],
        )


def aggregate_metasignature(fold_gene_sets: Iterable[Iterable[str]]) -> frozenset:
    """
    Intersect per-fold gene sets.

    Order of the folds does not matter and an empty result is valid.

    Examples
    --------
    >>> aggregate_metasignature([{'A', 'B', 'C'}, {'B', 'C', 'D'}, {'C', 'D', 'E'}])
    frozenset({'C'})
    """
    gene_sets = [frozenset(genes) for genes in fold_gene_sets]
    if not gene_sets:
        return frozenset()
    return frozenset.intersection(*gene_sets)


def build_metasignature(
    fold_signatures: Sequence[FoldSignature],
    cell_type: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> Metasignature:
    """
    Build the metasignature of one cell type from its fold signatures.

    Each shared gene gets the mean log-fold-change and the largest adjusted
    p-value observed across folds; entries are ordered by decreasing absolute
    mean effect size so they can be scored like a fold signature.

    Parameters
    ----------
    fold_signatures : sequence of FoldSignature
        Real + random signatures of every fold; only real entries are used
    cell_type : str, optional
        Defaults to the cell type recorded on the fold signatures
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    Metasignature
    """
    logger = get_logger(logger)

    if cell_type is None and fold_signatures:
        cell_type = fold_signatures[0].cell_type

    genes = aggregate_metasignature(sig.genes for sig in fold_signatures)

    effects = {gene: [] for gene in genes}
    pvalues = {gene: [] for gene in genes}
    for signature in fold_signatures:
        for entry in signature.real:
            if entry.gene in effects:
                effects[entry.gene].append(entry.effect_size)
                pvalues[entry.gene].append(entry.adjusted_pvalue)

    entries = [
        SignatureEntry(
            gene=gene,
            effect_size=float(np.mean(effects[gene])),
            adjusted_pvalue=float(np.max(pvalues[gene])),
            is_random=False,
        )
        for gene in genes
    ]
    entries.sort(key=lambda e: (-abs(e.effect_size), e.gene))

    if not genes:
        logger.warning(
            f"Empty metasignature for {cell_type or 'population'}: "
            f"the {len(fold_signatures)} fold signatures share no genes"
        )
    else:
        sizes = [len(sig.real) for sig in fold_signatures]
        logger.info(
            f"Metasignature for {cell_type or 'population'}: {len(genes)} genes "
            f"shared by {len(fold_signatures)} folds (fold sizes {sizes})"
        )

    return Metasignature(
        cell_type=cell_type,
        genes=genes,
        entries=tuple(entries),
        n_folds=len(fold_signatures),
    )
