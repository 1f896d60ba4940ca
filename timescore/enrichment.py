"""
Gene-set enrichment of metasignatures.

Term gene sets come from GMT files (e.g. GO biological process exports);
each term is tested with a one-sided Fisher exact test against the gene
universe of the expression matrix.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

import pandas as pd
import anndata as ad
from scipy.stats import false_discovery_control, fisher_exact

from .metasignature import Metasignature
from .utils import get_logger


ENRICHMENT_COLUMNS = [
    'term_id',
    'odds_ratio',
    'p_value',
    'adjusted_pvalue',
    'term_size',
    'overlap',
    'overlap_genes',
]


def enrichment_inputs(
    metasignature: Metasignature,
    adata: ad.AnnData
) -> Tuple[List[str], List[str]]:
    """Gene list and gene universe handed to the enrichment test."""
    universe = [str(g) for g in adata.var_names]
    genes = sorted(metasignature.genes & set(universe))
    return genes, universe


def read_gmt(path: Union[str, Path]) -> Dict[str, Set[str]]:
    """
    Read a GMT file: ``term<TAB>description<TAB>gene1<TAB>gene2...`` per line.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene set file not found: {path}")

    gene_sets = {}
    with open(path, 'r') as f:
        for line in f:
            fields = line.rstrip('\n').split('\t')
            if len(fields) < 3 or not fields[0]:
                continue
            gene_sets[fields[0]] = {g for g in fields[2:] if g}

    return gene_sets


def run_enrichment(
    genes: Iterable[str],
    universe: Iterable[str],
    gene_sets: Mapping[str, Iterable[str]],
    min_term_size: int = 5,
    max_term_size: int = 500,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Over-representation test of ``genes`` in each term.

    Term sizes are counted within the universe; terms outside
    ``[min_term_size, max_term_size]`` are skipped. P-values are
    Benjamini-Hochberg adjusted across tested terms.

    Returns
    -------
    pd.DataFrame
        Columns term_id, odds_ratio, p_value, adjusted_pvalue, term_size,
        overlap, overlap_genes; sorted by p-value. Empty when there is
        nothing to test.
    """
    logger = get_logger(logger)

    universe = set(universe)
    genes = set(genes) & universe

    if not genes:
        logger.warning("No signature genes in the universe; skipping enrichment")
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    n_universe = len(universe)
    n_genes = len(genes)

    rows = []
    for term_id, members in gene_sets.items():
        members = set(members) & universe
        term_size = len(members)
        if term_size < min_term_size or term_size > max_term_size:
            continue

        hits = genes & members
        a = len(hits)
        b = n_genes - a
        c = term_size - a
        d = n_universe - n_genes - c

        odds_ratio, p_value = fisher_exact([[a, b], [c, d]], alternative='greater')
        rows.append({
            'term_id': term_id,
            'odds_ratio': float(odds_ratio),
            'p_value': float(p_value),
            'term_size': term_size,
            'overlap': a,
            'overlap_genes': ','.join(sorted(hits)),
        })

    if not rows:
        logger.warning("No gene sets within the size limits")
        return pd.DataFrame(columns=ENRICHMENT_COLUMNS)

    table = pd.DataFrame(rows)
    table['adjusted_pvalue'] = false_discovery_control(table['p_value'].to_numpy(), method='bh')
    table = table.sort_values(['p_value', 'term_id']).reset_index(drop=True)

    logger.info(
        f"Enrichment: {n_genes} genes tested against {len(table)} terms, "
        f"{int((table['adjusted_pvalue'] < 0.05).sum())} with adjusted p < 0.05"
    )

    return table[ENRICHMENT_COLUMNS]
