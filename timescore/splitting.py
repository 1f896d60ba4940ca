"""
Dataset Splitting Module
========================

Label-balanced K-fold partitioning of one cell type's population:
- Iterative weighted sampling without replacement
- Test/train index pairs per fold
- Fold tags per cell
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from .exceptions import InvalidInputError
from .utils import get_logger


@dataclass(frozen=True)
class FoldSplit:
    """Held-out test cells of one fold and the complementary training cells."""

    fold: int
    test_index: pd.Index
    train_index: pd.Index

    @property
    def n_test(self) -> int:
        return len(self.test_index)

    @property
    def n_train(self) -> int:
        return len(self.train_index)


def _opposite_label_weights(pool_labels: pd.Series) -> np.ndarray:
    """
    Selection probability of each cell in the pool.

    A cell's weight is the frequency of the other label in the pool, so
    minority-label cells are favoured. Falls back to uniform when the pool
    holds a single label.
    """
    pool_labels = pool_labels.astype(object)
    frequencies = pool_labels.value_counts(normalize=True)

    if len(frequencies) < 2:
        return np.full(len(pool_labels), 1.0 / len(pool_labels))

    weights = (1.0 - pool_labels.map(frequencies).astype(float)).to_numpy()
    return weights / weights.sum()


def _reserve_minority(
    pool_labels: pd.Series,
    folds_remaining: int,
    rng: np.random.Generator
) -> pd.Index:
    """
    Minority-label cells withheld from the current weighted draw.

    Each later fold is guaranteed ``n_minority // folds_remaining`` cells of
    the pool's minority label, so the weighted draws cannot exhaust it
    before the remainder fold. Nothing is reserved when the pool holds a
    single label.
    """
    pool_labels = pool_labels.astype(object)
    counts = pool_labels.value_counts()

    if len(counts) < 2:
        return pool_labels.index[:0]

    minority = counts.idxmin()
    n_reserve = (int(counts.min()) // folds_remaining) * (folds_remaining - 1)
    if n_reserve == 0:
        return pool_labels.index[:0]

    members = np.flatnonzero((pool_labels == minority).to_numpy())
    chosen = rng.choice(members, size=n_reserve, replace=False)
    return pool_labels.index[np.sort(chosen)]


def split_folds(
    labels: pd.Series,
    n_folds: int = 3,
    random_state: Union[int, np.random.Generator, None] = 0,
    cell_type: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> List[FoldSplit]:
    """
    Partition a labeled population into label-balanced test folds.

    For each of the first ``n_folds - 1`` folds, ``N // n_folds`` cells are
    drawn without replacement from the remaining pool, each cell weighted by
    the frequency of the opposite label in that pool. The last fold takes
    every remaining cell.

    Before each draw, ``m // f`` minority-label cells per later fold are
    withheld (m = minority cells left, f = folds left including the current
    one), so every fold, the remainder fold included, receives its share of
    the minority label.

    Parameters
    ----------
    labels : pd.Series
        Binary label per cell, indexed by barcode
    n_folds : int, default 3
        Number of folds (K)
    random_state : int or np.random.Generator, default 0
        Seed controlling the weighted draws
    cell_type : str, optional
        Cell type name, used in log messages and error context
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    list of FoldSplit
        One entry per fold (numbered from 1). Test indices partition the
        population; each train index is the population minus its own fold.

    Raises
    ------
    InvalidInputError
        If the population is empty, ``n_folds < 2`` or ``n_folds`` exceeds
        the number of cells

    Examples
    --------
    >>> folds = split_folds(adata.obs['time_label'], n_folds=3, random_state=42)
    >>> [f.n_test for f in folds]
    [10, 10, 10]
    """
    logger = get_logger(logger)

    n_cells = len(labels)
    if n_folds < 2:
        raise InvalidInputError(
            f"At least 2 folds are required, got {n_folds}", cell_type=cell_type
        )
    if n_cells == 0:
        raise InvalidInputError("Cannot split an empty population", cell_type=cell_type)
    if n_cells < n_folds:
        raise InvalidInputError(
            f"Fold count ({n_folds}) exceeds population size ({n_cells})",
            cell_type=cell_type
        )
    if not labels.index.is_unique:
        raise InvalidInputError("Cell identifiers must be unique", cell_type=cell_type)

    rng = np.random.default_rng(random_state)
    fold_size = n_cells // n_folds

    pool = labels.copy()
    assigned = pd.Series(0, index=labels.index, dtype=int)

    for fold in range(1, n_folds):
        reserved = _reserve_minority(pool, n_folds - fold + 1, rng)
        candidates = pool.drop(reserved)

        probabilities = _opposite_label_weights(candidates)
        drawn = rng.choice(len(candidates), size=fold_size, replace=False, p=probabilities)
        drawn_index = candidates.index[np.sort(drawn)]

        assigned.loc[drawn_index] = fold
        pool = pool.drop(drawn_index)

    assigned.loc[pool.index] = n_folds

    splits = []
    for fold in range(1, n_folds + 1):
        in_fold = (assigned == fold).to_numpy()
        split = FoldSplit(
            fold=fold,
            test_index=labels.index[in_fold],
            train_index=labels.index[~in_fold],
        )
        splits.append(split)

        composition = labels[in_fold].value_counts().to_dict()
        logger.debug(
            f"{cell_type or 'population'} fold {fold}: "
            f"{split.n_test} test / {split.n_train} train cells, labels {composition}"
        )

    logger.info(
        f"Split {n_cells:,} cells into {n_folds} folds "
        f"({', '.join(str(s.n_test) for s in splits)} test cells)"
        + (f" for {cell_type}" if cell_type else "")
    )

    return splits


def assign_folds(
    labels: pd.Series,
    n_folds: int = 3,
    random_state: Union[int, np.random.Generator, None] = 0,
    cell_type: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> pd.Series:
    """
    Fold tag (1..K) of every cell, in the input order.

    Examples
    --------
    >>> adata.obs['fold'] = assign_folds(adata.obs['time_label'], n_folds=3)
    """
    splits = split_folds(
        labels,
        n_folds=n_folds,
        random_state=random_state,
        cell_type=cell_type,
        logger=logger
    )

    tags = pd.Series(0, index=labels.index, dtype=int, name='fold')
    for split in splits:
        tags.loc[split.test_index] = split.fold

    return tags
