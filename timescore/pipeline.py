"""
Time-Score Pipeline
===================

Runs the signature workflow for each cell type:

1. Split the cell type into label-balanced folds
2. Discover a real and a random signature on every training fold
3. Intersect the fold signatures into a metasignature
4. Score each held-out fold with its real and random signature
5. Validate the scores (ROC, metrics, null comparison, time dependency)

Stages hand typed results to each other in memory; nothing is mutated in
place. A failing cell type is reported with its context and does not affect
the others.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import anndata as ad

from .exceptions import InvalidInputError, TimescoreError
from .metasignature import Metasignature, build_metasignature
from .scoring import null_weights, rank_weights, compute_time_score
from .signature import AFFECTED, FoldSignature, discover_signature, signature_to_frame
from .splitting import FoldSplit, split_folds
from .utils import cleanup_memory, ensure_dir, get_logger, get_section, log_memory_usage
from .validation import (
    TimeDependency,
    ValidationResult,
    compare_to_null,
    time_dependency,
    validate_fold,
)


@dataclass
class CellTypeResult:
    """Everything produced for one cell type."""

    cell_type: str
    splits: List[FoldSplit]
    fold_signatures: List[FoldSignature]
    metasignature: Metasignature
    scores: pd.DataFrame
    validations: List[ValidationResult]
    null_comparisons: List[Dict[str, Any]]
    time_dependency: Optional[TimeDependency] = None
    metasignature_scores: Optional[pd.Series] = None


@dataclass
class PipelineResult:
    """Results of all cell types plus the cell types that failed."""

    cell_types: Dict[str, CellTypeResult] = field(default_factory=dict)
    failures: Dict[str, TimescoreError] = field(default_factory=dict)

    def signatures_table(self) -> pd.DataFrame:
        signatures = [s for r in self.cell_types.values() for s in r.fold_signatures]
        return signature_to_frame(signatures)

    def metasignature_table(self) -> pd.DataFrame:
        frames = [r.metasignature.to_frame() for r in self.cell_types.values()]
        if not frames:
            return Metasignature(None, frozenset(), (), 0).to_frame()
        return pd.concat(frames, ignore_index=True)

    def scores_table(self) -> pd.DataFrame:
        frames = [r.scores for r in self.cell_types.values()]
        if not frames:
            return pd.DataFrame(
                columns=['barcode', 'cell_type', 'fold', 'label', 'time_category',
                         'time_score_real', 'time_score_random', 'time_score_metasignature']
            )
        return pd.concat(frames, ignore_index=True)

    def validation_table(self) -> pd.DataFrame:
        return pd.DataFrame([
            v.to_record() for r in self.cell_types.values() for v in r.validations
        ])

    def roc_table(self) -> pd.DataFrame:
        frames = []
        for r in self.cell_types.values():
            for v in r.validations:
                frames.append(v.roc.assign(
                    cell_type=v.cell_type, fold=v.fold, signature_type=v.signature_type
                ))
        if not frames:
            return pd.DataFrame(columns=['threshold', 'fpr', 'tpr', 'cell_type', 'fold', 'signature_type'])
        return pd.concat(frames, ignore_index=True)

    def null_comparison_table(self) -> pd.DataFrame:
        return pd.DataFrame([c for r in self.cell_types.values() for c in r.null_comparisons])

    def time_dependency_table(self) -> pd.DataFrame:
        frames = []
        for name, r in self.cell_types.items():
            if r.time_dependency is None:
                continue
            summary = r.time_dependency.summary.reset_index()
            summary.insert(0, 'cell_type', name)
            summary['monotonic_median'] = r.time_dependency.monotonic_median
            summary['spearman_rho'] = r.time_dependency.spearman_rho
            frames.append(summary)
        if not frames:
            return pd.DataFrame()
        return pd.concat(frames, ignore_index=True)


def _check_obs_keys(adata: ad.AnnData, keys: Sequence[str]) -> None:
    missing = [k for k in keys if k not in adata.obs.columns]
    if missing:
        raise InvalidInputError(f"Missing .obs columns: {', '.join(missing)}")


def _order_time_categories(
    values: pd.Series,
    time_order: Sequence[str],
    logger: logging.Logger
) -> pd.Categorical:
    """Cast an elapsed-time column to the configured category order."""
    time_order = [str(c) for c in time_order]

    unknown = set(values.dropna().astype(str)) - set(time_order)
    if unknown:
        logger.warning(
            f"Time categories missing from data.time_order, treated as missing: {sorted(unknown)}"
        )

    return pd.Categorical(
        values.astype(str).where(values.notna()),
        categories=time_order,
        ordered=True
    )


def _score_metasignature(
    cells: ad.AnnData,
    splits: Sequence[FoldSplit],
    metasignature: Metasignature,
    layer: Optional[str],
    zscore_population: str,
    logger: logging.Logger
) -> pd.Series:
    """
    Metasignature time-score of every cell.

    With ``zscore_population='test_fold'`` each fold's test cells are
    standardized among themselves, like the fold signature scores;
    otherwise the whole cell type is the reference population.
    """
    weights = rank_weights(metasignature.entries)
    name = 'time_score_metasignature'

    if zscore_population == 'cell_type':
        return compute_time_score(cells, weights, layer=layer, name=name, logger=logger)
    if zscore_population != 'test_fold':
        raise ValueError(f"Unknown zscore_population: {zscore_population}")

    per_fold = [
        compute_time_score(cells[split.test_index], weights, layer=layer, name=name, logger=logger)
        for split in splits
    ]
    return pd.concat(per_fold).reindex(cells.obs_names)


def _score_fold(
    cells: ad.AnnData,
    split: FoldSplit,
    signature: FoldSignature,
    layer: Optional[str],
    zscore_population: str,
    logger: logging.Logger
) -> pd.DataFrame:
    """Real and random time-scores of the test cells of one fold."""
    if zscore_population == 'test_fold':
        population = cells[split.test_index]
    elif zscore_population == 'cell_type':
        population = cells
    else:
        raise ValueError(f"Unknown zscore_population: {zscore_population}")

    real = compute_time_score(
        population, rank_weights(signature.real), layer=layer, logger=logger
    )
    random = compute_time_score(
        population, null_weights(signature.random, signature.real), layer=layer, logger=logger
    )

    return pd.DataFrame({
        'time_score_real': real.reindex(split.test_index),
        'time_score_random': random.reindex(split.test_index),
    })


def run_cell_type(
    adata: ad.AnnData,
    cell_type: str,
    config: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None
) -> CellTypeResult:
    """
    Run split, discovery, aggregation, scoring and validation for one cell type.

    Parameters
    ----------
    adata : AnnData
        Preprocessed data of all cell types (log-normalized layer present)
    cell_type : str
        Value of the cell type column to analyse
    config : dict, optional
        Parsed configuration (see config/timescore.yaml); missing entries
        fall back to defaults
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    CellTypeResult

    Raises
    ------
    InvalidInputError, InsufficientDataError
        With ``cell_type`` and ``fold`` set
    """
    logger = get_logger(logger)

    data_params = get_section(config, 'data')
    split_params = get_section(config, 'splitting')
    sig_params = get_section(config, 'signature')
    score_params = get_section(config, 'scoring')
    val_params = get_section(config, 'validation')

    cell_type_key = data_params.get('cell_type_key', 'cell_type')
    label_key = data_params.get('label_key', 'time_label')
    time_key = data_params.get('time_key', 'time_category')
    positive_label = val_params.get('positive_label', AFFECTED)
    layer = score_params.get('layer', 'lognorm')
    zscore_population = score_params.get('zscore_population', 'test_fold')
    threshold = val_params.get('threshold', 'youden')
    seed = (config or {}).get('seed', 0)

    _check_obs_keys(adata, [cell_type_key, label_key])

    logger.info("=" * 60)
    logger.info(f"Cell type: {cell_type}")
    logger.info("=" * 60)

    cells = adata[(adata.obs[cell_type_key] == cell_type).to_numpy()].copy()
    labels = cells.obs[label_key]

    time_order = data_params.get('time_order')
    if time_order and time_key in cells.obs.columns:
        cells.obs[time_key] = _order_time_categories(cells.obs[time_key], time_order, logger)

    logger.info(
        f"{cells.n_obs:,} cells, labels: "
        f"{labels.value_counts().to_dict()}"
    )

    rng = np.random.default_rng(seed)
    fold = None

    try:
        splits = split_folds(
            labels,
            n_folds=split_params.get('n_folds', 3),
            random_state=rng,
            cell_type=cell_type,
            logger=logger
        )

        fold_signatures = []
        score_frames = []
        validations = []
        comparisons = []

        for split in splits:
            fold = split.fold
            train = cells[split.train_index]

            signature = discover_signature(
                train,
                label_key=label_key,
                top_n=sig_params.get('top_n', 300),
                method=sig_params.get('method', 'wilcoxon'),
                layer=sig_params.get('layer', layer),
                min_cells_per_group=sig_params.get('min_cells_per_group', 2),
                random_state=rng,
                cell_type=cell_type,
                fold=fold,
                logger=logger
            )
            fold_signatures.append(signature)

            scores = _score_fold(cells, split, signature, layer, zscore_population, logger)
            test_labels = labels.loc[split.test_index]

            real = validate_fold(
                test_labels, scores['time_score_real'],
                signature_type='real', threshold=threshold,
                positive_label=positive_label, cell_type=cell_type, fold=fold,
                logger=logger
            )
            random = validate_fold(
                test_labels, scores['time_score_random'],
                signature_type='random', threshold=threshold,
                positive_label=positive_label, cell_type=cell_type, fold=fold,
                logger=logger
            )
            validations.extend([real, random])

            comparison = compare_to_null(real, random)
            comparisons.append(comparison)
            if comparison['real_dominated']:
                logger.warning(
                    f"{cell_type} fold {fold}: real signature is dominated by its random control "
                    f"(AUC {real.auc:.3f} vs {random.auc:.3f})"
                )

            scores['barcode'] = scores.index
            scores['fold'] = fold
            score_frames.append(scores)

        fold = None
        metasignature = build_metasignature(fold_signatures, cell_type=cell_type, logger=logger)

    except TimescoreError as err:
        raise err.with_context(cell_type=cell_type, fold=fold) from err

    scores = pd.concat(score_frames, ignore_index=True)
    scores.insert(0, 'cell_type', cell_type)
    scores['label'] = labels.reindex(scores['barcode']).to_numpy()
    if time_key in cells.obs.columns:
        scores['time_category'] = cells.obs[time_key].reindex(scores['barcode']).to_numpy()

    meta_scores = None
    if not metasignature.is_empty:
        meta_scores = _score_metasignature(
            cells, splits, metasignature, layer, zscore_population, logger
        )
        scores['time_score_metasignature'] = meta_scores.reindex(scores['barcode']).to_numpy()

    dependency = None
    if time_key in cells.obs.columns:
        real_scores = pd.Series(
            scores['time_score_real'].to_numpy(), index=pd.Index(scores['barcode'])
        )
        dependency = time_dependency(real_scores, cells.obs[time_key], logger=logger)
    else:
        logger.warning(f"No '{time_key}' column; skipping time-dependency check")

    column_order = ['barcode', 'cell_type', 'fold', 'label', 'time_category',
                    'time_score_real', 'time_score_random', 'time_score_metasignature']
    scores = scores[[c for c in column_order if c in scores.columns]]

    n_dominant = sum(c['real_dominates'] for c in comparisons)
    logger.info(
        f"{cell_type}: real signature dominates random control in "
        f"{n_dominant}/{len(comparisons)} folds; metasignature size {len(metasignature)}"
    )

    return CellTypeResult(
        cell_type=cell_type,
        splits=splits,
        fold_signatures=fold_signatures,
        metasignature=metasignature,
        scores=scores,
        validations=validations,
        null_comparisons=comparisons,
        time_dependency=dependency,
        metasignature_scores=meta_scores,
    )


def run_pipeline(
    adata: ad.AnnData,
    config: Optional[Dict[str, Any]] = None,
    cell_types: Optional[Sequence[str]] = None,
    strict: bool = False,
    logger: Optional[logging.Logger] = None
) -> PipelineResult:
    """
    Run the time-score workflow for every cell type.

    Parameters
    ----------
    adata : AnnData
        Preprocessed data with cell type, label and log-normalized layer
    config : dict, optional
        Parsed configuration
    cell_types : sequence of str, optional
        Cell types to analyse; defaults to ``data.cell_types`` from the
        config, then to every cell type present
    strict : bool, default False
        Re-raise the first cell-type failure instead of recording it
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    PipelineResult

    Examples
    --------
    >>> config = load_config("config/timescore.yaml")
    >>> result = run_pipeline(adata, config, logger=logger)
    >>> export_results(result, "results/tables", logger=logger)
    """
    logger = get_logger(logger)

    data_params = get_section(config, 'data')
    cell_type_key = data_params.get('cell_type_key', 'cell_type')
    _check_obs_keys(adata, [cell_type_key])

    if cell_types is None:
        cell_types = data_params.get('cell_types')
    if cell_types is None:
        cell_types = [str(c) for c in pd.unique(adata.obs[cell_type_key].dropna())]

    logger.info(f"Running time-score pipeline on {len(cell_types)} cell types")

    result = PipelineResult()
    for cell_type in cell_types:
        try:
            result.cell_types[cell_type] = run_cell_type(adata, cell_type, config, logger=logger)
        except TimescoreError as err:
            if strict:
                raise
            logger.error(f"Cell type {cell_type} failed: {err}")
            result.failures[cell_type] = err
        cleanup_memory(logger)

    logger.info(
        f"Pipeline complete: {len(result.cell_types)} cell types analysed, "
        f"{len(result.failures)} failed"
    )
    log_memory_usage(logger, stage="pipeline")

    return result


def export_results(
    result: PipelineResult,
    output_dir: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Dict[str, Path]:
    """
    Write result tables as CSV files.

    Returns
    -------
    dict
        Table name -> written path
    """
    logger = get_logger(logger)
    output_dir = ensure_dir(output_dir)

    tables = {
        'signatures': result.signatures_table(),
        'metasignatures': result.metasignature_table(),
        'time_scores': result.scores_table(),
        'validation_metrics': result.validation_table(),
        'roc_points': result.roc_table(),
        'null_comparison': result.null_comparison_table(),
        'time_dependency': result.time_dependency_table(),
    }

    if result.failures:
        tables['failures'] = pd.DataFrame([
            {'cell_type': name, 'fold': err.fold, 'error': type(err).__name__, 'message': err.message}
            for name, err in result.failures.items()
        ])

    written = {}
    for name, table in tables.items():
        path = output_dir / f"{name}.csv"
        table.to_csv(path, index=False)
        written[name] = path
        logger.info(f"Saved {name} ({len(table):,} rows): {path}")

    return written
