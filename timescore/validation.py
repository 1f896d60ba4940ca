"""
Validation Module
=================

Held-out evaluation of time-scores:
- ROC curve and AUC (scikit-learn)
- Classification metrics at an operating threshold (Youden's J or fixed)
- Real vs random signature comparison
- Score distribution per elapsed-time category
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd
from scipy import stats
from sklearn.metrics import confusion_matrix, roc_auc_score, roc_curve

from .exceptions import InsufficientDataError
from .signature import AFFECTED
from .utils import get_logger


@dataclass(frozen=True)
class ClassificationMetrics:
    """Confusion-matrix metrics at one threshold (score >= threshold is positive)."""

    threshold: float
    sensitivity: float
    specificity: float
    precision: float
    accuracy: float
    tp: int
    fp: int
    tn: int
    fn: int


@dataclass
class ValidationResult:
    """ROC and metrics of one (fold, signature type) pair."""

    cell_type: Optional[str]
    fold: Optional[int]
    signature_type: str
    auc: float
    roc: pd.DataFrame
    metrics: ClassificationMetrics
    n_cells: int = 0
    n_positive: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            'cell_type': self.cell_type,
            'fold': self.fold,
            'signature_type': self.signature_type,
            'n_cells': self.n_cells,
            'n_positive': self.n_positive,
            'auc': self.auc,
            'threshold': self.metrics.threshold,
            'sensitivity': self.metrics.sensitivity,
            'specificity': self.metrics.specificity,
            'precision': self.metrics.precision,
            'accuracy': self.metrics.accuracy,
            'tp': self.metrics.tp,
            'fp': self.metrics.fp,
            'tn': self.metrics.tn,
            'fn': self.metrics.fn,
        }


@dataclass
class TimeDependency:
    """Score distribution per ordered elapsed-time category."""

    summary: pd.DataFrame
    monotonic_mean: bool
    monotonic_median: bool
    spearman_rho: float
    spearman_pvalue: float
    extra: Dict[str, Any] = field(default_factory=dict)


def _binary_targets(labels: pd.Series, positive_label: str) -> np.ndarray:
    return (np.asarray(labels).astype(str) == str(positive_label)).astype(int)


def _check_classes(
    y_true: np.ndarray,
    cell_type: Optional[str] = None,
    fold: Optional[int] = None
) -> None:
    n_pos = int(y_true.sum())
    if n_pos == 0 or n_pos == len(y_true):
        raise InsufficientDataError(
            f"ROC analysis needs both classes, got {n_pos} positive of {len(y_true)} cells",
            cell_type=cell_type,
            fold=fold
        )


def roc_points(
    labels: pd.Series,
    scores: pd.Series,
    positive_label: str = AFFECTED,
    cell_type: Optional[str] = None,
    fold: Optional[int] = None
) -> pd.DataFrame:
    """
    ROC curve of a continuous score.

    One row per distinct score value used as threshold, ordered by
    ascending threshold, framed by the anchors (fpr=1, tpr=1) at
    threshold -inf and (fpr=0, tpr=0) at threshold +inf.

    Parameters
    ----------
    labels : pd.Series
        True label per cell
    scores : pd.Series
        Score per cell (aligned with labels)
    positive_label : str, default 'affected'
        Label treated as the positive class

    Returns
    -------
    pd.DataFrame
        Columns: threshold, fpr, tpr

    Raises
    ------
    InsufficientDataError
        If only one class is present
    """
    y_true = _binary_targets(labels, positive_label)
    _check_classes(y_true, cell_type, fold)

    fpr, tpr, thresholds = roc_curve(
        y_true, np.asarray(scores, dtype=float), drop_intermediate=False
    )

    # roc_curve starts at its own (0, 0) anchor; keep the distinct data thresholds
    curve = pd.DataFrame({
        'threshold': thresholds[1:],
        'fpr': fpr[1:],
        'tpr': tpr[1:],
    })
    curve = curve.iloc[::-1]

    anchors_low = pd.DataFrame({'threshold': [-np.inf], 'fpr': [1.0], 'tpr': [1.0]})
    anchors_high = pd.DataFrame({'threshold': [np.inf], 'fpr': [0.0], 'tpr': [0.0]})

    return pd.concat([anchors_low, curve, anchors_high], ignore_index=True)


def youden_threshold(roc: pd.DataFrame) -> float:
    """Finite threshold maximising Youden's J (tpr - fpr); lowest threshold wins ties."""
    finite = roc[np.isfinite(roc['threshold'])]
    if finite.empty:
        raise ValueError("ROC curve has no finite thresholds")

    j = finite['tpr'] - finite['fpr']
    return float(finite.loc[j.idxmax(), 'threshold'])


def classification_metrics(
    labels: pd.Series,
    scores: pd.Series,
    threshold: float,
    positive_label: str = AFFECTED
) -> ClassificationMetrics:
    """
    Sensitivity, specificity, precision and accuracy at ``threshold``.

    Cells with score >= threshold are predicted positive. A metric with a
    zero denominator is reported as 0.0.
    """
    y_true = _binary_targets(labels, positive_label)
    y_pred = (np.asarray(scores, dtype=float) >= threshold).astype(int)

    tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()

    def _ratio(num, den):
        return float(num) / float(den) if den else 0.0

    return ClassificationMetrics(
        threshold=float(threshold),
        sensitivity=_ratio(tp, tp + fn),
        specificity=_ratio(tn, tn + fp),
        precision=_ratio(tp, tp + fp),
        accuracy=_ratio(tp + tn, tp + tn + fp + fn),
        tp=int(tp),
        fp=int(fp),
        tn=int(tn),
        fn=int(fn),
    )


def validate_fold(
    labels: pd.Series,
    scores: pd.Series,
    signature_type: str = 'real',
    threshold: Union[str, float] = 'youden',
    positive_label: str = AFFECTED,
    cell_type: Optional[str] = None,
    fold: Optional[int] = None,
    logger: Optional[logging.Logger] = None
) -> ValidationResult:
    """
    Evaluate a scored held-out fold.

    Parameters
    ----------
    labels : pd.Series
        True labels of the test cells
    scores : pd.Series
        Time-scores of the test cells
    signature_type : str, default 'real'
        'real', 'random' or 'metasignature'; recorded on the result
    threshold : 'youden' or float, default 'youden'
        Operating threshold for the classification metrics
    positive_label : str, default 'affected'
    cell_type, fold : optional
        Identify the fold in results and errors
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    ValidationResult

    Examples
    --------
    >>> result = validate_fold(test.obs['time_label'], scores, signature_type='real')
    >>> print(f"AUC {result.auc:.3f}, accuracy {result.metrics.accuracy:.3f}")
    """
    logger = get_logger(logger)

    scores = scores.reindex(labels.index)
    if scores.isna().any():
        raise ValueError(
            f"{int(scores.isna().sum())} cells have no score"
            + (f" [cell_type={cell_type}, fold={fold}]" if cell_type is not None else "")
        )

    roc = roc_points(labels, scores, positive_label, cell_type=cell_type, fold=fold)
    y_true = _binary_targets(labels, positive_label)
    auc = float(roc_auc_score(y_true, scores.to_numpy(dtype=float)))

    if isinstance(threshold, str):
        if threshold != 'youden':
            raise ValueError(f"Unknown threshold rule: {threshold}")
        operating = youden_threshold(roc)
    else:
        operating = float(threshold)

    metrics = classification_metrics(labels, scores, operating, positive_label)

    logger.info(
        f"Validation {cell_type or 'population'} fold {fold} ({signature_type}): "
        f"AUC={auc:.3f}, sens={metrics.sensitivity:.3f}, "
        f"spec={metrics.specificity:.3f}, acc={metrics.accuracy:.3f}"
    )

    return ValidationResult(
        cell_type=cell_type,
        fold=fold,
        signature_type=signature_type,
        auc=auc,
        roc=roc,
        metrics=metrics,
        n_cells=len(labels),
        n_positive=int(y_true.sum()),
    )


def compare_to_null(
    real: ValidationResult,
    random: ValidationResult,
    grid_size: int = 101
) -> Dict[str, Any]:
    """
    Compare a real-signature ROC curve against its random control.

    Both curves are interpolated on a common FPR grid (taking the highest TPR
    reached at each FPR). The real curve dominates when it is never below the
    random curve. This is reported, not enforced.
    """
    grid = np.linspace(0.0, 1.0, grid_size)

    def _interp(roc: pd.DataFrame) -> np.ndarray:
        curve = roc.groupby('fpr')['tpr'].max().sort_index()
        return np.interp(grid, curve.index.to_numpy(), curve.to_numpy())

    real_tpr = _interp(real.roc)
    random_tpr = _interp(random.roc)

    return {
        'cell_type': real.cell_type,
        'fold': real.fold,
        'auc_real': real.auc,
        'auc_random': random.auc,
        'auc_delta': real.auc - random.auc,
        'real_dominates': bool(np.all(real_tpr >= random_tpr - 1e-12)),
        'real_dominated': bool(
            np.all(random_tpr >= real_tpr - 1e-12) and np.any(random_tpr > real_tpr + 1e-12)
        ),
    }


def time_dependency(
    scores: pd.Series,
    time_categories: pd.Series,
    logger: Optional[logging.Logger] = None
) -> TimeDependency:
    """
    Describe the score distribution per elapsed-time category.

    Parameters
    ----------
    scores : pd.Series
        Time-score per cell
    time_categories : pd.Series
        Elapsed-time category per cell; an ordered categorical defines the
        order, otherwise categories are sorted
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    TimeDependency
        Per-category descriptive statistics, whether the mean and median
        are non-decreasing with elapsed time, and Spearman's rho between
        score and category order
    """
    logger = get_logger(logger)

    categories = time_categories.reindex(scores.index)
    if not isinstance(categories.dtype, pd.CategoricalDtype):
        categories = categories.astype('category')
    if not categories.cat.ordered:
        categories = categories.cat.as_ordered()

    data = pd.DataFrame({'score': scores.to_numpy(dtype=float), 'time': categories.to_numpy()})
    data['time'] = pd.Categorical(
        data['time'], categories=categories.cat.categories, ordered=True
    )
    data = data.dropna()

    summary = data.groupby('time', observed=True)['score'].describe()
    summary['median'] = data.groupby('time', observed=True)['score'].median()

    monotonic_mean = bool(summary['mean'].is_monotonic_increasing)
    monotonic_median = bool(summary['median'].is_monotonic_increasing)

    codes = data['time'].cat.codes
    if codes.nunique() > 1 and data['score'].nunique() > 1:
        rho, pvalue = stats.spearmanr(codes, data['score'])
    else:
        rho, pvalue = np.nan, np.nan

    logger.info(
        f"Time dependency over {len(summary)} categories: "
        f"medians {', '.join(f'{m:.2f}' for m in summary['median'])}; "
        f"monotonic median={monotonic_median}, Spearman rho={rho:.3f}"
    )

    return TimeDependency(
        summary=summary,
        monotonic_mean=monotonic_mean,
        monotonic_median=monotonic_median,
        spearman_rho=float(rho),
        spearman_pvalue=float(pvalue),
    )
