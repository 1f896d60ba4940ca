"""Tests for ROC validation of time-scores."""

import numpy as np
import pandas as pd
import pytest

from timescore.exceptions import InsufficientDataError
from timescore.validation import (
    classification_metrics,
    compare_to_null,
    roc_points,
    time_dependency,
    validate_fold,
    youden_threshold,
)


def _series(values, prefix="c"):
    return pd.Series(values, index=[f"{prefix}{i}" for i in range(len(values))])


@pytest.fixture
def separated():
    labels = _series(["unaffected"] * 3 + ["affected"] * 3)
    scores = _series([0.1, 0.2, 0.3, 0.7, 0.8, 0.9])
    return labels, scores


@pytest.fixture
def mixed():
    labels = _series(["affected", "affected", "unaffected", "unaffected"])
    scores = _series([0.9, 0.2, 0.6, 0.1])
    return labels, scores


class TestRocPoints:
    """ROC curve layout."""

    def test_anchors(self, separated):
        roc = roc_points(*separated)

        first, last = roc.iloc[0], roc.iloc[-1]
        assert first["threshold"] == -np.inf
        assert (first["fpr"], first["tpr"]) == (1.0, 1.0)
        assert last["threshold"] == np.inf
        assert (last["fpr"], last["tpr"]) == (0.0, 0.0)

    def test_one_row_per_distinct_score(self, separated):
        roc = roc_points(*separated)
        finite = roc[np.isfinite(roc["threshold"])]
        assert sorted(finite["threshold"]) == pytest.approx([0.1, 0.2, 0.3, 0.7, 0.8, 0.9])

    def test_ascending_threshold(self, mixed):
        roc = roc_points(*mixed)
        assert roc["threshold"].is_monotonic_increasing
        assert roc["fpr"].is_monotonic_decreasing
        assert roc["tpr"].is_monotonic_decreasing

    def test_single_class_raises(self):
        labels = _series(["affected"] * 4)
        with pytest.raises(InsufficientDataError) as excinfo:
            roc_points(labels, _series([0.1, 0.2, 0.3, 0.4]), cell_type="NK", fold=3)
        assert excinfo.value.fold == 3


class TestThresholdAndMetrics:
    """Operating threshold and confusion metrics."""

    def test_youden_on_perfect_separation(self, separated):
        assert youden_threshold(roc_points(*separated)) == pytest.approx(0.7)

    def test_metrics_at_fixed_threshold(self, mixed):
        metrics = classification_metrics(*mixed, threshold=0.5)

        assert (metrics.tp, metrics.fp, metrics.tn, metrics.fn) == (1, 1, 1, 1)
        assert metrics.sensitivity == pytest.approx(0.5)
        assert metrics.specificity == pytest.approx(0.5)
        assert metrics.precision == pytest.approx(0.5)
        assert metrics.accuracy == pytest.approx(0.5)

    def test_threshold_is_inclusive(self, mixed):
        metrics = classification_metrics(*mixed, threshold=0.9)
        assert metrics.tp == 1

    def test_zero_denominator(self, mixed):
        metrics = classification_metrics(*mixed, threshold=10.0)

        assert metrics.tp + metrics.fp == 0
        assert metrics.precision == 0.0
        assert metrics.specificity == 1.0


class TestValidateFold:
    """End-to-end evaluation of one fold."""

    def test_perfect_separation(self, separated):
        result = validate_fold(*separated, cell_type="NK", fold=1)

        assert result.auc == pytest.approx(1.0)
        assert result.metrics.accuracy == pytest.approx(1.0)
        assert result.n_cells == 6
        assert result.n_positive == 3

    def test_fixed_threshold(self, mixed):
        result = validate_fold(*mixed, threshold=0.5, signature_type="random")

        assert result.signature_type == "random"
        assert result.auc == pytest.approx(0.75)
        assert result.metrics.threshold == 0.5

    def test_record(self, separated):
        record = validate_fold(*separated, cell_type="B", fold=2).to_record()
        assert record["cell_type"] == "B"
        assert record["auc"] == pytest.approx(1.0)

    def test_missing_scores(self, separated):
        labels, scores = separated
        with pytest.raises(ValueError):
            validate_fold(labels, scores.iloc[:-1])

    def test_unknown_threshold_rule(self, separated):
        with pytest.raises(ValueError):
            validate_fold(*separated, threshold="median")


class TestCompareToNull:
    """Real vs random ROC curves."""

    def test_real_dominates_reversed_random(self, separated):
        labels, scores = separated
        real = validate_fold(labels, scores, signature_type="real")
        random = validate_fold(labels, -scores, signature_type="random")

        comparison = compare_to_null(real, random)

        assert comparison["auc_real"] == pytest.approx(1.0)
        assert comparison["auc_random"] == pytest.approx(0.0)
        assert comparison["auc_delta"] == pytest.approx(1.0)
        assert comparison["real_dominates"]
        assert not comparison["real_dominated"]

    def test_reported_not_enforced(self, separated):
        labels, scores = separated
        real = validate_fold(labels, -scores)
        random = validate_fold(labels, scores, signature_type="random")

        comparison = compare_to_null(real, random)
        assert comparison["real_dominated"]
        assert not comparison["real_dominates"]


class TestTimeDependency:
    """Score distributions per elapsed-time category."""

    def test_monotonic_increase(self):
        order = ["0h", "2h", "6h", "24h"]
        time = pd.Series(
            pd.Categorical(np.repeat(order, 5), categories=order, ordered=True),
            index=[f"c{i}" for i in range(20)],
        )
        scores = pd.Series(np.repeat([0.0, 1.0, 2.0, 3.0], 5) + np.tile(np.linspace(-0.1, 0.1, 5), 4),
                           index=time.index)

        result = time_dependency(scores, time)

        assert list(result.summary.index) == order
        assert result.monotonic_mean
        assert result.monotonic_median
        assert result.spearman_rho > 0.9
        assert result.summary.loc["24h", "median"] == pytest.approx(3.0)

    def test_non_monotonic(self):
        order = ["0h", "2h", "6h"]
        time = pd.Series(
            pd.Categorical(np.repeat(order, 3), categories=order, ordered=True),
            index=[f"c{i}" for i in range(9)],
        )
        scores = pd.Series(np.repeat([0.0, 2.0, 1.0], 3), index=time.index)

        result = time_dependency(scores, time)
        assert not result.monotonic_median
