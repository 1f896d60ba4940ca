"""Tests for label-balanced fold splitting."""

import numpy as np
import pandas as pd
import pytest

from timescore.exceptions import InvalidInputError
from timescore.splitting import assign_folds, split_folds


class TestSplitFolds:
    """Partitioning properties of split_folds."""

    @pytest.mark.parametrize("n_folds", [2, 3, 5])
    def test_folds_partition_population(self, labels_30, n_folds):
        splits = split_folds(labels_30, n_folds=n_folds, random_state=3)

        assert [s.fold for s in splits] == list(range(1, n_folds + 1))

        test_cells = [cell for s in splits for cell in s.test_index]
        assert len(test_cells) == len(labels_30)
        assert set(test_cells) == set(labels_30.index)

    def test_fold_sizes(self, labels_30):
        splits = split_folds(labels_30, n_folds=3, random_state=0)
        assert [s.n_test for s in splits] == [10, 10, 10]

    def test_last_fold_takes_remainder(self):
        labels = pd.Series(["affected", "unaffected"] * 5 + ["affected"], index=[f"c{i}" for i in range(11)])
        splits = split_folds(labels, n_folds=3, random_state=0)
        assert [s.n_test for s in splits] == [3, 3, 5]

    def test_train_is_complement_of_own_fold(self, labels_30):
        splits = split_folds(labels_30, n_folds=3, random_state=0)
        for split in splits:
            assert set(split.train_index).isdisjoint(split.test_index)
            assert set(split.train_index) | set(split.test_index) == set(labels_30.index)

        # Train sets overlap across folds
        assert set(splits[0].train_index) & set(splits[1].train_index)

    def test_preserves_input_order(self, labels_30):
        splits = split_folds(labels_30, n_folds=3, random_state=0)
        position = {cell: i for i, cell in enumerate(labels_30.index)}
        for split in splits:
            positions = [position[c] for c in split.test_index]
            assert positions == sorted(positions)

    def test_reproducible_with_seed(self, labels_30):
        first = split_folds(labels_30, n_folds=3, random_state=11)
        second = split_folds(labels_30, n_folds=3, random_state=11)
        for a, b in zip(first, second):
            assert list(a.test_index) == list(b.test_index)

    def test_every_fold_holds_minority_label(self, labels_30):
        """With 10/20 labels, every fold usually holds at least 2 affected cells."""
        n_runs = 200
        balanced = 0
        affected_first = []
        affected_last = []
        for seed in range(n_runs):
            splits = split_folds(labels_30, n_folds=3, random_state=seed)
            counts = [int((labels_30[s.test_index] == "affected").sum()) for s in splits]
            balanced += all(c >= 2 for c in counts)
            affected_first.append(counts[0])
            affected_last.append(counts[-1])

        assert balanced / n_runs > 0.95
        # The remainder fold always keeps its share (10 // 3) of the minority label
        assert min(affected_last) >= 3
        # Uniform sampling would give 10/3 affected cells in the first fold
        assert np.mean(affected_first) > 10 / 3

    def test_rare_minority_reaches_last_fold(self):
        labels = pd.Series(
            ["affected"] * 6 + ["unaffected"] * 54,
            index=[f"c{i}" for i in range(60)],
        )
        for seed in range(50):
            splits = split_folds(labels, n_folds=3, random_state=seed)
            counts = [int((labels[s.test_index] == "affected").sum()) for s in splits]
            assert min(counts) >= 1
            assert counts[-1] >= 2
            assert sum(counts) == 6

    def test_single_label_population(self):
        labels = pd.Series(["unaffected"] * 9, index=[f"c{i}" for i in range(9)])
        splits = split_folds(labels, n_folds=3, random_state=0)
        assert sum(s.n_test for s in splits) == 9

    def test_fold_count_exceeds_population(self):
        labels = pd.Series(["affected", "unaffected"], index=["a", "b"])
        with pytest.raises(InvalidInputError) as excinfo:
            split_folds(labels, n_folds=3, cell_type="NK")
        assert excinfo.value.cell_type == "NK"
        assert "NK" in str(excinfo.value)

    def test_empty_population(self):
        with pytest.raises(InvalidInputError):
            split_folds(pd.Series([], dtype=object), n_folds=3)

    def test_single_fold_rejected(self, labels_30):
        with pytest.raises(InvalidInputError):
            split_folds(labels_30, n_folds=1)


class TestAssignFolds:
    """Fold tags per cell."""

    def test_tags_cover_all_cells(self, labels_30):
        tags = assign_folds(labels_30, n_folds=3, random_state=0)

        assert tags.index.equals(labels_30.index)
        assert set(np.unique(tags)) == {1, 2, 3}
        assert tags.value_counts().sort_index().tolist() == [10, 10, 10]
