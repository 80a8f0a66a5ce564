"""Tests for TreeUpdater, TensorTracker and leaf bin caching."""

import numpy as np
import pytest

import symboost as sb
from symboost._array import quantize


def _updater(dataset, cache=None):
    leaf_bins = np.zeros(dataset.n_docs, dtype=np.uint32)
    return sb.TreeUpdater(cache or sb.ScopedCache(), dataset.features_manager, dataset, leaf_bins)


def _one_hot_split(dataset, bin_idx):
    fid = int(dataset.binary_features.feature_ids[0])
    return sb.BinarySplit(fid, bin_idx, sb.SplitType.TAKE_BIN)


class TestTreeUpdater:
    """Tests for leaf bin updates."""

    def test_split_sets_depth_bit(self, tiny_dataset):
        updater = _updater(tiny_dataset)

        updater.add_split(_one_hot_split(tiny_dataset, 1))
        np.testing.assert_array_equal(updater.leaf_bins, [0, 0, 1, 1])

        updater.add_split(_one_hot_split(tiny_dataset, 0))
        np.testing.assert_array_equal(updater.leaf_bins, [2, 2, 1, 1])
        assert updater.depth == 2
        assert updater.structure.n_leaves == 4

    def test_packed_split_bits(self, tiny_dataset):
        updater = _updater(tiny_dataset)
        bits = np.packbits(np.array([1, 0, 1, 0], dtype=np.uint8), bitorder="little")

        updater.add_split(_one_hot_split(tiny_dataset, 1), split_bits=bits)

        np.testing.assert_array_equal(updater.leaf_bins, [1, 0, 1, 0])

    def test_leaf_bins_updated_in_place(self, tiny_dataset):
        leaf_bins = np.zeros(4, dtype=np.uint32)
        updater = sb.TreeUpdater(sb.ScopedCache(), tiny_dataset.features_manager, tiny_dataset, leaf_bins)

        updater.add_split(_one_hot_split(tiny_dataset, 1))

        np.testing.assert_array_equal(leaf_bins, [0, 0, 1, 1])

    def test_bin_beyond_borders(self, tiny_dataset):
        updater = _updater(tiny_dataset)

        with pytest.raises(sb.TreeSearchError, match="beyond the borders"):
            updater.add_split(_one_hot_split(tiny_dataset, 2))

    def test_threshold_bin_beyond_borders(self, mixed_dataset):
        updater = _updater(mixed_dataset)
        fid = int(mixed_dataset.features.feature_ids[0])
        n_bins = mixed_dataset.features_manager.get_bin_count(fid)

        with pytest.raises(sb.TreeSearchError):
            updater.add_split(sb.BinarySplit(fid, n_bins - 1))

    def test_feature_not_in_dataset(self, tiny_dataset):
        fid = tiny_dataset.features_manager.register_float_feature([0.5])
        updater = _updater(tiny_dataset)

        with pytest.raises(sb.TreeSearchError, match="not stored"):
            updater.add_split(sb.BinarySplit(fid, 0))

    def test_tree_ctr_bits_recomputed(self, interaction_data):
        X, y = interaction_data
        ds = sb.build_dataset(X, y, cat_features=[0, 1], random_state=0)
        fm = ds.features_manager
        ctr = sb.Ctr(sb.FeatureTensor((0, 1)), fm.tree_ctr_configs[0])
        fid = fm.add_ctr(ctr, [0.5])
        updater = _updater(ds)

        updater.add_split(sb.BinarySplit(fid, 0))

        values = ds.compute_ctr(ctr)
        expected = (quantize(values, np.array([0.5])) > 0)[ds.inverse_indices]
        np.testing.assert_array_equal(updater.leaf_bins, expected.astype(np.uint32))


class TestTensorTracker:
    """Tests for tree CTR candidate tensors."""

    def _manager(self):
        fm = sb.FeaturesManager()
        fm.register_float_feature([0.5])  # id 0
        ctr_id = fm.add_ctr(sb.Ctr(sb.FeatureTensor((0,)), sb.CtrConfig(sb.CtrType.BORDERS)), [0.5])
        return fm, ctr_id

    def test_empty_tree_has_no_candidates(self):
        fm, _ = self._manager()
        tracker = sb.TensorTracker(fm, n_cat_features=3)

        assert list(tracker.candidate_tensors(max_complexity=4)) == []

    def test_ctr_split_adds_its_tensor(self):
        fm, ctr_id = self._manager()
        tracker = sb.TensorTracker(fm, n_cat_features=3)

        tracker.add_split(sb.BinarySplit(ctr_id, 0))

        assert tracker.current == sb.FeatureTensor((0,))
        assert list(tracker.candidate_tensors(max_complexity=4)) == [
            sb.FeatureTensor((0, 1)),
            sb.FeatureTensor((0, 2)),
        ]

    def test_feature_split_adds_split(self):
        fm, _ = self._manager()
        tracker = sb.TensorTracker(fm, n_cat_features=2)
        split = sb.BinarySplit(0, 0)

        tracker.add_split(split)

        assert list(tracker.candidate_tensors(max_complexity=4)) == [
            sb.FeatureTensor((0,), (split,)),
            sb.FeatureTensor((1,), (split,)),
        ]

    def test_complexity_limit(self):
        fm, ctr_id = self._manager()
        tracker = sb.TensorTracker(fm, n_cat_features=3)
        tracker.add_split(sb.BinarySplit(ctr_id, 0))

        assert list(tracker.candidate_tensors(max_complexity=1)) == []

    def test_copy_is_independent(self):
        fm, ctr_id = self._manager()
        tracker = sb.TensorTracker(fm, n_cat_features=3)
        copy = tracker.copy()

        copy.add_split(sb.BinarySplit(ctr_id, 0))

        assert tracker.current.is_empty
        assert not copy.current.is_empty


class TestLeafBinCache:
    """Tests for publishing final leaf bins."""

    def test_cache_and_get(self, tiny_dataset):
        cache = sb.ScopedCache()
        structure = sb.ObliviousTreeStructure([_one_hot_split(tiny_dataset, 1)])
        leaf_bins = np.array([0, 0, 1, 1], dtype=np.uint32)

        sb.cache_bins_for_model(cache, tiny_dataset, structure, leaf_bins)

        np.testing.assert_array_equal(sb.get_cached_leaf_bins(cache, tiny_dataset, structure), leaf_bins)

    def test_other_structure(self, tiny_dataset):
        cache = sb.ScopedCache()
        sb.cache_bins_for_model(
            cache, tiny_dataset, sb.ObliviousTreeStructure([_one_hot_split(tiny_dataset, 1)]),
            np.zeros(4, dtype=np.uint32),
        )

        with pytest.raises(KeyError):
            sb.get_cached_leaf_bins(
                cache, tiny_dataset, sb.ObliviousTreeStructure([_one_hot_split(tiny_dataset, 0)]),
            )

    def test_nothing_cached(self, tiny_dataset):
        with pytest.raises(KeyError):
            sb.get_cached_leaf_bins(sb.ScopedCache(), tiny_dataset, sb.ObliviousTreeStructure())
