"""Tests for building binarized data sets."""

import numpy as np
import pytest

import symboost as sb


class TestBuildDataset:
    """Tests for build_dataset() feature families."""

    def test_families(self, mixed_dataset):
        fm = mixed_dataset.features_manager

        # Column 0 (many values) is the only multi-bin feature
        assert [fm.get_source(int(f)) for f in mixed_dataset.features.feature_ids] == [0]
        # Column 1 (two float values) and column 3 (two categories)
        assert [fm.get_source(int(f)) for f in mixed_dataset.binary_features.feature_ids] == [1, 3]
        # Column 2 feeds ctrs
        assert mixed_dataset.n_cat_features == 1
        assert mixed_dataset.target_ctrs.n_features >= 1

    def test_one_hot_features_take_bin(self, mixed_dataset):
        fm = mixed_dataset.features_manager
        binary = mixed_dataset.binary_features

        for fid, take_bin in zip(binary.feature_ids, binary.take_bin):
            assert take_bin == fm.is_cat(int(fid))

    def test_target_ctrs_are_permuted(self, mixed_dataset):
        assert mixed_dataset.target_ctrs.permuted
        assert not mixed_dataset.features.permuted

    def test_inverse_indices(self, mixed_dataset):
        indices = mixed_dataset.indices

        np.testing.assert_array_equal(
            mixed_dataset.inverse_indices[indices], np.arange(mixed_dataset.n_docs)
        )

    def test_one_hot_multi_value(self):
        X = np.array([[0.0], [1.0], [2.0], [1.0]])
        ds = sb.build_dataset(
            X, cat_features=[0], options=sb.FeatureManagerOptions(one_hot_max_size=4),
        )

        assert ds.features.n_features == 1
        assert ds.features.take_bin[0]
        assert ds.features_manager.is_cat(int(ds.features.feature_ids[0]))
        np.testing.assert_array_equal(ds.features.data[0], [0, 1, 2, 1])

    def test_constant_columns_skipped(self):
        X = np.column_stack([np.ones(10), np.arange(10.0)])

        ds = sb.build_dataset(X)

        assert ds.features_manager.n_features == 1

    def test_nan_rejected(self):
        X = np.array([[1.0], [np.nan]])

        with pytest.raises(ValueError, match="NaN"):
            sb.build_dataset(X)

    def test_bad_shape(self):
        with pytest.raises(ValueError, match="must be 2D"):
            sb.build_dataset(np.arange(5.0))

    def test_cat_index_out_of_range(self):
        with pytest.raises(ValueError, match="out of range"):
            sb.build_dataset(np.zeros((3, 2)), cat_features=[2])

    def test_target_length_mismatch(self):
        with pytest.raises(ValueError, match="samples"):
            sb.build_dataset(np.zeros((3, 1)), np.zeros(4))

    def test_permutation_count(self, mixed_data):
        X, y = mixed_data
        ds = sb.build_dataset(
            X, y, cat_features=[2, 3],
            options=sb.FeatureManagerOptions(permutation_count=3), random_state=0,
        )

        assert ds.n_permutations == 3
        for p in range(3):
            assert sorted(ds.get_permutation(p).tolist()) == list(range(ds.n_docs))

    def test_reproducible(self, mixed_data):
        X, y = mixed_data
        a = sb.build_dataset(X, y, cat_features=[2, 3], random_state=7)
        b = sb.build_dataset(X, y, cat_features=[2, 3], random_state=7)

        np.testing.assert_array_equal(a.indices, b.indices)
        np.testing.assert_array_equal(a.target_ctrs.data, b.target_ctrs.data)


class TestSplitBits:
    """Tests for per-document split decisions."""

    def test_float_feature_bits(self, mixed_data, mixed_dataset):
        X, _ = mixed_data
        fm = mixed_dataset.features_manager
        fid = int(mixed_dataset.features.feature_ids[0])
        borders = fm.get_borders(fid)

        bits = mixed_dataset.compute_split_bits(sb.BinarySplit(fid, 2))

        np.testing.assert_array_equal(bits, X[:, 0] > borders[2])

    def test_target_ctr_bits_in_document_order(self, mixed_dataset):
        fid = int(mixed_dataset.target_ctrs.feature_ids[0])
        fm = mixed_dataset.features_manager
        ctr = fm.get_ctr(fid)

        values = mixed_dataset.compute_ctr(ctr)  # permutation order
        expected = values[mixed_dataset.inverse_indices] > fm.get_borders(fid)[0]

        np.testing.assert_array_equal(mixed_dataset.compute_split_bits(sb.BinarySplit(fid, 0)), expected)

    def test_unknown_feature(self, mixed_dataset):
        with pytest.raises(KeyError):
            mixed_dataset.compute_split_bits(sb.BinarySplit(999, 0))


class TestTensorKeys:
    """Tests for dense keys of feature combinations."""

    def test_combination_keys(self, interaction_data):
        X, y = interaction_data
        ds = sb.build_dataset(X, y, cat_features=[0, 1], random_state=0)

        keys, n_keys = ds.tensor_keys(sb.FeatureTensor((0, 1)))

        assert n_keys == 16
        combos = X[:, 0] * 4 + X[:, 1]
        # Same key iff same combination
        for key in range(n_keys):
            assert len(np.unique(combos[keys == key])) == 1

    def test_split_in_tensor(self, interaction_data):
        X, y = interaction_data
        ds = sb.build_dataset(X, y, cat_features=[0, 1], random_state=0)
        fid = int(ds.target_ctrs.feature_ids[0])

        keys, n_keys = ds.tensor_keys(sb.FeatureTensor((0,), (sb.BinarySplit(fid, 0),)))

        assert n_keys <= 8
        assert keys.shape == (ds.n_docs,)
