"""Tests for categorical target statistics."""

import numpy as np
import pytest

import symboost as sb
from symboost._ctr import compute_ctr_values


class TestFeatureTensor:
    """Tests for FeatureTensor."""

    def test_cat_features_sorted_and_unique(self):
        tensor = sb.FeatureTensor().add_cat_feature(3).add_cat_feature(1).add_cat_feature(3)

        assert tensor.cat_features == (1, 3)

    def test_equal_sets_are_equal(self):
        a = sb.FeatureTensor().add_cat_feature(0).add_split(sb.BinarySplit(5, 2))
        b = sb.FeatureTensor().add_split(sb.BinarySplit(5, 2)).add_cat_feature(0)

        assert a == b
        assert hash(a) == hash(b)
        assert a.stable_hash() == b.stable_hash()

    def test_stable_hash_differs(self):
        a = sb.FeatureTensor((0,))
        b = sb.FeatureTensor((1,))

        assert a.stable_hash() != b.stable_hash()

    def test_add_tensor(self):
        a = sb.FeatureTensor((0,), (sb.BinarySplit(4, 1),))
        b = sb.FeatureTensor((2,), (sb.BinarySplit(3, 0),))

        merged = a.add_tensor(b)

        assert merged.cat_features == (0, 2)
        assert merged.splits == (sb.BinarySplit(3, 0), sb.BinarySplit(4, 1))
        assert merged.complexity == 4

    def test_simple_tensor(self):
        assert sb.FeatureTensor((0,)).is_simple
        assert not sb.FeatureTensor((0, 1)).is_simple
        assert not sb.FeatureTensor((0,), (sb.BinarySplit(1, 0),)).is_simple
        assert sb.FeatureTensor().is_empty


class TestTargetClassifier:
    """Tests for target binarization."""

    def test_binary_target(self):
        classifier = sb.TargetClassifier.from_target(np.array([1.0, 1.0, -1.0, -1.0]), border_count=1)

        assert classifier.classes_count == 2
        np.testing.assert_array_equal(
            classifier.get_target_classes(np.array([-1.0, 1.0])), [0, 1]
        )
        assert classifier.get_target_class(1.0) == 1

    def test_class_includes_upper_border(self):
        classifier = sb.TargetClassifier([0.0, 1.0])

        assert classifier.get_target_class(0.0) == 0
        assert classifier.get_target_class(0.5) == 1
        assert classifier.get_target_class(2.0) == 2

    def test_no_borders_single_class(self):
        classifier = sb.TargetClassifier.from_target(np.arange(10.0), border_count=0)

        assert classifier.classes_count == 1

    def test_equality(self):
        assert sb.TargetClassifier([0.5]) == sb.TargetClassifier([0.5])
        assert sb.TargetClassifier([0.5]) != sb.TargetClassifier([1.5])


class TestCtrValues:
    """Tests for ordered CTR values."""

    def test_borders_ctr(self):
        keys = np.array([0, 0, 0])
        classes = np.array([1, 0, 1])
        config = sb.CtrConfig(sb.CtrType.BORDERS, prior_num=0.5, prior_denom=1.0)

        values = compute_ctr_values(keys, classes, config, n_keys=1, n_classes=2)

        np.testing.assert_array_almost_equal(values, [0.5, 0.75, 0.5])

    def test_buckets_ctr(self):
        keys = np.array([0, 0, 0])
        classes = np.array([1, 0, 1])
        config = sb.CtrConfig(sb.CtrType.BUCKETS, prior_num=0.5, prior_denom=1.0, param_id=0)

        values = compute_ctr_values(keys, classes, config, n_keys=1, n_classes=2)

        np.testing.assert_array_almost_equal(values, [0.5, 0.25, 0.5])

    def test_feature_freq_ctr(self):
        keys = np.array([0, 0, 1])
        config = sb.CtrConfig(sb.CtrType.FEATURE_FREQ, prior_num=0.5, prior_denom=1.0)

        values = compute_ctr_values(keys, np.zeros(3, dtype=np.int64), config, n_keys=2, n_classes=1)

        np.testing.assert_array_almost_equal(values, [0.625, 0.625, 0.375])

    def test_keys_are_independent(self):
        keys = np.array([0, 1, 0, 1])
        classes = np.array([1, 1, 0, 0])
        config = sb.CtrConfig(sb.CtrType.BORDERS)

        values = compute_ctr_values(keys, classes, config, n_keys=2, n_classes=2)

        # Each key has seen one positive before its second row
        np.testing.assert_array_almost_equal(values, [0.5, 0.5, 0.75, 0.75])

    @pytest.mark.parametrize("ctr_type", [sb.CtrType.BORDERS, sb.CtrType.BUCKETS])
    def test_no_target_leakage(self, ctr_type):
        """A row's value only depends on earlier rows."""
        rng = np.random.default_rng(0)
        keys = rng.integers(0, 5, size=100)
        classes = rng.integers(0, 2, size=100)
        config = sb.CtrConfig(ctr_type)

        base = compute_ctr_values(keys, classes, config, n_keys=5, n_classes=2)
        for row in (0, 17, 99):
            flipped = classes.copy()
            flipped[row] = 1 - flipped[row]
            changed = compute_ctr_values(keys, flipped, config, n_keys=5, n_classes=2)

            np.testing.assert_array_equal(changed[: row + 1], base[: row + 1])
