"""Tests for bootstrap weights."""

import numpy as np
import pytest

import symboost as sb


class TestBootstrap:
    """Tests for Bootstrap samplers."""

    def test_no_bootstrap(self):
        weights = sb.Bootstrap("No").bootstrapped_weights(10)

        np.testing.assert_array_equal(weights, np.ones(10))

    def test_bernoulli_is_zero_or_one(self):
        weights = sb.Bootstrap("Bernoulli", sample_rate=0.5, random_state=0).bootstrapped_weights(2000)

        assert set(np.unique(weights)) <= {0.0, 1.0}
        assert 0.4 < weights.mean() < 0.6

    def test_bayesian_positive(self):
        weights = sb.Bootstrap(sb.BootstrapType.BAYESIAN, random_state=0).bootstrapped_weights(2000)

        assert np.all(weights >= 0.0)
        # Exponential(1) mean
        assert 0.9 < weights.mean() < 1.1

    def test_bayesian_zero_temperature(self):
        weights = sb.Bootstrap("Bayesian", bagging_temperature=0.0, random_state=0).bootstrapped_weights(50)

        np.testing.assert_array_equal(weights, np.ones(50))

    def test_reproducible(self):
        a = sb.Bootstrap("Bayesian", random_state=3)
        b = sb.Bootstrap("Bayesian", random_state=3)

        np.testing.assert_array_equal(a.bootstrapped_weights(20), b.bootstrapped_weights(20))
        # The sequence advances
        assert not np.array_equal(a.bootstrapped_weights(20), a.bootstrapped_weights(20))

    @pytest.mark.parametrize("sample_rate", [0.0, 1.5])
    def test_invalid_sample_rate(self, sample_rate):
        with pytest.raises(ValueError, match="sample_rate"):
            sb.Bootstrap("Bernoulli", sample_rate=sample_rate)

    def test_invalid_temperature(self):
        with pytest.raises(ValueError, match="bagging_temperature"):
            sb.Bootstrap("Bayesian", bagging_temperature=-1.0)

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            sb.Bootstrap("Poisson")
