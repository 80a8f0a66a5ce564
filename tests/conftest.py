"""Shared fixtures for SymBoost tests."""

import numpy as np
import pytest

import symboost as sb


def make_mixed_data(n_samples=300, seed=0):
    """Float, binary and categorical columns with a target driven by all of them.

    Columns:
        0: float, many values
        1: float, two values (binary family)
        2: categorical, 6 values (CTR base feature)
        3: categorical, 2 values (one-hot, binary family)
    """
    rng = np.random.default_rng(seed)
    x0 = rng.normal(size=n_samples)
    x1 = rng.integers(0, 2, size=n_samples).astype(np.float64)
    x2 = rng.integers(0, 6, size=n_samples).astype(np.float64)
    x3 = rng.integers(0, 2, size=n_samples).astype(np.float64)
    X = np.column_stack([x0, x1, x2, x3])
    y = 2.0 * x0 + x1 + np.where(x2 % 2 == 0, 1.5, -1.5) + 0.5 * x3 + 0.1 * rng.normal(size=n_samples)
    return X, y


def make_interaction_data(n_samples=400, seed=0):
    """Two categorical columns whose combination (parity) decides the target."""
    rng = np.random.default_rng(seed)
    c0 = rng.integers(0, 4, size=n_samples)
    c1 = rng.integers(0, 4, size=n_samples)
    X = np.column_stack([c0, c1]).astype(np.float64)
    y = np.where((c0 + c1) % 2 == 0, 1.0, -1.0)
    return X, y


@pytest.fixture
def mixed_data():
    return make_mixed_data()


@pytest.fixture
def mixed_dataset(mixed_data):
    X, y = mixed_data
    return sb.build_dataset(X, y, cat_features=[2, 3], random_state=0)


@pytest.fixture
def context():
    with sb.ComputeContext(n_devices=1) as ctx:
        yield ctx


@pytest.fixture
def tiny_dataset():
    """4 documents, one two-valued categorical feature."""
    X = np.array([[0.0], [0.0], [1.0], [1.0]])
    y = np.array([1.0, 1.0, -1.0, -1.0])
    return sb.build_dataset(X, y, cat_features=[0], random_state=0)


@pytest.fixture
def interaction_data():
    return make_interaction_data()
