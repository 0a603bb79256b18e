"""Pytest configuration."""

import numpy as np
import pytest

from bartmcmc import DataTrain, Forest, SyntheticData
from bartree import BartOptions


@pytest.fixture
def rng(request):
    """Return a deterministic per-test-case random generator."""
    seed = np.array([request.node.nodeid], np.bytes_).view(np.uint8)
    return np.random.default_rng(seed)


@pytest.fixture
def data():
    """Small training set with a linear response and three predictors."""
    (y, X), _ = SyntheticData(N_train=40, N_test=0, seed=20).linear(p=3)
    return DataTrain(y, X)


@pytest.fixture
def forest(data, rng):
    """Single-tree ensemble on `data`, quiet."""
    options = BartOptions(num_trees=1, burn_in=0, num_draws=1, verbose=False)
    return Forest(options, data, data.X, rng)
