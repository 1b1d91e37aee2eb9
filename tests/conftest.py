"""Shared fixtures: a headless matplotlib backend and seeded data."""

import matplotlib
import numpy as np
import pytest

matplotlib.use("Agg")


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def scenario():
    """Three sources, two targets, all mass sent to the second target."""
    a = np.array([0.5, 0.2, 0.3])
    b = np.array([0.0, 1.0])
    cost = np.array([[0.0, 1.0], [2.0, 0.0], [0.5, 1.5]])
    return a, b, cost


@pytest.fixture
def random_problem(rng):
    """Random normalized histograms and cost matrix, ``n=6``, ``m=5``."""
    a = rng.uniform(0.1, 1.0, size=6)
    b = rng.uniform(0.1, 1.0, size=5)
    cost = rng.uniform(0.0, 1.0, size=(6, 5))
    return a / a.sum(), b / b.sum(), cost


@pytest.fixture
def histograms(rng):
    """Three random normalized histograms on 20 atoms, as columns."""
    A = rng.uniform(0.0, 1.0, size=(20, 3))
    return A / A.sum(axis=0, keepdims=True)


@pytest.fixture
def grid_cost():
    """Squared distances on 20 regularly spaced points of ``[0, 1]``."""
    x = np.linspace(0.0, 1.0, 20)
    return (x[:, None] - x[None, :]) ** 2
