# tests/conftest.py
import sys
import os

# Add parent directory to path so we can import em_gmm without installing it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np
import pytest


class TwoClusterData:
    """Two well separated 2-D clusters.

    Each point is its group mean plus the sum of 10 uniform(-0.5, 0.5) draws
    per coordinate (variance ~0.83).
    """

    weights = np.array([0.3, 0.7])
    means = np.array([[5.0, 5.0], [0.0, 1.0]])

    def __init__(self, rng, n_samples=500):
        labels = np.where(rng.rand(n_samples) < self.weights[0], 0, 1)
        noise = (rng.rand(n_samples, 10, 2) - 0.5).sum(axis=1)
        self.labels = labels
        self.X = self.means[labels] + noise


@pytest.fixture
def two_cluster_data():
    return TwoClusterData(np.random.RandomState(42))
