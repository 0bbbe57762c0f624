# tests/test_em_steps.py
import numpy as np
import pytest
import torch

from em_gmm._cluster import Cluster
from em_gmm._expectation_maximization import (
    _expectation_step,
    _maximization_step,
    _responsibility_delta,
)

EPS = 2e-16


def _random_seed():
    """Generate a random seed between 1 and 1000."""
    return np.random.default_rng().integers(1, 1001)


def _random_clusters(rng, K, D):
    weights = rng.rand(K)
    weights /= weights.sum()
    clusters = []
    for k in range(K):
        A = rng.randn(D, D)
        clusters.append(Cluster(weights[k], rng.rand(D) * 10.0, A @ A.T + np.eye(D)))
    return clusters


def _loop_maximization(X, resp, epsilon):
    """Point-by-point M-step used as a reference for the vectorized one."""
    K, N = resp.shape
    D = X.shape[1]
    total = resp.sum()
    out = []
    for k in range(K):
        r = resp[k].copy()
        s = r.sum()
        if s < epsilon:
            r[:] = epsilon
            s = N * epsilon
        mean = (r @ X) / s
        cov = epsilon * np.eye(D)
        for n in range(N):
            diff = X[n] - mean
            coeff = r[n] / s
            for a in range(D):
                for b in range(a + 1):
                    tmp = coeff * diff[a] * diff[b]
                    cov[a, b] += tmp
                    if a != b:
                        cov[b, a] += tmp
        out.append((s / total, mean, cov))
    return out


@pytest.mark.parametrize("K", [1, 2, 3, 5])
def test_responsibilities_sum_to_one(K):
    rng = np.random.RandomState(_random_seed())
    clusters = _random_clusters(rng, K, 3)
    X = torch.from_numpy(rng.rand(50, 3) * 10.0)

    resp = _expectation_step(X, clusters)

    assert resp.shape == (K, 50)
    assert torch.isfinite(resp).all()
    assert torch.allclose(resp.sum(dim=0), torch.ones(50, dtype=torch.float64), atol=1e-12)


def test_zero_density_everywhere_falls_back_to_uniform():
    singular = [[1.0, 1.0], [1.0, 1.0]]
    clusters = [Cluster(0.2, [0.0, 0.0], singular), Cluster(0.3, [1.0, 1.0], singular), Cluster(0.5, [2.0, 2.0], singular)]
    X = torch.tensor([[0.0, 0.0], [5.0, -1.0]], dtype=torch.float64)

    resp = _expectation_step(X, clusters)

    assert torch.allclose(resp, torch.full((3, 2), 1.0 / 3, dtype=torch.float64))


def test_point_far_from_every_cluster_falls_back_to_uniform():
    identity = [[1.0, 0.0], [0.0, 1.0]]
    clusters = [Cluster(0.5, [0.0, 0.0], identity), Cluster(0.5, [1.0, 0.0], identity)]
    X = torch.tensor([[0.2, 0.1], [1e4, 1e4]], dtype=torch.float64)

    resp = _expectation_step(X, clusters)

    assert resp[0, 0] > resp[1, 0]
    assert torch.allclose(resp[:, 1], torch.tensor([0.5, 0.5], dtype=torch.float64))


@pytest.mark.parametrize("normalized", [False, True])
def test_weights_sum_to_one(normalized):
    rng = np.random.RandomState(_random_seed())
    X = torch.from_numpy(rng.randn(40, 2))
    resp = torch.from_numpy(rng.rand(3, 40))
    if normalized:
        resp = resp / resp.sum(dim=0, keepdim=True)

    clusters = _maximization_step(X, resp, EPS)

    assert len(clusters) == 3
    assert sum(c.weight for c in clusters) == pytest.approx(1.0, abs=1e-12)


def test_maximization_matches_loop_reference():
    rng = np.random.RandomState(_random_seed())
    X_np = rng.randn(30, 3) * 2.0
    resp_np = rng.rand(2, 30)

    clusters = _maximization_step(torch.from_numpy(X_np), torch.from_numpy(resp_np), EPS)
    expected = _loop_maximization(X_np, resp_np, EPS)

    for cluster, (weight, mean, cov) in zip(clusters, expected):
        assert cluster.weight == pytest.approx(weight, rel=1e-12)
        assert np.allclose(cluster.gaussian.mean.numpy(), mean, rtol=1e-10, atol=1e-12)
        assert np.allclose(cluster.gaussian.covariance.numpy(), cov, rtol=1e-10, atol=1e-12)


def test_covariance_is_exactly_symmetric():
    rng = np.random.RandomState(_random_seed())
    X = torch.from_numpy(rng.randn(100, 4) * 3.0)
    resp = torch.from_numpy(rng.rand(3, 100))

    for cluster in _maximization_step(X, resp, EPS):
        cov = cluster.gaussian.covariance
        assert torch.equal(cov, cov.T)


def test_starved_cluster_is_reinflated():
    rng = np.random.RandomState(_random_seed())
    X = torch.from_numpy(rng.randn(20, 2))
    resp = torch.zeros(2, 20, dtype=torch.float64)
    resp[0] = torch.from_numpy(rng.rand(20))

    clusters = _maximization_step(X, resp, 1e-6)

    starved = clusters[1]
    assert starved.weight == pytest.approx(20 * 1e-6 / float(resp.sum()))
    assert torch.allclose(starved.gaussian.mean, X.mean(dim=0))
    assert not starved.gaussian.degenerate


def test_identical_samples_keep_epsilon_floor():
    X = torch.full((50, 2), 5.0, dtype=torch.float64)
    resp = torch.from_numpy(np.random.RandomState(0).rand(2, 50))

    clusters = _maximization_step(X, resp, 1e-3)

    for cluster in clusters:
        assert torch.allclose(cluster.gaussian.mean, torch.tensor([5.0, 5.0], dtype=torch.float64))
        assert torch.allclose(cluster.gaussian.covariance, 1e-3 * torch.eye(2, dtype=torch.float64))
        assert cluster.gaussian.coefficient > 0


def test_collinear_points_do_not_produce_nan():
    X = torch.tensor([[241.0, 253.0], [1240.0, 214.0]], dtype=torch.float64)
    resp = torch.tensor([[0.3, 0.9], [0.6, 0.2]], dtype=torch.float64)

    clusters = _maximization_step(X, resp, EPS)
    new_resp = _expectation_step(X, clusters)

    assert torch.isfinite(new_resp).all()
    assert torch.allclose(new_resp.sum(dim=0), torch.ones(2, dtype=torch.float64))


def test_responsibility_delta():
    old = torch.tensor([[0.2, 0.5], [0.8, 0.5]], dtype=torch.float64)
    new = torch.tensor([[0.25, 0.1], [0.75, 0.9]], dtype=torch.float64)

    assert _responsibility_delta(new, old) == pytest.approx(0.4)
    assert _responsibility_delta(old, old) == 0.0
