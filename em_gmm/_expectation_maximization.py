# em_gmm/_expectation_maximization.py
"""Gaussian Mixture Model fitted by Expectation-Maximization, in PyTorch.

Training starts from a (K, N) responsibility matrix of independent uniform
draws and alternates:

- maximization: responsibilities -> K new clusters (weight, mean, covariance)
- expectation:  clusters -> a fresh (K, N) responsibility matrix

until max |new_resp - old_resp| <= epsilon or max_iter is reached. Each
iteration builds new cluster and responsibility objects; nothing is updated
in place across iterations.

Numerical safeguards, all driven by the single `epsilon` constant:
- a cluster whose total responsibility falls below epsilon has its row
  replaced by epsilon (it is re-inflated, never dropped)
- every covariance starts from epsilon * I before the weighted outer products
  are accumulated
- a singular covariance yields a degenerate Gaussian with density 0
  (see `em_gmm._gaussian`)
- a point with zero density under every cluster gets uniform 1/K
  responsibilities

Running out of iterations is not an error: the last clusters are kept and
`converged_` is False.

Exposed attributes after `train`:
- clusters_ (list of `Cluster`)
- converged_, n_iter_

Notes:
- Cluster order depends on the random initialization. It is stable within one
  engine (and across save/load) but not across training runs.
- N >= n_clusters is assumed; fewer points than clusters is not rejected but
  the fit is meaningless.
"""

from __future__ import annotations

import logging
import math
import numbers
from collections.abc import Mapping
from typing import List, Optional

import numpy as np
import torch
from sklearn.utils.validation import check_array

from em_gmm._cluster import Cluster
from em_gmm._exceptions import InvalidModelError, NotFittedError

logger = logging.getLogger(__name__)

MODEL_TAG = "em-gmm"
MODEL_VERSION = 1

DEFAULT_EPSILON = 2e-16
DEFAULT_N_CLUSTERS = 2
DEFAULT_MAX_ITER = 1000


# ---------------------------
# EM steps
# ---------------------------

def _maximization_step(X: torch.Tensor, resp: torch.Tensor, epsilon: float) -> List[Cluster]:
    """M-step: responsibilities (K,N) -> K clusters.

    The first call receives raw uniform draws whose columns do not sum to 1;
    weights are normalized by the total mass of the matrix so they still sum
    to 1.
    """
    K, N = resp.shape
    N2, D = X.shape
    assert N == N2

    total = resp.sum()
    nk = resp.sum(dim=1)  # (K,)

    # Starved clusters: every entry of the row becomes epsilon
    starved = nk < epsilon
    if starved.any():
        logger.debug("Re-inflating %d starved cluster(s)", int(starved.sum()))
        resp = torch.where(starved.unsqueeze(1), torch.full_like(resp, epsilon), resp)
        nk = torch.where(starved, torch.full_like(nk, N * epsilon), nk)

    weights = nk / total  # (K,)
    means = (resp @ X) / nk.unsqueeze(1)  # (K,D)

    diff = X.unsqueeze(0) - means.unsqueeze(1)  # (K,N,D)
    scaled = resp / nk.unsqueeze(1)  # (K,N)

    # cov[k] = eps * I + sum_n scaled[k,n] * diff[k,n,:]^T diff[k,n,:]
    # Only the lower triangle is kept and mirrored so every cov[k] is exactly symmetric.
    lower = torch.tril(torch.einsum("kn,knd,kne->kde", scaled, diff, diff))  # (K,D,D)
    diag = torch.diag_embed(torch.diagonal(lower, dim1=-2, dim2=-1))
    eye = torch.eye(D, device=X.device, dtype=X.dtype)
    cov = epsilon * eye.unsqueeze(0) + lower + lower.transpose(-1, -2) - diag

    return [Cluster(float(weights[k]), means[k], cov[k]) for k in range(K)]


def _weighted_densities(X: torch.Tensor, clusters: List[Cluster]) -> torch.Tensor:
    """weight_k * N(x_n | mean_k, cov_k) as a (K,N) matrix."""
    return torch.stack([cluster.density(X) for cluster in clusters], dim=0)


def _expectation_step(X: torch.Tensor, clusters: List[Cluster]) -> torch.Tensor:
    """E-step: clusters -> responsibilities (K,N), every column summing to 1."""
    K = len(clusters)
    probs = _weighted_densities(X, clusters)  # (K,N)
    total = probs.sum(dim=0)  # (N,)

    # Points no cluster explains get 1/K everywhere
    explained = total > 0
    safe_total = torch.where(explained, total, torch.ones_like(total))
    uniform = torch.full_like(probs, 1.0 / K)
    return torch.where(explained.unsqueeze(0), probs / safe_total.unsqueeze(0), uniform)


def _responsibility_delta(new_resp: torch.Tensor, old_resp: torch.Tensor) -> float:
    return float(torch.max(torch.abs(new_resp - old_resp)))


# ---------------------------
# Model wrapper
# ---------------------------

class ExpectationMaximization:
    """EM clustering with a mixture of full-covariance Gaussians.

    Args:
      epsilon: convergence threshold on responsibilities, also the floor for
        starved clusters and the diagonal added to every covariance.
      n_clusters: number of mixture components K.
      max_iter: iteration budget.
      seed: seed for the initial responsibilities. None draws a fresh seed,
        so runs are not reproducible.
      dtype/device: where features and parameters live.
    """

    def __init__(
        self,
        epsilon: float = DEFAULT_EPSILON,
        n_clusters: int = DEFAULT_N_CLUSTERS,
        max_iter: int = DEFAULT_MAX_ITER,
        seed: Optional[int] = None,
        dtype: torch.dtype = torch.float64,
        device=None,
    ) -> None:
        if not isinstance(n_clusters, numbers.Integral) or isinstance(n_clusters, bool) or n_clusters <= 0:
            raise ValueError("n_clusters must be a positive integer")
        if not isinstance(epsilon, numbers.Real) or not (0 < epsilon < math.inf):
            raise ValueError("epsilon must be a positive finite number")
        if not isinstance(max_iter, numbers.Integral) or isinstance(max_iter, bool) or max_iter <= 0:
            raise ValueError("max_iter must be a positive integer")
        if seed is not None and (not isinstance(seed, numbers.Integral) or isinstance(seed, bool)):
            raise ValueError("seed must be an integer or None")

        self.epsilon = float(epsilon)
        self.n_clusters = int(n_clusters)
        self.max_iter = int(max_iter)
        self.seed = None if seed is None else int(seed)
        self.dtype = dtype
        self.device = device

        self.clusters_: Optional[List[Cluster]] = None
        self.converged_: bool = False
        self.n_iter_: int = 0

    def _check_features(self, features) -> torch.Tensor:
        """Coerce any 2-D array-like of finite numbers into an (N,D) tensor."""
        if isinstance(features, torch.Tensor):
            features = features.detach().cpu().numpy()
        X = check_array(features, dtype=np.float64)
        return torch.as_tensor(X, device=self.device).to(self.dtype)

    def _make_generator(self) -> torch.Generator:
        generator = torch.Generator()
        if self.seed is None:
            generator.seed()
        else:
            generator.manual_seed(self.seed)
        return generator

    def _fitted_clusters(self) -> List[Cluster]:
        if self.clusters_ is None:
            raise NotFittedError("Model is not fitted yet.")
        return self.clusters_

    def _check_dimension(self, X: torch.Tensor) -> None:
        D = self._fitted_clusters()[0].gaussian.dimension
        if X.shape[1] != D:
            raise ValueError(f"features must have {D} columns, got {X.shape[1]}")

    # -----------------------
    # Public API
    # -----------------------

    @torch.no_grad()
    def train(self, features, generator: Optional[torch.Generator] = None) -> "ExpectationMaximization":
        """Fit the mixture to an (N,D) feature matrix.

        `generator` supplies the uniform draws of the initial responsibilities.
        When omitted, one is built from `seed`.
        """
        X = self._check_features(features)
        N, D = X.shape
        K = self.n_clusters

        if generator is None:
            generator = self._make_generator()
        resp = torch.rand((K, N), generator=generator, dtype=self.dtype, device=generator.device).to(X.device)

        clusters: List[Cluster] = []
        converged = False
        n_iter = 0
        for it in range(self.max_iter):
            clusters = _maximization_step(X, resp, self.epsilon)
            new_resp = _expectation_step(X, clusters)
            delta = _responsibility_delta(new_resp, resp)
            resp = new_resp
            n_iter = it + 1

            logger.debug("iteration %d: delta=%.3e", n_iter, delta)
            if delta <= self.epsilon:
                converged = True
                break

        if converged:
            logger.info("EM converged after %d iterations (N=%d, D=%d, K=%d)", n_iter, N, D, K)
        else:
            logger.info("EM stopped at max_iter=%d without converging (N=%d, D=%d, K=%d)", n_iter, N, D, K)

        self.clusters_ = clusters
        self.converged_ = converged
        self.n_iter_ = n_iter
        return self

    @torch.no_grad()
    def predict(self, features) -> torch.Tensor:
        """Index of the most probable cluster for every row (N,).

        Ties go to the lowest index, so a point with zero density everywhere
        is labelled 0.
        """
        clusters = self._fitted_clusters()
        X = self._check_features(features)
        self._check_dimension(X)
        return torch.argmax(_weighted_densities(X, clusters), dim=0)

    @torch.no_grad()
    def predict_proba(self, features) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        clusters = self._fitted_clusters()
        X = self._check_features(features)
        self._check_dimension(X)
        return _expectation_step(X, clusters).T

    def get_cluster_data(self) -> List[dict]:
        """Weight, mean, covariance and prediction label of every cluster.

        `prediction` is the label `predict` returns for points assigned to the
        cluster.
        """
        return [
            {
                "weight": cluster.weight,
                "mean": cluster.gaussian.mean.clone(),
                "covariance": cluster.gaussian.covariance.clone(),
                "prediction": k,
            }
            for k, cluster in enumerate(self._fitted_clusters())
        ]

    # -----------------------
    # Save / load
    # -----------------------

    def to_dict(self) -> dict:
        """Plain, JSON-ready structure describing the fitted model."""
        return {
            "model": MODEL_TAG,
            "version": MODEL_VERSION,
            "epsilon": self.epsilon,
            "n_clusters": self.n_clusters,
            "max_iter": self.max_iter,
            "seed": self.seed,
            "converged": self.converged_,
            "n_iter": self.n_iter_,
            "clusters": [cluster.to_dict() for cluster in self._fitted_clusters()],
        }

    @classmethod
    def load(cls, model, dtype: torch.dtype = torch.float64, device=None) -> "ExpectationMaximization":
        """Rebuild a fitted engine from `to_dict` output without running EM."""
        if not isinstance(model, Mapping) or model.get("model") != MODEL_TAG:
            tag = model.get("model") if isinstance(model, Mapping) else type(model).__name__
            raise InvalidModelError(f"invalid model: expected {MODEL_TAG!r}, got {tag!r}")
        if model.get("version") != MODEL_VERSION:
            raise InvalidModelError(f"unsupported model version {model.get('version')!r}")

        try:
            engine = cls(
                epsilon=model["epsilon"],
                n_clusters=model["n_clusters"],
                max_iter=model["max_iter"],
                seed=model.get("seed"),
                dtype=dtype,
                device=device,
            )
            clusters = [Cluster.from_dict(data, dtype=dtype, device=device) for data in model["clusters"]]
        except InvalidModelError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidModelError(f"invalid model: {exc}") from exc

        if len(clusters) != engine.n_clusters:
            raise InvalidModelError(f"expected {engine.n_clusters} clusters, got {len(clusters)}")
        if len({cluster.gaussian.dimension for cluster in clusters}) != 1:
            raise InvalidModelError("clusters have different dimensions")

        engine.clusters_ = clusters
        engine.converged_ = bool(model.get("converged", False))
        engine.n_iter_ = int(model.get("n_iter", 0))
        return engine
