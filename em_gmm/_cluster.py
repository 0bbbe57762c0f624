# em_gmm/_cluster.py
from __future__ import annotations

import math
from typing import Optional

import torch

from em_gmm._exceptions import InvalidModelError
from em_gmm._gaussian import MultivariateGaussian


class Cluster:
    """One weighted Gaussian of the mixture."""

    def __init__(self, weight: float, mean, covariance, dtype: Optional[torch.dtype] = None, device=None) -> None:
        self.weight = float(weight)
        self.gaussian = MultivariateGaussian(mean, covariance, dtype=dtype, device=device)

    @classmethod
    def from_gaussian(cls, weight: float, gaussian: MultivariateGaussian) -> "Cluster":
        cluster = cls.__new__(cls)
        cluster.weight = float(weight)
        cluster.gaussian = gaussian
        return cluster

    def density(self, X: torch.Tensor) -> torch.Tensor:
        """Weighted density weight * N(x | mean, cov) for every row of X."""
        return self.weight * self.gaussian.density(X)

    def probability(self, point) -> float:
        return self.weight * self.gaussian.probability(point)

    def to_dict(self) -> dict:
        return {"weight": self.weight, "gaussian": self.gaussian.to_dict()}

    @classmethod
    def from_dict(cls, data: dict, dtype: torch.dtype = torch.float64, device=None) -> "Cluster":
        weight = float(data["weight"])
        if not (math.isfinite(weight) and weight >= 0.0):
            raise InvalidModelError(f"cluster weight must be a non-negative number, got {weight!r}")
        return cls.from_gaussian(weight, MultivariateGaussian.from_dict(data["gaussian"], dtype=dtype, device=device))

    def __repr__(self) -> str:
        return f"Cluster(weight={self.weight:.6g}, gaussian={self.gaussian!r})"
