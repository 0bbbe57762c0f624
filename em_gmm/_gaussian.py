# em_gmm/_gaussian.py
"""Multivariate Gaussian density used by the EM clusters.

The inverse covariance and the normalization coefficient are computed once at
construction. A covariance that cannot be inverted, has a condition number
beyond what the dtype can resolve, or whose determinant is not finite and strictly positive, produces
a *degenerate* model: zero inverse,
zero coefficient, density 0 everywhere. Singular covariances are a normal
transient state of early EM iterations (a cluster collapsing onto a few
points), so this is never reported as an error.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import torch

from em_gmm._exceptions import InvalidModelError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CovarianceInverse:
    determinant: float
    inverse: torch.Tensor


def _numerically_singular(covariance: torch.Tensor) -> bool:
    """cond(covariance) * eps >= 1: the smallest singular value is lost to rounding."""
    condition = float(torch.linalg.cond(covariance))
    return not math.isfinite(condition) or condition * torch.finfo(covariance.dtype).eps >= 1.0


def _invert_covariance(covariance: torch.Tensor) -> Optional[CovarianceInverse]:
    """Return determinant and inverse, or None when the covariance is degenerate.

    Degenerate means: determinant not finite or not strictly positive,
    condition number at or beyond 1 / machine eps (a rank deficient matrix
    whose zero eigenvalue was lost to rounding), or an inverse that fails or
    contains non-finite entries.
    """
    determinant = float(torch.linalg.det(covariance))
    if not (math.isfinite(determinant) and determinant > 0):
        return None

    if _numerically_singular(covariance):
        return None

    inverse, info = torch.linalg.inv_ex(covariance)
    if int(info) != 0 or not torch.isfinite(inverse).all():
        return None

    return CovarianceInverse(determinant=determinant, inverse=inverse)


def _as_tensor(value, dtype: torch.dtype, device=None) -> torch.Tensor:
    if isinstance(value, torch.Tensor):
        return value.to(device=device if device is not None else value.device, dtype=dtype)
    return torch.as_tensor(value, dtype=dtype, device=device)


class MultivariateGaussian:
    """Gaussian density N(mean, covariance) over D-dimensional points.

    Args:
      mean: (D,) or (1, D) mean vector.
      covariance: (D, D) covariance matrix.
      dtype/device: where the parameters live. Defaults to the dtype of a
        tensor ``mean`` or float64.
    """

    def __init__(self, mean, covariance, dtype: Optional[torch.dtype] = None, device=None) -> None:
        if dtype is None:
            dtype = mean.dtype if isinstance(mean, torch.Tensor) else torch.float64

        self.mean = _as_tensor(mean, dtype, device).reshape(-1)
        self.dimension = int(self.mean.shape[0])
        self.covariance = _as_tensor(covariance, dtype, self.mean.device)
        if self.covariance.shape != (self.dimension, self.dimension):
            raise ValueError(
                f"covariance must have shape {(self.dimension, self.dimension)}, "
                f"got {tuple(self.covariance.shape)}"
            )

        inverted = _invert_covariance(self.covariance)
        if inverted is None:
            logger.debug("Degenerate covariance in dimension %d, density set to zero", self.dimension)
            self.inverse_covariance = torch.zeros_like(self.covariance)
            self.coefficient = 0.0
        else:
            self.inverse_covariance = inverted.inverse
            self.coefficient = 1.0 / (
                math.pow(2.0 * math.pi, self.dimension / 2.0) * math.sqrt(inverted.determinant)
            )

    @property
    def degenerate(self) -> bool:
        return self.coefficient == 0.0

    def density(self, X: torch.Tensor) -> torch.Tensor:
        """Density at every row of X (N, D). Returns (N,)."""
        diff = X - self.mean.unsqueeze(0)  # (N,D)
        # Q[n] = diff[n] @ inv @ diff[n]^T
        mahal = torch.einsum("nd,de,ne->n", diff, self.inverse_covariance, diff)
        return self.coefficient * torch.exp(-0.5 * mahal)

    def probability(self, point) -> float:
        """Density at a single point."""
        point = _as_tensor(point, self.mean.dtype, self.mean.device).reshape(1, -1)
        return float(self.density(point)[0])

    def to_dict(self) -> dict:
        return {
            "dimension": self.dimension,
            "mean": self.mean.tolist(),
            "covariance": self.covariance.tolist(),
            "inverse_covariance": self.inverse_covariance.tolist(),
            "coefficient": float(self.coefficient),
        }

    @classmethod
    def from_dict(cls, data: dict, dtype: torch.dtype = torch.float64, device=None) -> "MultivariateGaussian":
        """Restore a saved density without recomputing its inverse or coefficient."""
        gaussian = cls.__new__(cls)
        gaussian.mean = _as_tensor(data["mean"], dtype, device).reshape(-1)
        gaussian.dimension = int(data["dimension"])
        gaussian.covariance = _as_tensor(data["covariance"], dtype, device)
        gaussian.inverse_covariance = _as_tensor(data["inverse_covariance"], dtype, device)
        gaussian.coefficient = float(data["coefficient"])

        D = gaussian.dimension
        if (
            gaussian.mean.shape != (D,)
            or gaussian.covariance.shape != (D, D)
            or gaussian.inverse_covariance.shape != (D, D)
        ):
            raise InvalidModelError(f"gaussian parameters do not match dimension {D}")
        if gaussian.coefficient < 0 or not math.isfinite(gaussian.coefficient):
            raise InvalidModelError(f"invalid normalization coefficient {gaussian.coefficient!r}")
        return gaussian

    def __repr__(self) -> str:
        return f"MultivariateGaussian(dimension={self.dimension}, coefficient={self.coefficient:.6g})"
