import numpy as np

import sys
import os
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from em_gmm._expectation_maximization import (
    _expectation_step,
    _maximization_step,
    _responsibility_delta,
)


def pretty(name, value):
    print(f"\n{name}:\n{value.numpy() if isinstance(value, torch.Tensor) else value}")


def main():

    np.set_printoptions(precision=6, suppress=True)

    # -----------------------------
    # 1) Hard-coded tiny dataset (2D)
    # -----------------------------
    X = torch.tensor([
        [0, 0],
        [1, 0],
        [0, 1],
        [1, 1],
    ], dtype=torch.float64)
    epsilon = 2e-16

    # -----------------------------
    # 2) Hard-coded starting responsibilities (K, N), columns not normalized
    # -----------------------------
    resp = torch.tensor([
        [0.9, 0.6, 0.3, 0.1],
        [0.2, 0.5, 0.7, 0.8],
    ], dtype=torch.float64)

    pretty("X", X)
    pretty("resp (initial)", resp)

    # -----------------------------
    # 3) M-step
    clusters = _maximization_step(X, resp, epsilon)
    for k, cluster in enumerate(clusters):
        pretty(f"cluster {k} weight", cluster.weight)
        pretty(f"cluster {k} mean", cluster.gaussian.mean)
        pretty(f"cluster {k} covariance", cluster.gaussian.covariance)
        pretty(f"cluster {k} coefficient", cluster.gaussian.coefficient)

    # -----------------------------
    # 4) E-step
    new_resp = _expectation_step(X, clusters)
    pretty("resp (after one iteration)", new_resp)
    pretty("column sums (should be 1.0)", new_resp.sum(dim=0))
    pretty("delta", _responsibility_delta(new_resp, resp))


if __name__ == "__main__":
    main()
