# em_gmm/_exceptions.py
"""Errors raised by the mixture engine.

Numerical trouble (singular covariances, starved clusters, points with zero
density everywhere) is absorbed by the EM loop and never shows up here.
"""


class InvalidModelError(ValueError):
    """A serialized model has the wrong tag, version or shape."""


class NotFittedError(RuntimeError):
    """The engine was used before `train` or `load`."""
