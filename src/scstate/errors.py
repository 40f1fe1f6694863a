# src/scstate/errors.py
from __future__ import annotations

from typing import Optional


class ScstateError(RuntimeError):
    """Base class for scstate failures."""


class ConfigurationError(ScstateError, ValueError):
    """
    Shared inputs (design, sample metadata, options) are unusable.
    Raised before any cluster is tested; aborts the whole run.
    """


class InsufficientDataError(ScstateError):
    """A single cluster cannot be fitted (too few samples, rank-deficient design, no genes)."""

    def __init__(self, message: str, *, cluster: Optional[str] = None):
        super().__init__(message)
        self.cluster = cluster


class EmptyAggregationError(ScstateError):
    """A (cluster, sample) library has no contributing cells under missing='error'."""

    def __init__(self, message: str, *, cluster: Optional[str] = None, sample: Optional[str] = None):
        super().__init__(message)
        self.cluster = cluster
        self.sample = sample
