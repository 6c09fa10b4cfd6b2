"""Token estimation."""

from snoot.tokens.estimator import TokenEstimator

__all__ = ["TokenEstimator"]
