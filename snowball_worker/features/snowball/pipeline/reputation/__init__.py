"""
Domain reputation lookups, cached per domain.
"""

from .cache import ReputationCache, clamp_score

__all__ = ["ReputationCache", "clamp_score"]
