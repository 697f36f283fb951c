"""
Quality scoring package.

Scores validated candidates against a repository's trust settings and the
cached domain reputation.
"""

from .service import QualityScorer, ScoredCandidate, compute_quality_score

__all__ = ["QualityScorer", "ScoredCandidate", "compute_quality_score"]
