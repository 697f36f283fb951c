"""
Domain subpackage for the snowball distribution feature.
"""

from .models import (
    Candidate,
    CsvUpload,
    DigestSummary,
    EmailEntry,
    GrowthEntry,
    NetworkAnalysisSnapshot,
    PendingUpload,
    PlatformUser,
    ProcessCsvResult,
    Repository,
    RepositoryLimits,
    VerificationStatus,
)

__all__ = [
    "Candidate",
    "CsvUpload",
    "DigestSummary",
    "EmailEntry",
    "GrowthEntry",
    "NetworkAnalysisSnapshot",
    "PendingUpload",
    "PlatformUser",
    "ProcessCsvResult",
    "Repository",
    "RepositoryLimits",
    "VerificationStatus",
]
