"""
Clients for the services the snowball pipeline consumes but does not own.
"""

from .services import (
    DomainReputationService,
    EmailVerificationService,
    HttpDomainReputationService,
    HttpEmailVerificationService,
    HttpNotificationSender,
    NotificationSender,
)

__all__ = [
    "DomainReputationService",
    "EmailVerificationService",
    "HttpDomainReputationService",
    "HttpEmailVerificationService",
    "HttpNotificationSender",
    "NotificationSender",
]
