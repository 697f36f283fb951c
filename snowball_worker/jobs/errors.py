"""
Error taxonomy for job handlers.

The dispatcher only looks at ``retryable``: non-retryable errors fail the
job on the spot, everything else goes through the queue's backoff policy.
Exceptions that are not ``JobError`` subclasses are treated as transient.
"""


class JobError(Exception):
    """Base class for errors raised by job handlers."""

    retryable = True

    def __init__(self, message: str, *, context: dict | None = None):
        super().__init__(message)
        self.context = context or {}


class ValidationError(JobError):
    """Malformed input (bad payload, unreadable CSV, missing email column)."""

    retryable = False


class FatalError(JobError):
    """A referenced entity is gone; retrying cannot help."""

    retryable = False


class TransientError(JobError):
    """External service or database hiccup; safe to retry."""

    retryable = True


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, JobError):
        return error.retryable
    return True
