"""
verify-email handler.

Asks the verification service about one admitted address and records the
verdict. Service outages surface as ``TransientError`` and are retried.
"""

from snowball_worker.features.snowball.clients import EmailVerificationService
from snowball_worker.features.snowball.repository import DataStore
from snowball_worker.infrastructure.observability.logging import get_logger
from snowball_worker.jobs.models import Job
from snowball_worker.jobs.payloads import VerifyEmailPayload

logger = get_logger(__name__)


class VerifyEmailJob:
    def __init__(self, data_store: DataStore, verifier: EmailVerificationService):
        self.store = data_store
        self.verifier = verifier

    async def __call__(self, job: Job, payload: VerifyEmailPayload) -> dict:
        valid = await self.verifier.verify(payload.email)
        status = "active" if valid else "invalid"
        updated = await self.store.set_verification_status(
            payload.repository_id, payload.email, status
        )
        if not updated:
            logger.warning(
                "Verified address no longer in repository",
                repository_id=payload.repository_id,
                email=payload.email,
            )
        return {"email": payload.email, "valid": valid, "status": status, "updated": updated}
