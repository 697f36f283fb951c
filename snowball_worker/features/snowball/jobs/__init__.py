"""
Job handlers for the snowball feature and their queue routing.
"""

from snowball_worker.jobs.dispatcher import Dispatcher
from snowball_worker.jobs.models import (
    CLEANUP_QUEUE,
    DIGEST_QUEUE,
    EMAIL_PROCESSING_QUEUE,
    SNOWBALL_QUEUE,
)
from snowball_worker.jobs.payloads import (
    ANALYZE_NETWORK,
    CLEANUP,
    PROCESS_CSV,
    SEND_DIGEST,
    SWEEP_PENDING_SNOWBALLS,
    VERIFY_EMAIL,
)

from .digest_job import SendDigestJob
from .maintenance_job import CleanupJob, SweepPendingSnowballsJob
from .network_job import AnalyzeNetworkJob
from .process_csv_job import ProcessCsvJob, enqueue_csv_processing
from .verification_job import VerifyEmailJob


def register_snowball_handlers(
    dispatcher: Dispatcher,
    *,
    process_csv: ProcessCsvJob,
    verify_email: VerifyEmailJob,
    analyze_network: AnalyzeNetworkJob,
    send_digest: SendDigestJob,
    cleanup: CleanupJob,
    sweep_pending: SweepPendingSnowballsJob,
) -> None:
    dispatcher.process(SNOWBALL_QUEUE, PROCESS_CSV, process_csv)
    dispatcher.process(SNOWBALL_QUEUE, ANALYZE_NETWORK, analyze_network)
    dispatcher.process(SNOWBALL_QUEUE, SWEEP_PENDING_SNOWBALLS, sweep_pending)
    dispatcher.process(EMAIL_PROCESSING_QUEUE, VERIFY_EMAIL, verify_email)
    dispatcher.process(DIGEST_QUEUE, SEND_DIGEST, send_digest)
    dispatcher.process(CLEANUP_QUEUE, CLEANUP, cleanup)


__all__ = [
    "AnalyzeNetworkJob",
    "CleanupJob",
    "ProcessCsvJob",
    "SendDigestJob",
    "SweepPendingSnowballsJob",
    "VerifyEmailJob",
    "enqueue_csv_processing",
    "register_snowball_handlers",
]
