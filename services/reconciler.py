"""
The step shared by the poller, the webhook and the sync sweep: take a
normalized provider status for a job and apply it to the job store.
"""
import logging

from clients.replicate_client import ProviderStatus, ReplicateClient
from database import JobKind, JobStatus
from services.job_store import ApplyResult, JobStore

logger = logging.getLogger(__name__)


class JobReconciler:
    def __init__(self, store: JobStore, provider: ReplicateClient):
        self.store = store
        self.provider = provider

    def fetch_status(self, external_id: str, kind: JobKind = JobKind.GENERATION) -> ProviderStatus:
        """Query the provider. Raises ProviderError on transient failures."""
        return self.provider.get_status(external_id, training=JobKind(kind) == JobKind.TRAINING)

    def reconcile(self, job_id: str, owner_id: str, status: ProviderStatus, source: str) -> ApplyResult:
        if status.is_terminal:
            return self.store.apply_terminal_status(
                job_id,
                owner_id,
                status.status,
                outputs=status.outputs,
                error=status.error,
                source=source,
            )
        return self.store.mark_running(job_id, owner_id, status.status, progress=status.progress)

    def fail_timeout(self, job_id: str, owner_id: str, attempts: int) -> ApplyResult:
        return self.store.apply_terminal_status(
            job_id,
            owner_id,
            JobStatus.FAILED,
            error=f"Polling timeout after {attempts} attempts",
            source="poll",
        )
