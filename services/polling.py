"""
In-process polling of provider jobs.

One loop per external job id, driven by event-loop timers. Each attempt
fetches the provider status in a worker thread, then applies it through the
job reconciler. Provider hiccups back off instead of failing the job; only
an exhausted attempt budget turns into a "polling timeout" failure.

Poll state lives only in this process. Jobs whose loop was lost to a restart
are picked up again by the sync sweep.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Set

from clients.replicate_client import ProviderError, ProviderStatus
from database import JobKind
from services.job_store import ApplyResult
from services.reconciler import JobReconciler

logger = logging.getLogger(__name__)


def compute_backoff(interval: float, factor: float, consecutive_errors: int, cap: float) -> float:
    """Delay after N consecutive transient errors: interval * factor**N, capped."""
    if consecutive_errors <= 0:
        return interval
    return min(interval * (factor ** consecutive_errors), max(cap, interval))


@dataclass
class PollJob:
    external_id: str
    job_id: str
    owner_id: str
    kind: JobKind
    max_attempts: int
    interval: float
    attempts: int = 0
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_status: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    handle: Optional[asyncio.TimerHandle] = None


class PollingScheduler:
    def __init__(
        self,
        reconciler: JobReconciler,
        interval_seconds: float = 5.0,
        max_attempts: int = 120,
        backoff_factor: float = 1.5,
        max_backoff_seconds: float = 30.0,
    ):
        self._reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.backoff_factor = backoff_factor
        self.max_backoff_seconds = max_backoff_seconds
        self._jobs: Dict[str, PollJob] = {}
        self._inflight: Set[asyncio.Task] = set()

    def start_polling(
        self,
        external_id: str,
        job_id: str,
        owner_id: str,
        kind: JobKind = JobKind.GENERATION,
        max_attempts: Optional[int] = None,
        interval_seconds: Optional[float] = None,
    ) -> PollJob:
        """Start (or restart) the poll loop for external_id. Must run inside the event loop."""
        self.stop_polling(external_id)
        job = PollJob(
            external_id=external_id,
            job_id=job_id,
            owner_id=owner_id,
            kind=JobKind(kind),
            max_attempts=max_attempts or self.max_attempts,
            interval=self.interval_seconds if interval_seconds is None else interval_seconds,
        )
        self._jobs[external_id] = job
        logger.info("Starting polling for %s (job %s, max %d attempts)", external_id, job_id, job.max_attempts)
        self._schedule(job, 0)
        return job

    def stop_polling(self, external_id: str) -> bool:
        """Stop the loop for external_id. An attempt already in flight finishes but is discarded."""
        job = self._jobs.pop(external_id, None)
        if job is None:
            return False
        if job.handle is not None:
            job.handle.cancel()
            job.handle = None
        logger.info("Stopped polling for %s after %d attempt(s)", external_id, job.attempts)
        return True

    def stop_all(self) -> int:
        external_ids = list(self._jobs)
        logger.info("Stopping all %d polling jobs", len(external_ids))
        for external_id in external_ids:
            self.stop_polling(external_id)
        return len(external_ids)

    async def drain(self, timeout: Optional[float] = 10.0) -> None:
        """Stop every loop and wait for in-flight attempts to settle."""
        self.stop_all()
        pending = list(self._inflight)
        if not pending:
            return
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("%d poll attempt(s) still running at shutdown", len(not_done))

    def is_polling(self, external_id: str) -> bool:
        return external_id in self._jobs

    def get_polling_status(self, owner_id: Optional[str] = None) -> dict:
        jobs = [
            {
                "external_id": j.external_id,
                "job_id": j.job_id,
                "owner_id": j.owner_id,
                "kind": j.kind.value,
                "attempts": j.attempts,
                "max_attempts": j.max_attempts,
                "interval_seconds": j.interval,
                "consecutive_errors": j.consecutive_errors,
                "last_status": j.last_status,
                "last_error": j.last_error,
                "started_at": j.started_at.isoformat(),
            }
            for j in self._jobs.values()
            if owner_id is None or j.owner_id == owner_id
        ]
        return {"active_jobs": len(jobs), "jobs": jobs}

    # ── loop internals ───────────────────────────────────────

    def _is_active(self, job: PollJob) -> bool:
        return self._jobs.get(job.external_id) is job

    def _finish(self, job: PollJob) -> None:
        if self._is_active(job):
            del self._jobs[job.external_id]

    def _schedule(self, job: PollJob, delay: float) -> None:
        if not self._is_active(job):
            return
        loop = asyncio.get_running_loop()
        job.handle = loop.call_later(delay, self._fire, job)

    def _fire(self, job: PollJob) -> None:
        job.handle = None
        if not self._is_active(job):
            return
        task = asyncio.create_task(self._attempt(job), name=f"poll-{job.external_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _attempt(self, job: PollJob) -> None:
        job.attempts += 1
        logger.debug("Polling attempt %d/%d for %s", job.attempts, job.max_attempts, job.external_id)
        try:
            status: ProviderStatus = await asyncio.to_thread(
                self._reconciler.fetch_status, job.external_id, job.kind
            )
            if not self._is_active(job):
                logger.info("Discarding status for %s: polling was stopped", job.external_id)
                return
            job.last_status = status.raw_status
            result = await asyncio.to_thread(
                self._reconciler.reconcile, job.job_id, job.owner_id, status, "poll"
            )
        except Exception as e:
            await self._on_error(job, e)
            return

        job.consecutive_errors = 0
        job.last_error = None
        if result == ApplyResult.NOT_FOUND:
            logger.error("Job %s not found for %s; stopping polling", job.job_id, job.external_id)
            self._finish(job)
            return
        if result == ApplyResult.BUSY:
            logger.info("Job %s is locked by another worker; polling %s again", job.job_id, job.external_id)
        elif status.is_terminal or result == ApplyResult.NOOP:
            logger.info(
                "Polling for %s finished: provider %s, store %s",
                job.external_id, status.raw_status, result.value,
            )
            self._finish(job)
            return
        if job.attempts >= job.max_attempts:
            await self._give_up(job)
            return
        self._schedule(job, job.interval)

    async def _on_error(self, job: PollJob, error: Exception) -> None:
        if not self._is_active(job):
            return
        job.consecutive_errors += 1
        job.last_error = str(error)
        if isinstance(error, ProviderError):
            logger.warning("Polling error for %s (attempt %d): %s", job.external_id, job.attempts, error)
        else:
            logger.exception("Unexpected polling error for %s (attempt %d)", job.external_id, job.attempts)
        if job.attempts >= job.max_attempts:
            await self._give_up(job)
            return
        delay = compute_backoff(job.interval, self.backoff_factor, job.consecutive_errors, self.max_backoff_seconds)
        logger.info(
            "Retrying %s in %.1fs (attempt %d/%d)",
            job.external_id, delay, job.attempts + 1, job.max_attempts,
        )
        self._schedule(job, delay)

    async def _give_up(self, job: PollJob) -> None:
        logger.error("Max polling attempts reached for %s (last error: %s)", job.external_id, job.last_error)
        self._finish(job)
        try:
            await asyncio.to_thread(self._reconciler.fail_timeout, job.job_id, job.owner_id, job.attempts)
        except Exception:
            logger.exception("Could not mark job %s as timed out", job.job_id)
