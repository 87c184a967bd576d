"""
Recovery sweep for jobs nobody converged: the poll loop died with its process
and no webhook arrived. Re-checks stale in-flight jobs one by one.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Tuple

from database import Job, JobKind
from services.job_store import ApplyResult
from services.reconciler import JobReconciler

logger = logging.getLogger(__name__)


@dataclass
class KindStats:
    checked: int = 0
    updated: int = 0
    still_running: int = 0
    errors: int = 0


@dataclass
class SyncReport:
    stats: Dict[str, KindStats] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def for_kind(self, kind: str) -> KindStats:
        return self.stats.setdefault(kind, KindStats())

    @property
    def checked(self) -> int:
        return sum(s.checked for s in self.stats.values())

    @property
    def updated(self) -> int:
        return sum(s.updated for s in self.stats.values())

    @property
    def errors(self) -> int:
        return sum(s.errors for s in self.stats.values())

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "errors": self.errors,
            "by_kind": {kind: asdict(s) for kind, s in self.stats.items()},
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class SyncService:
    def __init__(
        self,
        reconciler: JobReconciler,
        stale_after_seconds: int = 60,
        batch_limit: int = 20,
        item_delay_seconds: float = 0.1,
    ):
        self._reconciler = reconciler
        self.stale_after_seconds = stale_after_seconds
        self.batch_limit = batch_limit
        self.item_delay_seconds = item_delay_seconds

    async def sync_stale(
        self,
        owner_id: Optional[str] = None,
        kinds: Optional[Iterable[JobKind]] = None,
        stale_after_seconds: Optional[int] = None,
    ) -> SyncReport:
        age = self.stale_after_seconds if stale_after_seconds is None else stale_after_seconds
        cutoff = datetime.utcnow() - timedelta(seconds=age)
        jobs = await asyncio.to_thread(
            self._reconciler.store.list_in_flight,
            cutoff,
            owner_id,
            kinds,
            self.batch_limit,
        )
        report = SyncReport()
        if not jobs:
            report.finished_at = datetime.utcnow()
            return report
        logger.info("Sync sweep: %d stale job(s)%s", len(jobs), f" for owner {owner_id}" if owner_id else "")
        for i, job in enumerate(jobs):
            if i > 0:
                # Provider API is rate limited; one call at a time
                await asyncio.sleep(self.item_delay_seconds)
            stats = report.for_kind(job.kind)
            stats.checked += 1
            try:
                terminal, result = await self._sync_one(job, "sync")
            except Exception as e:
                stats.errors += 1
                logger.warning("Sync error for job %s (%s): %s", job.id, job.external_job_id, e)
                continue
            if result == ApplyResult.UPDATED and terminal:
                stats.updated += 1
            elif not terminal or result == ApplyResult.BUSY:
                stats.still_running += 1
        report.finished_at = datetime.utcnow()
        logger.info(
            "Sync sweep done: checked=%d updated=%d errors=%d",
            report.checked, report.updated, report.errors,
        )
        return report

    async def sync_job(self, job_id: str, owner_id: str) -> Tuple[Optional[Job], Optional[ApplyResult]]:
        """Re-check one job now. Returns the refreshed record and what the store did."""
        job = await asyncio.to_thread(self._reconciler.store.get, job_id, owner_id)
        if job is None:
            return None, ApplyResult.NOT_FOUND
        if not job.external_job_id:
            return job, None
        _, result = await self._sync_one(job, "manual")
        refreshed = await asyncio.to_thread(self._reconciler.store.get, job_id, owner_id)
        return refreshed, result

    async def _sync_one(self, job: Job, source: str) -> Tuple[bool, ApplyResult]:
        status = await asyncio.to_thread(self._reconciler.fetch_status, job.external_job_id, JobKind(job.kind))
        result = await asyncio.to_thread(self._reconciler.reconcile, job.id, job.owner_id, status, source)
        return status.is_terminal, result
