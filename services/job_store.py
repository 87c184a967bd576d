"""
Job record store: the only writer of job state.

Every convergence path (poll loop, webhook, manual sync) goes through
apply_terminal_status(), which re-reads the record under a per-job lock and
refuses to touch a record that is already terminal. That check is what makes
finalization happen at most once per job no matter how many times, or in
which order, the provider's terminal status is observed.
"""
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from database import IN_FLIGHT_STATUSES, Job, JobKind, JobStatus, TERMINAL_STATUSES, is_terminal
from services.finalizer import ArtifactFinalizer

logger = logging.getLogger(__name__)


class ApplyResult(str, Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"  # non-terminal observation with nothing new to record
    NOOP = "noop"  # record already terminal
    BUSY = "busy"  # another worker holds the job lock; try again later
    NOT_FOUND = "not_found"


def json_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    try:
        arr = json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return []
    return arr if isinstance(arr, list) else []


class _KeyedLocks:
    """One lock per job id, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


class JobStore:
    def __init__(self, session_factory: sessionmaker, finalizer: ArtifactFinalizer):
        self._session_factory = session_factory
        self._finalizer = finalizer
        self._locks = _KeyedLocks()

    # ── reads ────────────────────────────────────────────────

    def _detach(self, db: Session, job: Job) -> Job:
        db.refresh(job)
        db.expunge(job)
        return job

    def _load(self, db: Session, job_id: str, owner_id: Optional[str]) -> Optional[Job]:
        query = db.query(Job).filter(Job.id == job_id)
        if owner_id is not None:
            query = query.filter(Job.owner_id == owner_id)
        return query.first()

    def get(self, job_id: str, owner_id: Optional[str] = None) -> Optional[Job]:
        db = self._session_factory()
        try:
            job = self._load(db, job_id, owner_id)
            return self._detach(db, job) if job else None
        finally:
            db.close()

    def find_by_external_id(self, external_id: str) -> Optional[Job]:
        db = self._session_factory()
        try:
            job = db.query(Job).filter(Job.external_job_id == external_id).first()
            return self._detach(db, job) if job else None
        finally:
            db.close()

    def list_jobs(self, owner_id: str, limit: int = 50) -> List[Job]:
        db = self._session_factory()
        try:
            jobs = (
                db.query(Job)
                .filter(Job.owner_id == owner_id)
                .order_by(Job.created_at.desc())
                .limit(limit)
                .all()
            )
            return [self._detach(db, j) for j in jobs]
        finally:
            db.close()

    def list_in_flight(
        self,
        older_than: datetime,
        owner_id: Optional[str] = None,
        kinds: Optional[Iterable[JobKind]] = None,
        limit: int = 20,
    ) -> List[Job]:
        """Queued/running records with a provider id, created before older_than, oldest first."""
        db = self._session_factory()
        try:
            query = db.query(Job).filter(
                Job.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
                Job.external_job_id.isnot(None),
                Job.created_at < older_than,
            )
            if owner_id is not None:
                query = query.filter(Job.owner_id == owner_id)
            if kinds:
                query = query.filter(Job.kind.in_([JobKind(k).value for k in kinds]))
            jobs = query.order_by(Job.created_at.asc()).limit(limit).all()
            return [self._detach(db, j) for j in jobs]
        finally:
            db.close()

    # ── writes ───────────────────────────────────────────────

    def create(
        self,
        owner_id: str,
        kind: JobKind,
        model_ref: Optional[str] = None,
        input_params: Optional[Dict[str, Any]] = None,
    ) -> Job:
        db = self._session_factory()
        try:
            job = Job(
                owner_id=owner_id,
                kind=JobKind(kind).value,
                status=JobStatus.QUEUED.value,
                model_ref=model_ref,
                input_params=json.dumps(input_params or {}),
                progress=0,
            )
            db.add(job)
            db.commit()
            logger.info("Created %s job %s for owner %s", job.kind, job.id, owner_id)
            return self._detach(db, job)
        finally:
            db.close()

    def attach_external_id(self, job_id: str, owner_id: str, external_id: str) -> ApplyResult:
        with self._locks.hold(job_id):
            db = self._session_factory()
            try:
                job = self._load(db, job_id, owner_id)
                if job is None:
                    return ApplyResult.NOT_FOUND
                if is_terminal(job.status):
                    return ApplyResult.NOOP
                job.external_job_id = external_id
                job.updated_at = datetime.utcnow()
                db.commit()
                return ApplyResult.UPDATED
            finally:
                db.close()

    def mark_running(
        self,
        job_id: str,
        owner_id: str,
        status: JobStatus = JobStatus.RUNNING,
        progress: Optional[int] = None,
    ) -> ApplyResult:
        """Record a non-terminal observation. Never moves a record backwards."""
        status = JobStatus(status)
        if status in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is terminal; use apply_terminal_status")
        with self._locks.hold(job_id):
            db = self._session_factory()
            try:
                job = self._load(db, job_id, owner_id)
                if job is None:
                    return ApplyResult.NOT_FOUND
                if is_terminal(job.status):
                    logger.debug("Ignoring %s for terminal job %s (%s)", status.value, job_id, job.status)
                    return ApplyResult.NOOP
                changed = False
                if status == JobStatus.RUNNING and job.status != JobStatus.RUNNING.value:
                    job.status = JobStatus.RUNNING.value
                    changed = True
                if progress is not None and progress > (job.progress or 0):
                    job.progress = progress
                    changed = True
                if not changed:
                    return ApplyResult.UNCHANGED
                job.updated_at = datetime.utcnow()
                db.commit()
                logger.info("Job %s -> %s (progress %s)", job_id, job.status, job.progress)
                return ApplyResult.UPDATED
            finally:
                db.close()

    def apply_terminal_status(
        self,
        job_id: str,
        owner_id: str,
        status: JobStatus,
        outputs: Optional[List[str]] = None,
        error: Optional[str] = None,
        source: str = "poll",
    ) -> ApplyResult:
        """Move a job to COMPLETED/FAILED/CANCELLED exactly once; later calls are no-ops."""
        status = JobStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")
        with self._locks.hold(job_id):
            db = self._session_factory()
            try:
                if not _try_acquire_job_lock(db, job_id):
                    logger.info("Job %s is being finalized by another worker; will retry", job_id)
                    return ApplyResult.BUSY
                job = self._load(db, job_id, owner_id)
                if job is None:
                    return ApplyResult.NOT_FOUND
                if is_terminal(job.status):
                    logger.info(
                        "Job %s already %s; ignoring %s from %s",
                        job_id, job.status, status.value, source,
                    )
                    return ApplyResult.NOOP

                # Build the full update before touching the row
                now = datetime.utcnow()
                if status == JobStatus.COMPLETED:
                    result = self._finalizer.finalize(outputs or [], job.id, job.owner_id, JobKind(job.kind))
                    job.output_urls = json.dumps(result.permanent_urls)
                    job.thumbnail_urls = json.dumps(result.thumbnail_urls)
                    job.storage_keys = json.dumps(result.storage_keys)
                    job.storage_mode = result.mode.value
                    job.error_message = result.warning
                    job.expires_at = result.expires_at
                    job.progress = 100
                elif status == JobStatus.FAILED:
                    job.error_message = error or "Job failed"
                else:
                    job.error_message = error or "Job was cancelled"
                job.status = status.value
                job.source = source
                job.completed_at = now
                job.updated_at = now
                job.processing_time_ms = int((now - job.created_at).total_seconds() * 1000)
                db.commit()
                logger.info("Job %s -> %s via %s", job_id, status.value, source)
                return ApplyResult.UPDATED
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()


def _try_acquire_job_lock(db: Session, job_id: str) -> bool:
    """Cross-process lock using a PostgreSQL transaction-scoped advisory lock.

    Held until the session commits or rolls back, on the connection that took it.
    """
    if db.get_bind().dialect.name != "postgresql":
        return True
    try:
        row = db.execute(
            text("SELECT pg_try_advisory_xact_lock(hashtext(:job_key)) AS locked"),
            {"job_key": job_id},
        ).first()
        return bool(row and row[0])
    except Exception:
        # If advisory locks are unavailable, continue with in-process guard only.
        logger.warning("Could not acquire advisory lock for %s; proceeding without DB lock", job_id)
        db.rollback()
        return True
