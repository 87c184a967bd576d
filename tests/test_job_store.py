import threading
from datetime import datetime, timedelta

import pytest

from database import JobKind, JobStatus, StorageMode
from services import job_store
from services.job_store import ApplyResult, json_list


def new_job(store, owner="u1", kind=JobKind.GENERATION, external_id="ext-1"):
    job = store.create(owner, kind, "acme/flux", {"prompt": "cat"})
    if external_id:
        store.attach_external_id(job.id, owner, external_id)
    return store.get(job.id)


def test_create_and_attach(store):
    job = new_job(store)
    assert job.status == JobStatus.QUEUED.value
    assert job.external_job_id == "ext-1"
    assert store.find_by_external_id("ext-1").id == job.id


def test_completion_finalizes_once(store, finalizer):
    job = new_job(store)
    urls = ["https://replicate.delivery/a/out.png"]

    first = store.apply_terminal_status(job.id, "u1", JobStatus.COMPLETED, outputs=urls, source="poll")
    second = store.apply_terminal_status(job.id, "u1", JobStatus.COMPLETED, outputs=urls, source="webhook")

    assert first == ApplyResult.UPDATED
    assert second == ApplyResult.NOOP
    assert len(finalizer.calls) == 1

    done = store.get(job.id)
    assert done.status == JobStatus.COMPLETED.value
    assert done.source == "poll"
    assert done.progress == 100
    assert done.storage_mode == StorageMode.DURABLE.value
    assert json_list(done.storage_keys) == [f"generated/u1/{job.id}/0.png"]
    assert done.completed_at is not None
    assert done.processing_time_ms >= 0


def test_terminal_status_is_final(store, finalizer):
    job = new_job(store)
    store.apply_terminal_status(job.id, "u1", JobStatus.FAILED, error="CUDA out of memory")

    assert store.apply_terminal_status(job.id, "u1", JobStatus.COMPLETED, outputs=["https://x/a.png"]) == ApplyResult.NOOP
    assert store.mark_running(job.id, "u1", JobStatus.RUNNING, progress=60) == ApplyResult.NOOP

    failed = store.get(job.id)
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "CUDA out of memory"
    assert finalizer.calls == []


def test_default_error_messages(store):
    a = new_job(store, external_id="ext-a")
    b = new_job(store, external_id="ext-b")
    store.apply_terminal_status(a.id, "u1", JobStatus.FAILED)
    store.apply_terminal_status(b.id, "u1", JobStatus.CANCELLED)
    assert store.get(a.id).error_message == "Job failed"
    assert store.get(b.id).error_message == "Job was cancelled"


def test_mark_running_never_regresses(store):
    job = new_job(store)
    assert store.mark_running(job.id, "u1", JobStatus.RUNNING, progress=40) == ApplyResult.UPDATED
    assert store.mark_running(job.id, "u1", JobStatus.QUEUED, progress=5) == ApplyResult.UNCHANGED
    assert store.mark_running(job.id, "u1", JobStatus.RUNNING, progress=40) == ApplyResult.UNCHANGED

    running = store.get(job.id)
    assert running.status == JobStatus.RUNNING.value
    assert running.progress == 40


def test_status_kind_is_checked(store):
    job = new_job(store)
    with pytest.raises(ValueError):
        store.mark_running(job.id, "u1", JobStatus.COMPLETED)
    with pytest.raises(ValueError):
        store.apply_terminal_status(job.id, "u1", JobStatus.RUNNING)


def test_owner_scoping(store):
    job = new_job(store)
    assert store.get(job.id, "u2") is None
    assert store.apply_terminal_status(job.id, "u2", JobStatus.FAILED) == ApplyResult.NOT_FOUND
    assert store.mark_running(job.id, "u2") == ApplyResult.NOT_FOUND
    assert store.get(job.id).status == JobStatus.QUEUED.value
    assert [j.id for j in store.list_jobs("u1")] == [job.id]
    assert store.list_jobs("u2") == []


def test_list_in_flight(store):
    stale = new_job(store, external_id="ext-stale")
    video = new_job(store, kind=JobKind.VIDEO, external_id="ext-video")
    done = new_job(store, external_id="ext-done")
    new_job(store, external_id=None)
    new_job(store, owner="u2", external_id="ext-other")
    store.apply_terminal_status(done.id, "u1", JobStatus.FAILED)

    future = datetime.utcnow() + timedelta(seconds=5)
    ids = {j.id for j in store.list_in_flight(future, owner_id="u1")}
    assert ids == {stale.id, video.id}

    videos = store.list_in_flight(future, kinds=[JobKind.VIDEO])
    assert [j.id for j in videos] == [video.id]

    past = datetime.utcnow() - timedelta(hours=1)
    assert store.list_in_flight(past) == []
    assert len(store.list_in_flight(future, limit=1)) == 1


def test_attach_refused_after_terminal(store):
    job = new_job(store, external_id=None)
    store.apply_terminal_status(job.id, "u1", JobStatus.FAILED, error="submit failed", source="create")
    assert store.attach_external_id(job.id, "u1", "ext-late") == ApplyResult.NOOP


def test_concurrent_completion_finalizes_once(store, finalizer):
    job = new_job(store)
    barrier = threading.Barrier(8)
    results = []

    def worker(source):
        barrier.wait()
        results.append(
            store.apply_terminal_status(
                job.id, "u1", JobStatus.COMPLETED,
                outputs=["https://replicate.delivery/a/out.png"], source=source,
            )
        )

    threads = [threading.Thread(target=worker, args=(f"src-{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(ApplyResult.UPDATED) == 1
    assert results.count(ApplyResult.NOOP) == 7
    assert len(finalizer.calls) == 1


def test_locked_job_reports_busy_and_stays_in_flight(store, finalizer, monkeypatch):
    job = new_job(store)
    monkeypatch.setattr(job_store, "_try_acquire_job_lock", lambda db, job_id: False)

    result = store.apply_terminal_status(job.id, "u1", JobStatus.COMPLETED, outputs=["https://x/a.png"])

    assert result == ApplyResult.BUSY
    assert store.get(job.id).status == JobStatus.QUEUED.value
    assert finalizer.calls == []


class _Dialect:
    name = "postgresql"


class _Bind:
    dialect = _Dialect()


class _RecordingSession:
    def __init__(self, locked):
        self.locked = locked
        self.statements = []

    def get_bind(self):
        return _Bind()

    def execute(self, statement, params=None):
        self.statements.append((str(statement), params))
        locked = self.locked

        class _Result:
            def first(self):
                return (locked,)

        return _Result()


def test_postgres_lock_is_transaction_scoped():
    db = _RecordingSession(locked=True)
    assert job_store._try_acquire_job_lock(db, "job-1") is True
    sql, params = db.statements[0]
    assert "pg_try_advisory_xact_lock(hashtext(:job_key))" in sql
    assert params == {"job_key": "job-1"}

    assert job_store._try_acquire_job_lock(_RecordingSession(locked=False), "job-1") is False
