"""
FastAPI application for tracking provider jobs (generation, upscale, training, video)
until their results are stored.
"""
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from urllib.parse import urlencode

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from clients import ProviderError
from config import get_settings, webhooks_available
from database import IN_FLIGHT_STATUSES, Job, JobKind, JobStatus, get_session_factory, init_db, is_terminal
from models import JobCreateRequest, JobResponse, PollingStatusResponse, SyncJobResponse, WebhookAck, WebhookPayload
from services import Runtime, WebhookReconciler, build_runtime
from services.job_store import ApplyResult, json_list
from services.polling import PollingScheduler
from services.webhook import verify_signature

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)
# Reduce noisy per-request polling logs from httpx/httpcore.
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Photo jobs service starting")
    if getattr(app.state, "runtime", None) is None:
        settings = get_settings()
        await asyncio.to_thread(init_db)
        app.state.runtime = build_runtime(settings, get_session_factory())
    runtime: Runtime = app.state.runtime
    if not webhooks_available(runtime.settings):
        logger.warning("PUBLIC_BASE_URL is not HTTPS; provider webhooks disabled, jobs will be polled")
    supervisor_task = None
    if runtime.settings.sync_supervisor_interval_seconds > 0:
        supervisor_task = asyncio.create_task(_sync_supervisor_loop(runtime))
    yield
    if supervisor_task:
        supervisor_task.cancel()
        try:
            await supervisor_task
        except asyncio.CancelledError:
            pass
    await runtime.scheduler.drain()
    logger.info("Photo jobs service shutting down")


async def _sync_supervisor_loop(runtime: Runtime) -> None:
    """Self-heal jobs whose poll loop was lost (restart) without external cron."""
    interval = runtime.settings.sync_supervisor_interval_seconds
    # Let app finish startup before first DB scan.
    await asyncio.sleep(5)
    while True:
        try:
            await runtime.sync.sync_stale()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Sync supervisor temporary DB/error: %s", e)
        await asyncio.sleep(interval)


app = FastAPI(
    title="Photo Jobs – provider job reconciliation",
    description="Tracks AI provider jobs to completion and stores their outputs",
    version="1.0.0",
    lifespan=lifespan,
)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Owner identity is established upstream (session layer) and forwarded as X-User-Id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def _job_response(job: Job, scheduler: PollingScheduler) -> JobResponse:
    return JobResponse(
        id=job.id,
        kind=job.kind,
        status=job.status,
        external_job_id=job.external_job_id,
        progress=job.progress or 0,
        output_urls=json_list(job.output_urls),
        thumbnail_urls=json_list(job.thumbnail_urls),
        storage_keys=json_list(job.storage_keys),
        storage_mode=job.storage_mode,
        error_message=job.error_message,
        expires_at=job.expires_at,
        created_at=job.created_at,
        completed_at=job.completed_at,
        processing_time_ms=job.processing_time_ms,
        polling=bool(job.external_job_id and scheduler.is_polling(job.external_job_id)),
    )


async def _get_owned_job(runtime: Runtime, job_id: str, user_id: str) -> Job:
    job = await asyncio.to_thread(runtime.store.get, job_id, user_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def _webhook_url(base_url: str, job: Job) -> str:
    query = urlencode({"type": job.kind, "id": job.id, "userId": job.owner_id})
    return f"{base_url.rstrip('/')}/api/webhooks/replicate?{query}"


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse(content={"status": "ok"})


# ── Jobs API ─────────────────────────────────────────────────

@app.post("/api/jobs", response_model=JobResponse, status_code=201)
async def create_job(
    body: JobCreateRequest,
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    """Create the job record, submit it to the provider, and arrange for it to converge."""
    settings = runtime.settings
    training = body.kind == JobKind.TRAINING
    if training and (not body.destination or ":" not in body.model):
        raise HTTPException(
            status_code=400,
            detail="Training requires a versioned model (owner/name:version) and a destination",
        )

    job = await asyncio.to_thread(runtime.store.create, user_id, body.kind, body.model, body.input)
    webhook = _webhook_url(settings.public_base_url, job) if webhooks_available(settings) else None
    try:
        if training:
            external_id = await asyncio.to_thread(
                runtime.provider.create_training, body.model, body.destination, body.input, webhook
            )
        else:
            external_id = await asyncio.to_thread(
                runtime.provider.create_prediction, body.model, body.input, webhook
            )
    except ProviderError as e:
        logger.warning("Provider submission failed for job %s: %s", job.id, e)
        await asyncio.to_thread(
            runtime.store.apply_terminal_status,
            job.id,
            user_id,
            JobStatus.FAILED,
            None,
            f"Provider request failed: {e}",
            "create",
        )
        raise HTTPException(status_code=502, detail=f"Provider request failed: {e}")

    await asyncio.to_thread(runtime.store.attach_external_id, job.id, user_id, external_id)
    if webhook is None or settings.force_polling:
        runtime.scheduler.start_polling(external_id, job.id, user_id, body.kind)
    job = await _get_owned_job(runtime, job.id, user_id)
    return _job_response(job, runtime.scheduler)


@app.get("/api/jobs", response_model=list[JobResponse])
async def list_jobs(
    limit: int = 50,
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> list[JobResponse]:
    jobs = await asyncio.to_thread(runtime.store.list_jobs, user_id, max(1, min(limit, 200)))
    return [_job_response(j, runtime.scheduler) for j in jobs]


@app.get("/api/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    job = await _get_owned_job(runtime, job_id, user_id)
    return _job_response(job, runtime.scheduler)


@app.post("/api/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    job = await _get_owned_job(runtime, job_id, user_id)
    if is_terminal(job.status):
        raise HTTPException(status_code=409, detail=f"Job is already {job.status}")
    if job.external_job_id:
        try:
            canceled = await asyncio.to_thread(
                runtime.provider.cancel, job.external_job_id, job.kind == JobKind.TRAINING.value
            )
        except ProviderError as e:
            raise HTTPException(status_code=502, detail=f"Provider cancel failed: {e}")
        if not canceled:
            raise HTTPException(status_code=409, detail="Provider refused to cancel the job")
        runtime.scheduler.stop_polling(job.external_job_id)
    result = await asyncio.to_thread(
        runtime.store.apply_terminal_status,
        job.id,
        user_id,
        JobStatus.CANCELLED,
        None,
        "Job was cancelled by user",
        "cancel",
    )
    if result == ApplyResult.BUSY:
        raise HTTPException(status_code=409, detail="Job is being finalized; try again")
    job = await _get_owned_job(runtime, job_id, user_id)
    return _job_response(job, runtime.scheduler)


@app.post("/api/jobs/{job_id}/sync", response_model=SyncJobResponse)
async def sync_job(
    job_id: str,
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> SyncJobResponse:
    """Re-check one job with the provider right now."""
    try:
        job, result = await runtime.sync.sync_job(job_id, user_id)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"Provider status check failed: {e}")
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return SyncJobResponse(job=_job_response(job, runtime.scheduler), result=result.value if result else None)


@app.post("/api/jobs/{job_id}/poll", response_model=JobResponse)
async def restart_polling(
    job_id: str,
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> JobResponse:
    """(Re)start the poll loop for an in-flight job, replacing any existing loop."""
    job = await _get_owned_job(runtime, job_id, user_id)
    if JobStatus(job.status) not in IN_FLIGHT_STATUSES or not job.external_job_id:
        raise HTTPException(status_code=409, detail=f"Job is not pollable (status={job.status})")
    runtime.scheduler.start_polling(job.external_job_id, job.id, user_id, JobKind(job.kind))
    return _job_response(job, runtime.scheduler)


# ── Polling introspection ───────────────────────────────────

@app.get("/api/poll/status", response_model=PollingStatusResponse)
async def polling_status(
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> PollingStatusResponse:
    return PollingStatusResponse(**runtime.scheduler.get_polling_status(owner_id=user_id))


@app.delete("/api/poll/{external_id}")
async def stop_polling(
    external_id: str,
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
):
    job = await asyncio.to_thread(runtime.store.find_by_external_id, external_id)
    if not job or job.owner_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")
    stopped = runtime.scheduler.stop_polling(external_id)
    return {"status": "ok", "stopped": stopped, "external_id": external_id}


# ── Webhooks ─────────────────────────────────────────────────

def _apply_webhook(webhooks: WebhookReconciler, job: Job, payload: dict) -> None:
    try:
        webhooks.apply(job, payload)
    except Exception:
        logger.exception("Webhook processing failed for job %s (%s)", job.id, payload.get("id"))


@app.post("/api/webhooks/replicate", response_model=WebhookAck)
async def replicate_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_runtime),
):
    """Provider push notification. Acknowledged quickly; the state change runs in the background."""
    body = await request.body()
    secret = runtime.settings.replicate_webhook_secret
    if secret:
        if not verify_signature(body, request.headers, secret):
            logger.warning("Replicate webhook: invalid signature")
            raise HTTPException(status_code=401, detail="Invalid signature")
    else:
        logger.warning("Replicate webhook: no REPLICATE_WEBHOOK_SECRET configured - webhook not secured")

    try:
        payload = WebhookPayload.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid webhook payload: {e.errors()[:1]}")

    data = payload.model_dump()
    record_id = request.query_params.get("id")
    owner_id = request.query_params.get("userId")
    logger.info("Replicate webhook received: id=%s status=%s type=%s", payload.id, payload.status, request.query_params.get("type"))
    try:
        job = await asyncio.to_thread(runtime.webhooks.resolve, data, record_id, owner_id)
    except Exception as e:
        logger.exception("Webhook lookup failed for %s", payload.id)
        return JSONResponse(status_code=500, content={"success": False, "accepted": False, "message": str(e)})
    if job is None:
        return WebhookAck(success=True, accepted=False, message="Job not found - might be external job")
    background_tasks.add_task(_apply_webhook, runtime.webhooks, job, data)
    return WebhookAck(success=True, accepted=True, job_id=job.id)


# ── Recovery sweeps ──────────────────────────────────────────

@app.post("/api/sync/manual")
async def manual_sync(
    runtime: Runtime = Depends(get_runtime),
    user_id: str = Depends(get_current_user_id),
) -> JSONResponse:
    """Re-check all of the caller's in-flight jobs, regardless of age."""
    logger.info("Manual sync triggered for user %s", user_id)
    report = await runtime.sync.sync_stale(owner_id=user_id, stale_after_seconds=0)
    return JSONResponse(content={"success": True, "stats": report.to_dict()})


@app.get("/api/cron/sync-jobs")
async def cron_sync_jobs(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    cron_secret = runtime.settings.cron_secret
    if cron_secret and authorization != f"Bearer {cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    report = await runtime.sync.sync_stale()
    return JSONResponse(content={"success": True, "message": "Job sync completed", "stats": report.to_dict()})


# ── Stored artifacts ─────────────────────────────────────────

@app.get("/api/artifacts/{key:path}")
async def get_artifact(key: str, runtime: Runtime = Depends(get_runtime)):
    found = await asyncio.to_thread(runtime.artifacts.get, key)
    if not found:
        raise HTTPException(status_code=404, detail="Artifact not found")
    data, content_type = found
    return Response(
        content=data,
        media_type=content_type,
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8001,
        reload=True,
    )
