"""
Wires the reconciliation components together from settings.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.orm import sessionmaker

from clients.replicate_client import ReplicateClient
from config import Settings
from services.artifact_storage import ArtifactStore, build_artifact_store
from services.finalizer import ArtifactFinalizer
from services.job_store import JobStore
from services.polling import PollingScheduler
from services.reconciler import JobReconciler
from services.sync import SyncService
from services.webhook import WebhookReconciler


@dataclass
class Runtime:
    settings: Settings
    provider: ReplicateClient
    artifacts: ArtifactStore
    store: JobStore
    reconciler: JobReconciler
    scheduler: PollingScheduler
    webhooks: WebhookReconciler
    sync: SyncService


def build_provider(settings: Settings) -> ReplicateClient:
    return ReplicateClient(
        api_token=settings.replicate_api_token,
        base_url=settings.replicate_base_url,
        timeout_seconds=settings.api_timeout_seconds,
        rate_limit_retries=settings.replicate_rate_limit_retries,
        rate_limit_base_wait=float(settings.replicate_rate_limit_base_wait_seconds),
    )


def build_runtime(
    settings: Settings,
    session_factory: sessionmaker,
    provider: Optional[ReplicateClient] = None,
    artifacts: Optional[ArtifactStore] = None,
    download_transport: Optional[httpx.BaseTransport] = None,
) -> Runtime:
    provider = provider or build_provider(settings)
    artifacts = artifacts or build_artifact_store(settings, session_factory)
    finalizer = ArtifactFinalizer(
        artifacts,
        retries=settings.finalize_retries,
        backoff_seconds=settings.finalize_backoff_seconds,
        download_timeout_seconds=settings.download_timeout_seconds,
        max_bytes=settings.max_artifact_bytes,
        temporary_url_ttl_minutes=settings.temporary_url_ttl_minutes,
        thumbnail_size=settings.thumbnail_size,
        transport=download_transport,
    )
    store = JobStore(session_factory, finalizer)
    reconciler = JobReconciler(store, provider)
    return Runtime(
        settings=settings,
        provider=provider,
        artifacts=artifacts,
        store=store,
        reconciler=reconciler,
        scheduler=PollingScheduler(
            reconciler,
            interval_seconds=settings.polling_interval_seconds,
            max_attempts=settings.polling_max_attempts,
            backoff_factor=settings.polling_backoff_factor,
            max_backoff_seconds=settings.polling_max_backoff_seconds,
        ),
        webhooks=WebhookReconciler(reconciler),
        sync=SyncService(
            reconciler,
            stale_after_seconds=settings.sync_stale_after_seconds,
            batch_limit=settings.sync_batch_limit,
            item_delay_seconds=settings.sync_item_delay_ms / 1000.0,
        ),
    )
