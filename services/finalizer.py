"""
Turns ephemeral provider output URLs into durably stored artifacts.

Replicate output links expire (about an hour), so every completed job's
outputs are downloaded and written to the artifact store before the job
record is finalized. If storage keeps failing the original URLs are kept
and the result is flagged, never dropped.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import urlparse

import httpx

from database import JobKind, StorageMode
from services.artifact_storage import ArtifactStorageError, ArtifactStore, make_thumbnail

logger = logging.getLogger(__name__)

KEY_PREFIXES = {
    JobKind.GENERATION: "generated",
    JobKind.UPSCALE: "upscaled",
    JobKind.VIDEO: "videos",
}

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
}


@dataclass
class FinalizeResult:
    permanent_urls: List[str] = field(default_factory=list)
    thumbnail_urls: List[str] = field(default_factory=list)
    storage_keys: List[str] = field(default_factory=list)
    mode: StorageMode = StorageMode.DURABLE
    warning: Optional[str] = None
    expires_at: Optional[datetime] = None


def storage_key(kind: JobKind, owner_id: str, job_id: str, index: int, ext: str) -> str:
    prefix = KEY_PREFIXES.get(kind, "generated")
    return f"{prefix}/{owner_id}/{job_id}/{index}.{ext}"


def thumbnail_key(kind: JobKind, owner_id: str, job_id: str, index: int) -> str:
    prefix = KEY_PREFIXES.get(kind, "generated")
    return f"{prefix}/{owner_id}/{job_id}/thumbnails/{index}.jpg"


def _extension(url: str, content_type: str) -> str:
    suf = Path(urlparse(url).path).suffix.lower().lstrip(".")
    if suf in ("png", "jpg", "jpeg", "webp", "gif", "mp4", "webm"):
        return "jpg" if suf == "jpeg" else suf
    return _EXTENSIONS.get(content_type, "bin")


class ArtifactFinalizer:
    def __init__(
        self,
        store: ArtifactStore,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        download_timeout_seconds: int = 45,
        max_bytes: int = 50 * 1024 * 1024,
        temporary_url_ttl_minutes: int = 60,
        thumbnail_size: int = 400,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds
        self.download_timeout_seconds = download_timeout_seconds
        self.max_bytes = max_bytes
        self.temporary_url_ttl_minutes = temporary_url_ttl_minutes
        self.thumbnail_size = thumbnail_size
        self.transport = transport
        self._sleep = sleep

    def finalize(self, urls: List[str], job_id: str, owner_id: str, kind: JobKind = JobKind.GENERATION) -> FinalizeResult:
        """Store every output durably, or fall back to the ephemeral URLs for the whole batch."""
        kind = JobKind(kind)
        if not urls:
            return FinalizeResult()
        if kind == JobKind.TRAINING:
            # Trained weights stay on the provider; nothing to download.
            return FinalizeResult(
                permanent_urls=list(urls),
                thumbnail_urls=[],
                storage_keys=[],
                mode=StorageMode.PROVIDER,
            )

        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                result = self._store_batch(urls, job_id, owner_id, kind)
                logger.info(
                    "Stored %d artifact(s) for job %s (attempt %d/%d)",
                    len(result.storage_keys), job_id, attempt, self.retries,
                )
                return result
            except (httpx.HTTPError, ArtifactStorageError) as e:
                last_error = e
                logger.warning(
                    "Artifact storage failed for job %s (attempt %d/%d): %s",
                    job_id, attempt, self.retries, e,
                )
                if attempt < self.retries:
                    self._sleep(self.backoff_seconds * attempt)

        expires_at = datetime.utcnow() + timedelta(minutes=self.temporary_url_ttl_minutes)
        logger.error(
            "Durable storage gave up for job %s after %d attempts; keeping %d temporary URL(s)",
            job_id, self.retries, len(urls),
        )
        return FinalizeResult(
            permanent_urls=list(urls),
            thumbnail_urls=list(urls),
            storage_keys=[],
            mode=StorageMode.TEMPORARY_FALLBACK,
            warning=(
                f"Warning: storage failed after {self.retries} attempts ({last_error}); "
                f"images may expire in {self.temporary_url_ttl_minutes} minutes"
            ),
            expires_at=expires_at,
        )

    def _store_batch(self, urls: List[str], job_id: str, owner_id: str, kind: JobKind) -> FinalizeResult:
        result = FinalizeResult()
        with httpx.Client(timeout=self.download_timeout_seconds, transport=self.transport, follow_redirects=True) as client:
            for i, url in enumerate(urls):
                content, content_type = self._download(client, url)
                key = storage_key(kind, owner_id, job_id, i, _extension(url, content_type))
                permanent = self.store.put(key, content, content_type)
                result.permanent_urls.append(permanent)
                result.storage_keys.append(key)
                result.thumbnail_urls.append(self._thumbnail(content, content_type, kind, owner_id, job_id, i) or permanent)
        return result

    def _download(self, client: httpx.Client, url: str):
        r = client.get(url, headers={"User-Agent": "PhotoJobs-ArtifactFinalizer/1.0"})
        if r.status_code >= 400:
            raise ArtifactStorageError(f"HTTP {r.status_code} downloading {url[:100]}")
        content = r.content
        content_type = r.headers.get("content-type", "image/jpeg").split(";")[0].strip().lower()
        if not content_type.startswith("image/") and not content_type.startswith("video/"):
            raise ArtifactStorageError(f"Invalid content type: {content_type}. Expected image/* or video/*")
        if not content:
            raise ArtifactStorageError(f"Empty response body from {url[:100]}")
        if len(content) > self.max_bytes:
            raise ArtifactStorageError(f"File too large: {len(content)} bytes")
        return content, content_type

    def _thumbnail(self, content: bytes, content_type: str, kind: JobKind, owner_id: str, job_id: str, index: int) -> Optional[str]:
        if not content_type.startswith("image/"):
            return None
        try:
            thumb = make_thumbnail(content, self.thumbnail_size)
            return self.store.put(thumbnail_key(kind, owner_id, job_id, index), thumb, "image/jpeg")
        except Exception as e:
            # Missing thumbnail falls back to the full image URL
            logger.warning("Thumbnail generation failed for job %s image %d: %s", job_id, index, e)
            return None
