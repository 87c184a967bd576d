"""
Durable object store for finalized job outputs.

Two backends: blobs in the application database (default; survives redeploys
without extra infrastructure) and S3. Both key objects the same way and
return a stable permanent URL from put().
"""
import io
import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image
from sqlalchemy.orm import sessionmaker

from config import Settings
from database import StoredArtifact

logger = logging.getLogger(__name__)


class ArtifactStorageError(Exception):
    pass


class ArtifactStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under key (overwriting). Returns the permanent URL."""
        ...

    @abstractmethod
    def get(self, key: str) -> Optional[Tuple[bytes, str]]:
        """Return (bytes, content_type) or None if the key is unknown."""
        ...


class DatabaseArtifactStore(ArtifactStore):
    def __init__(self, session_factory: sessionmaker, public_base_url: Optional[str]):
        self._session_factory = session_factory
        self._base_url = (public_base_url or "").rstrip("/")

    def put(self, key: str, data: bytes, content_type: str) -> str:
        if not self._base_url:
            raise ArtifactStorageError("PUBLIC_BASE_URL not set; cannot create permanent artifact URLs")
        db = self._session_factory()
        try:
            db.merge(StoredArtifact(key=key, content_type=content_type, data=data))
            db.commit()
        except Exception as e:
            db.rollback()
            raise ArtifactStorageError(f"Failed to store {key}: {e}") from e
        finally:
            db.close()
        return f"{self._base_url}/api/artifacts/{key}"

    def get(self, key: str) -> Optional[Tuple[bytes, str]]:
        db = self._session_factory()
        try:
            row = db.get(StoredArtifact, key)
            if row is None:
                return None
            return row.data, row.content_type
        finally:
            db.close()


class S3ArtifactStore(ArtifactStore):
    def __init__(self, bucket: str, region: str, client=None, **credentials):
        if client is None:
            client = boto3.client("s3", region_name=region, **credentials)
        self._s3 = client
        self.bucket = bucket
        self.region = region

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self._s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise ArtifactStorageError(f"S3 upload failed for {key}: {e}") from e
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def get(self, key: str) -> Optional[Tuple[bytes, str]]:
        try:
            obj = self._s3.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise ArtifactStorageError(f"S3 download failed for {key}: {e}") from e
        return obj["Body"].read(), obj.get("ContentType", "application/octet-stream")


def build_artifact_store(settings: Settings, session_factory: sessionmaker) -> ArtifactStore:
    backend = (settings.storage_backend or "database").strip().lower()
    if backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("S3_BUCKET must be set when STORAGE_BACKEND=s3")
        credentials = {}
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            credentials = {
                "aws_access_key_id": settings.aws_access_key_id,
                "aws_secret_access_key": settings.aws_secret_access_key,
            }
        return S3ArtifactStore(settings.s3_bucket, settings.aws_region, **credentials)
    if backend != "database":
        raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend}")
    return DatabaseArtifactStore(session_factory, settings.public_base_url)


def make_thumbnail(data: bytes, size: int = 400) -> bytes:
    """Downscale an image to fit size x size; returns JPEG bytes."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail((size, size))
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=80, optimize=True)
    return out.getvalue()
