"""Shared fixtures: SQLite job store, in-memory artifact store, scripted provider."""
import asyncio
import io
import threading
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker

from clients.replicate_client import ProviderError, ProviderStatus
from config import Settings
from database import JobKind, JobStatus, build_engine, init_db
from services.artifact_storage import ArtifactStorageError, ArtifactStore
from services.finalizer import ArtifactFinalizer
from services.job_store import JobStore
from services.reconciler import JobReconciler


def png_bytes(size=(16, 16)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 40, 40)).save(buf, format="PNG")
    return buf.getvalue()


PNG = png_bytes()


def download_handler(request: httpx.Request) -> httpx.Response:
    """Ephemeral provider URLs: .mp4 serves video, /missing 404s, anything else a PNG."""
    path = request.url.path
    if path.startswith("/missing"):
        return httpx.Response(404, text="gone")
    if path.endswith(".mp4"):
        return httpx.Response(200, content=b"\x00\x00\x00\x18ftypmp42", headers={"content-type": "video/mp4"})
    return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})


class MemoryArtifactStore(ArtifactStore):
    def __init__(self, fail_times: int = 0):
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self.puts: List[str] = []
        self.fail_times = fail_times
        self._lock = threading.Lock()

    def put(self, key, data, content_type):
        with self._lock:
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ArtifactStorageError("bucket unavailable")
            self.puts.append(key)
            self.objects[key] = (data, content_type)
        return f"https://cdn.test/{key}"

    def get(self, key):
        return self.objects.get(key)


class CountingFinalizer(ArtifactFinalizer):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: List[Tuple[str, List[str]]] = []

    def finalize(self, urls, job_id, owner_id, kind=JobKind.GENERATION):
        self.calls.append((job_id, list(urls)))
        return super().finalize(urls, job_id, owner_id, kind)


class FakeProvider:
    """Scripted provider: each external id replays a list of statuses/exceptions, repeating the last."""

    def __init__(self):
        self.scripts: Dict[str, list] = {}
        self.calls: List[str] = []
        self.created: List[tuple] = []
        self.canceled: List[str] = []
        self.cancel_result = True
        self.create_error: Optional[Exception] = None
        self.gates: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._next_id = 0

    def script(self, external_id, *steps):
        self.scripts[external_id] = list(steps)

    def get_status(self, external_id, training=False):
        gate = self.gates.get(external_id)
        if gate is not None:
            gate.wait(timeout=5)
        with self._lock:
            self.calls.append(external_id)
            steps = self.scripts.get(external_id)
            if not steps:
                raise ProviderError(f"no script for {external_id}")
            step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return step

    def _new_id(self):
        with self._lock:
            self._next_id += 1
            return f"pred-{self._next_id}"

    def create_prediction(self, model_ref, inputs, webhook=None):
        if self.create_error:
            raise self.create_error
        external_id = self._new_id()
        self.created.append((external_id, model_ref, webhook))
        return external_id

    def create_training(self, model_ref, destination, inputs, webhook=None):
        if self.create_error:
            raise self.create_error
        external_id = self._new_id()
        self.created.append((external_id, model_ref, webhook))
        return external_id

    def cancel(self, external_id, training=False):
        self.canceled.append(external_id)
        return self.cancel_result


def processing(progress=50) -> ProviderStatus:
    return ProviderStatus(status=JobStatus.RUNNING, raw_status="processing", progress=progress)


def succeeded(*urls) -> ProviderStatus:
    return ProviderStatus(status=JobStatus.COMPLETED, raw_status="succeeded", outputs=list(urls), progress=100)


def failed(error="CUDA out of memory") -> ProviderStatus:
    return ProviderStatus(status=JobStatus.FAILED, raw_status="failed", error=error)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        replicate_api_token="r8_test",
        public_base_url="https://photos.example.com",
        database_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        polling_interval_seconds=0.01,
        polling_max_backoff_seconds=0.02,
        finalize_backoff_seconds=0,
        sync_item_delay_ms=0,
        replicate_webhook_secret=None,
    )


@pytest.fixture
def session_factory(settings) -> sessionmaker:
    engine = build_engine(settings.database_url)
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def artifacts() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture
def finalizer(artifacts) -> CountingFinalizer:
    return CountingFinalizer(
        artifacts,
        retries=3,
        backoff_seconds=0,
        transport=httpx.MockTransport(download_handler),
        sleep=lambda _: None,
    )


@pytest.fixture
def store(session_factory, finalizer) -> JobStore:
    return JobStore(session_factory, finalizer)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def reconciler(store, provider) -> JobReconciler:
    return JobReconciler(store, provider)
