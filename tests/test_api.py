import base64
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from clients.replicate_client import ProviderError
from main import app
from services.runtime import build_runtime
from services.webhook import sign_webhook
from tests.conftest import download_handler, processing, succeeded

SECRET = "whsec_" + base64.b64encode(b"api-test-signing-key").decode()
USER = {"X-User-Id": "user-1"}


@pytest.fixture
def runtime(settings, session_factory, provider):
    settings = settings.model_copy(update={"replicate_webhook_secret": SECRET, "cron_secret": "cron-s3cret"})
    return build_runtime(
        settings,
        session_factory,
        provider=provider,
        download_transport=httpx.MockTransport(download_handler),
    )


@pytest.fixture
def client(runtime):
    app.state.runtime = runtime
    with TestClient(app) as c:
        yield c
    app.state.runtime = None


def post_webhook(client, payload, query=None, secret=SECRET):
    body = json.dumps(payload).encode()
    ts = str(int(time.time()))
    headers = {
        "content-type": "application/json",
        "webhook-id": "msg_1",
        "webhook-timestamp": ts,
        "webhook-signature": "v1," + sign_webhook(secret, "msg_1", ts, body),
    }
    return client.post("/api/webhooks/replicate", params=query or {}, content=body, headers=headers)


def create_job(client, **body):
    payload = {"kind": "generation", "model": "acme/flux", "input": {"prompt": "a cat"}}
    payload.update(body)
    r = client.post("/api/jobs", json=payload, headers=USER)
    assert r.status_code == 201, r.text
    return r.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requires_user(client):
    assert client.get("/api/jobs").status_code == 401
    assert client.post("/api/jobs", json={"model": "acme/flux"}).status_code == 401


def test_create_job_registers_webhook(client, provider):
    job = create_job(client)

    assert job["status"] == "QUEUED"
    assert job["external_job_id"] == "pred-1"
    assert job["polling"] is False
    external_id, model_ref, webhook = provider.created[0]
    assert model_ref == "acme/flux"
    assert webhook.startswith("https://photos.example.com/api/webhooks/replicate?")
    assert f"id={job['id']}" in webhook
    assert "userId=user-1" in webhook


def test_create_job_without_https_falls_back_to_polling(client, runtime, provider):
    runtime.settings = runtime.settings.model_copy(update={"public_base_url": "http://localhost:8001"})
    provider.script("pred-1", processing())

    create_job(client)

    assert provider.created[0][2] is None
    assert runtime.scheduler.is_polling("pred-1")
    client.delete("/api/poll/pred-1", headers=USER)


def test_training_needs_destination(client):
    r = client.post("/api/jobs", json={"kind": "training", "model": "acme/trainer:v1"}, headers=USER)
    assert r.status_code == 400
    r = client.post(
        "/api/jobs",
        json={"kind": "training", "model": "acme/trainer", "destination": "me/lora"},
        headers=USER,
    )
    assert r.status_code == 400


def test_provider_failure_marks_job_failed(client, provider):
    provider.create_error = ProviderError("Replicate API error 422: invalid input")

    r = client.post("/api/jobs", json={"model": "acme/flux"}, headers=USER)
    assert r.status_code == 502

    jobs = client.get("/api/jobs", headers=USER).json()
    assert len(jobs) == 1
    assert jobs[0]["status"] == "FAILED"
    assert "invalid input" in jobs[0]["error_message"]


def test_signed_webhook_completes_job_and_serves_artifacts(client):
    job = create_job(client)
    payload = {"id": "pred-1", "status": "succeeded", "output": ["https://replicate.delivery/x/out-0.png"]}

    r = post_webhook(client, payload, query={"type": "generation", "id": job["id"], "userId": "user-1"})
    assert r.status_code == 200
    assert r.json()["accepted"] is True

    done = client.get(f"/api/jobs/{job['id']}", headers=USER).json()
    assert done["status"] == "COMPLETED"
    assert done["storage_mode"] == "durable"
    assert done["progress"] == 100
    key = done["storage_keys"][0]
    assert done["output_urls"] == [f"https://photos.example.com/api/artifacts/{key}"]

    artifact = client.get(f"/api/artifacts/{key}")
    assert artifact.status_code == 200
    assert artifact.headers["content-type"] == "image/png"
    assert client.get("/api/artifacts/generated/nope/0.png").status_code == 404

    # Redelivery is acknowledged but changes nothing
    again = post_webhook(client, payload)
    assert again.status_code == 200
    assert client.get(f"/api/jobs/{job['id']}", headers=USER).json()["completed_at"] == done["completed_at"]


def test_webhook_rejects_bad_signature(client):
    create_job(client)
    other = "whsec_" + base64.b64encode(b"wrong").decode()
    r = post_webhook(client, {"id": "pred-1", "status": "succeeded"}, secret=other)
    assert r.status_code == 401


def test_webhook_for_unknown_job(client):
    r = post_webhook(client, {"id": "pred-unknown", "status": "succeeded"})
    assert r.status_code == 200
    assert r.json()["accepted"] is False


def test_webhook_invalid_payload(client):
    r = post_webhook(client, {"status": "succeeded"})
    assert r.status_code == 400


def test_jobs_are_owner_scoped(client):
    job = create_job(client)
    other = {"X-User-Id": "user-2"}
    assert client.get(f"/api/jobs/{job['id']}", headers=other).status_code == 404
    assert client.post(f"/api/jobs/{job['id']}/cancel", headers=other).status_code == 404
    assert client.delete("/api/poll/pred-1", headers=other).status_code == 404
    assert client.get("/api/jobs", headers=other).json() == []


def test_cancel_job(client, provider):
    job = create_job(client)

    r = client.post(f"/api/jobs/{job['id']}/cancel", headers=USER)
    assert r.status_code == 200
    assert r.json()["status"] == "CANCELLED"
    assert r.json()["error_message"] == "Job was cancelled by user"
    assert provider.canceled == ["pred-1"]

    assert client.post(f"/api/jobs/{job['id']}/cancel", headers=USER).status_code == 409


def test_cancel_refused_by_provider(client, provider):
    job = create_job(client)
    provider.cancel_result = False
    assert client.post(f"/api/jobs/{job['id']}/cancel", headers=USER).status_code == 409
    assert client.get(f"/api/jobs/{job['id']}", headers=USER).json()["status"] == "QUEUED"


def test_sync_single_job(client, provider):
    job = create_job(client)
    provider.script("pred-1", succeeded("https://replicate.delivery/x/out-0.png"))

    r = client.post(f"/api/jobs/{job['id']}/sync", headers=USER)
    assert r.status_code == 200
    assert r.json()["result"] == "updated"
    assert r.json()["job"]["status"] == "COMPLETED"


def test_sync_single_job_provider_down(client, provider):
    job = create_job(client)
    provider.script("pred-1", ProviderError("503"))
    assert client.post(f"/api/jobs/{job['id']}/sync", headers=USER).status_code == 502


def test_restart_polling_and_status(client, provider):
    job = create_job(client)
    provider.script("pred-1", processing())

    r = client.post(f"/api/jobs/{job['id']}/poll", headers=USER)
    assert r.status_code == 200
    assert r.json()["polling"] is True

    status = client.get("/api/poll/status", headers=USER).json()
    assert status["active_jobs"] == 1
    assert status["jobs"][0]["job_id"] == job["id"]
    assert client.get("/api/poll/status", headers={"X-User-Id": "user-2"}).json()["active_jobs"] == 0

    r = client.delete("/api/poll/pred-1", headers=USER)
    assert r.json()["stopped"] is True


def test_restart_polling_rejected_for_finished_job(client, provider):
    job = create_job(client)
    client.post(f"/api/jobs/{job['id']}/cancel", headers=USER)
    assert client.post(f"/api/jobs/{job['id']}/poll", headers=USER).status_code == 409


def test_manual_sync(client, provider):
    job = create_job(client)
    provider.script("pred-1", succeeded("https://replicate.delivery/x/out-0.png"))

    r = client.post("/api/sync/manual", headers=USER)
    assert r.status_code == 200
    stats = r.json()["stats"]
    assert stats["checked"] == 1
    assert stats["updated"] == 1
    assert client.get(f"/api/jobs/{job['id']}", headers=USER).json()["status"] == "COMPLETED"


def test_cron_sync_requires_secret(client, runtime):
    assert client.get("/api/cron/sync-jobs").status_code == 401
    assert client.get("/api/cron/sync-jobs", headers={"Authorization": "Bearer nope"}).status_code == 401

    r = client.get("/api/cron/sync-jobs", headers={"Authorization": "Bearer cron-s3cret"})
    assert r.status_code == 200
    assert r.json()["success"] is True


def test_refused_cancel_keeps_polling(client, runtime, provider):
    runtime.settings = runtime.settings.model_copy(update={"public_base_url": "http://localhost:8001"})
    provider.script("pred-1", processing())
    job = create_job(client)
    provider.cancel_result = False

    assert client.post(f"/api/jobs/{job['id']}/cancel", headers=USER).status_code == 409
    assert runtime.scheduler.is_polling("pred-1")

    provider.cancel_result = True
    r = client.post(f"/api/jobs/{job['id']}/cancel", headers=USER)
    assert r.status_code == 200
    assert r.json()["status"] == "CANCELLED"
    assert not runtime.scheduler.is_polling("pred-1")


def test_cancel_provider_error_keeps_polling(client, runtime, provider, monkeypatch):
    runtime.settings = runtime.settings.model_copy(update={"public_base_url": "http://localhost:8001"})
    provider.script("pred-1", processing())
    job = create_job(client)

    def broken_cancel(external_id, training=False):
        raise ProviderError("503")

    monkeypatch.setattr(provider, "cancel", broken_cancel)
    assert client.post(f"/api/jobs/{job['id']}/cancel", headers=USER).status_code == 502
    assert runtime.scheduler.is_polling("pred-1")
    client.delete("/api/poll/pred-1", headers=USER)
