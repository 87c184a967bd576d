"""
Provider webhook handling: signature check, job lookup, and the same
reconcile step the poller uses.
"""
import base64
import binascii
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from clients.replicate_client import parse_prediction
from database import Job
from services.job_store import ApplyResult
from services.reconciler import JobReconciler

logger = logging.getLogger(__name__)

HDR_ID = "webhook-id"
HDR_TS = "webhook-timestamp"
HDR_SIG = "webhook-signature"

TIMESKEW_SECONDS = 5 * 60


def sign_webhook(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Replicate (standard-webhooks) signature: base64(HMAC_SHA256(key, f"{id}.{ts}.{body}"))."""
    key = secret.split("_", 1)[1] if secret.startswith("whsec_") else secret
    to_sign = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(base64.b64decode(key), to_sign, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    now: Optional[float] = None,
) -> bool:
    msg_id = headers.get(HDR_ID)
    timestamp = headers.get(HDR_TS)
    signatures = headers.get(HDR_SIG)
    if not msg_id or not timestamp or not signatures:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > TIMESKEW_SECONDS:
        logger.warning("Webhook %s timestamp outside tolerance", msg_id)
        return False
    try:
        expected = sign_webhook(secret, msg_id, timestamp, body)
    except (binascii.Error, ValueError):
        logger.error("Replicate webhook secret is not valid base64")
        return False
    for part in signatures.split():
        version, _, signature = part.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return True
    return False


@dataclass
class WebhookOutcome:
    accepted: bool
    reason: str
    job_id: Optional[str] = None
    result: Optional[ApplyResult] = None


class WebhookReconciler:
    def __init__(self, reconciler: JobReconciler):
        self._reconciler = reconciler

    def resolve(
        self,
        payload: Dict[str, Any],
        record_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> Optional[Job]:
        """Find the job a notification refers to, by query hints first, then by provider id."""
        store = self._reconciler.store
        external_id = payload.get("id")
        job = None
        if record_id:
            job = store.get(record_id, owner_id)
            if job and job.external_job_id and external_id and job.external_job_id != external_id:
                logger.warning(
                    "Webhook for %s names job %s, which tracks %s; ignoring hint",
                    external_id, record_id, job.external_job_id,
                )
                job = None
        if job is None and external_id:
            job = store.find_by_external_id(external_id)
            if job and owner_id and job.owner_id != owner_id:
                logger.warning("Webhook for %s carries foreign owner %s", external_id, owner_id)
                job = None
        return job

    def apply(self, job: Job, payload: Dict[str, Any]) -> ApplyResult:
        status = parse_prediction(payload)
        result = self._reconciler.reconcile(job.id, job.owner_id, status, "webhook")
        logger.info(
            "Webhook %s (%s) for job %s: %s",
            payload.get("id"), status.raw_status, job.id, result.value,
        )
        return result

    def handle(
        self,
        payload: Dict[str, Any],
        record_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> WebhookOutcome:
        job = self.resolve(payload, record_id, owner_id)
        if job is None:
            logger.info("Webhook for %s matches no job; might be external or test job", payload.get("id"))
            return WebhookOutcome(accepted=False, reason="job not found")
        result = self.apply(job, payload)
        return WebhookOutcome(accepted=True, reason="applied", job_id=job.id, result=result)
