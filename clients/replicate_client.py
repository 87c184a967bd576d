"""
Replicate API client: job submission, status checks and cancellation.
"""
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from database import JobStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    pass

class ProviderRateLimit(ProviderError):
    pass

class ProviderNotFound(ProviderError):
    pass


# Replicate status vocabulary -> internal job status
STATUS_MAP = {
    "starting": JobStatus.QUEUED,
    "processing": JobStatus.RUNNING,
    "succeeded": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "canceled": JobStatus.CANCELLED,
    "cancelled": JobStatus.CANCELLED,
}

_STATUS_PROGRESS = {
    JobStatus.QUEUED: 5,
    JobStatus.RUNNING: 50,
    JobStatus.COMPLETED: 100,
}

# Object-shaped outputs: keys holding a list of URLs, then keys holding a single URL
_URL_LIST_KEYS = ("images", "urls", "outputs", "videos")
_URL_KEYS = ("url", "image", "video", "weights")

_PERCENT_RE = re.compile(r"(\d{1,3})%")


@dataclass
class ProviderStatus:
    status: JobStatus
    raw_status: str
    outputs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    progress: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def normalize_output(output: Any) -> List[str]:
    """Flatten every observed output shape (URL, list of URLs, object with URLs) to a list of URLs."""
    if output is None:
        return []
    if isinstance(output, str):
        return [output] if output.strip() else []
    if isinstance(output, list):
        urls: List[str] = []
        for item in output:
            if isinstance(item, str) and item.strip():
                urls.append(item)
            elif isinstance(item, dict) and item.get("url"):
                urls.append(item["url"])
        return urls
    if isinstance(output, dict):
        for key in _URL_LIST_KEYS:
            if isinstance(output.get(key), list):
                return normalize_output(output[key])
        for key in _URL_KEYS:
            value = output.get(key)
            if isinstance(value, str) and value.strip():
                return [value]
    logger.warning("Unrecognized provider output shape: %r", type(output).__name__)
    return []


def _progress_from_logs(logs: Optional[str]) -> Optional[int]:
    if not logs:
        return None
    found = _PERCENT_RE.findall(logs[-2000:])
    if not found:
        return None
    return max(0, min(100, int(found[-1])))


def parse_prediction(data: Dict[str, Any]) -> ProviderStatus:
    """Normalize a prediction/training object (API response or webhook body)."""
    raw = str(data.get("status") or "").lower()
    status = STATUS_MAP.get(raw)
    if status is None:
        logger.warning("Unknown provider status %r for %s; treating as running", raw, data.get("id"))
        status = JobStatus.RUNNING
    progress = _STATUS_PROGRESS.get(status)
    if status == JobStatus.RUNNING:
        progress = _progress_from_logs(data.get("logs")) or progress
    error = data.get("error")
    if error is not None and not isinstance(error, str):
        error = str(error)
    return ProviderStatus(
        status=status,
        raw_status=raw,
        outputs=normalize_output(data.get("output")) if status == JobStatus.COMPLETED else [],
        error=error or None,
        progress=progress,
    )


class ReplicateClient:
    WEBHOOK_EVENTS = ["start", "completed"]

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout_seconds: int = 60,
        rate_limit_retries: int = 4,
        rate_limit_base_wait: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.rate_limit_retries = max(1, rate_limit_retries)
        self.rate_limit_base_wait = rate_limit_base_wait
        self.transport = transport
        self._sleep = sleep

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_seconds, transport=self.transport)

    def _get(self, path: str) -> Dict[str, Any]:
        try:
            with self._client() as client:
                r = client.get(f"{self.base_url}{path}", headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderError(f"Replicate request failed: {e}") from e
        if r.status_code == 404:
            raise ProviderNotFound(f"Replicate job not found: {path}")
        if r.status_code >= 400:
            raise ProviderError(f"Replicate API error {r.status_code}: {r.text}")
        return r.json()

    def _submit(self, path: str, payload: Dict[str, Any]) -> str:
        """POST a new job, waiting out 429s. Returns the provider job id."""
        url = f"{self.base_url}{path}"
        for attempt in range(self.rate_limit_retries):
            try:
                with self._client() as client:
                    r = client.post(url, json=payload, headers=self._headers())
            except httpx.HTTPError as e:
                raise ProviderError(f"Replicate request failed: {e}") from e
            if r.status_code == 429:
                wait = self.rate_limit_base_wait * (2 ** attempt)
                if attempt < self.rate_limit_retries - 1:
                    logger.warning(
                        "Replicate rate limit (429), waiting %.0fs before retry %d/%d",
                        wait,
                        attempt + 1,
                        self.rate_limit_retries - 1,
                    )
                    self._sleep(wait)
                    continue
                raise ProviderRateLimit("Rate limit exceeded after retries")
            if r.status_code >= 400:
                raise ProviderError(f"Replicate API error {r.status_code}: {r.text}")
            job_id = r.json().get("id")
            if not job_id:
                raise ProviderError("No job ID returned")
            return job_id
        raise ProviderRateLimit("Rate limit exceeded")

    def _with_webhook(self, payload: Dict[str, Any], webhook: Optional[str]) -> Dict[str, Any]:
        if webhook:
            payload["webhook"] = webhook
            payload["webhook_events_filter"] = list(self.WEBHOOK_EVENTS)
        return payload

    def create_prediction(self, model_ref: str, inputs: Dict[str, Any], webhook: Optional[str] = None) -> str:
        """Submit a prediction. model_ref is "owner/name", "owner/name:version" or a bare version id."""
        if ":" in model_ref:
            payload = {"version": model_ref.split(":", 1)[1], "input": inputs}
            path = "/predictions"
        elif "/" in model_ref:
            payload = {"input": inputs}
            path = f"/models/{model_ref}/predictions"
        else:
            payload = {"version": model_ref, "input": inputs}
            path = "/predictions"
        prediction_id = self._submit(path, self._with_webhook(payload, webhook))
        logger.info("Prediction submitted: %s (%s)", prediction_id, model_ref)
        return prediction_id

    def create_training(
        self,
        model_ref: str,
        destination: str,
        inputs: Dict[str, Any],
        webhook: Optional[str] = None,
    ) -> str:
        """Submit a training run for "owner/name:version" into the destination model."""
        if ":" not in model_ref:
            raise ValueError("Training requires a versioned model reference (owner/name:version)")
        model, version = model_ref.split(":", 1)
        payload = {"destination": destination, "input": inputs}
        training_id = self._submit(
            f"/models/{model}/versions/{version}/trainings",
            self._with_webhook(payload, webhook),
        )
        logger.info("Training submitted: %s -> %s", training_id, destination)
        return training_id

    def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        """Get a single prediction by ID. Returns full API response."""
        return self._get(f"/predictions/{prediction_id}")

    def get_training(self, training_id: str) -> Dict[str, Any]:
        return self._get(f"/trainings/{training_id}")

    def get_status(self, external_id: str, training: bool = False) -> ProviderStatus:
        data = self.get_training(external_id) if training else self.get_prediction(external_id)
        return parse_prediction(data)

    def cancel(self, external_id: str, training: bool = False) -> bool:
        """Ask the provider to cancel a job. Returns False if it could not be canceled."""
        kind = "trainings" if training else "predictions"
        try:
            with self._client() as client:
                r = client.post(f"{self.base_url}/{kind}/{external_id}/cancel", headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderError(f"Replicate request failed: {e}") from e
        if r.status_code >= 400:
            logger.warning("Cancel of %s rejected (%s): %s", external_id, r.status_code, r.text[:200])
            return False
        return True
