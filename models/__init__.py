from .job_schemas import JobCreateRequest, JobResponse, PollingStatusResponse, SyncJobResponse
from .schemas import WebhookAck, WebhookPayload
