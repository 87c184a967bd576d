from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from database import JobKind


class JobCreateRequest(BaseModel):
    kind: JobKind = JobKind.GENERATION
    model: str = Field(..., description='"owner/name", "owner/name:version" or a version id')
    input: Dict[str, Any] = Field(default_factory=dict)
    destination: Optional[str] = None  # training only: "owner/name" to push weights to


class JobResponse(BaseModel):
    id: str
    kind: str
    status: str
    external_job_id: Optional[str] = None
    progress: int = 0
    output_urls: List[str] = Field(default_factory=list)
    thumbnail_urls: List[str] = Field(default_factory=list)
    storage_keys: List[str] = Field(default_factory=list)
    storage_mode: Optional[str] = None
    error_message: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    polling: bool = False


class SyncJobResponse(BaseModel):
    job: JobResponse
    result: Optional[str] = None


class PollingJobInfo(BaseModel):
    external_id: str
    job_id: str
    owner_id: str
    kind: str
    attempts: int
    max_attempts: int
    interval_seconds: float
    consecutive_errors: int
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    started_at: datetime


class PollingStatusResponse(BaseModel):
    active_jobs: int
    jobs: List[PollingJobInfo]
