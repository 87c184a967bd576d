from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class WebhookPayload(BaseModel):
    """Replicate prediction/training object as pushed to the webhook."""
    model_config = {"extra": "ignore"}
    id: str = Field(..., description="Provider job ID")
    status: str = Field(..., description="starting | processing | succeeded | failed | canceled")
    output: Optional[Any] = None
    error: Optional[Any] = None
    logs: Optional[str] = None
    version: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None


class WebhookAck(BaseModel):
    success: bool
    accepted: bool
    job_id: Optional[str] = None
    message: Optional[str] = None
