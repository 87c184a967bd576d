from .job_store import ApplyResult, JobStore
from .polling import PollingScheduler
from .runtime import Runtime, build_runtime
from .sync import SyncService
from .webhook import WebhookReconciler
