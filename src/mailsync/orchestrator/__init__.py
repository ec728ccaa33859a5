"""Per-account job scheduling, control surface and daemon lifecycle."""

from .control import SyncControlService
from .daemon import MailSyncDaemon, MailSyncRuntime
from .job_state import GlobalStatus, JobState, JobStatus
from .scheduler import SyncJob, SyncScheduler

__all__ = [
    "GlobalStatus",
    "JobState",
    "JobStatus",
    "MailSyncDaemon",
    "MailSyncRuntime",
    "SyncControlService",
    "SyncJob",
    "SyncScheduler",
]
