from .events import EventBus, JobCompleted, JobEnqueued, JobFailed, JobStatusChanged  # noqa: F401
from .models import CacheJob, CacheKey, CacheRecord, ImageKind, JobStatus, MediaType, QueueStats  # noqa: F401
from .queue import CacheQueue  # noqa: F401
from .repository import CacheRecordRepository  # noqa: F401

__all__ = [
    "CacheQueue",
    "CacheRecordRepository",
    "EventBus",
    "CacheJob",
    "CacheKey",
    "CacheRecord",
    "ImageKind",
    "JobStatus",
    "MediaType",
    "QueueStats",
    "JobEnqueued",
    "JobStatusChanged",
    "JobCompleted",
    "JobFailed",
]
