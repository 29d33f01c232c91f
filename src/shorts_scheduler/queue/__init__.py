"""Per-user job queues, persistence, batch tracking and audit trail."""

from .backends import AuditLog, NullAuditLog, QueueStore
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    BatchInfo,
    BatchSummary,
    JobStatus,
    PostProcessingOptions,
    ScheduledJob,
    StateTransition,
    can_transition,
)
from .store import InMemoryQueueStore, JsonQueueStore
from .audit import SQLiteAuditLog
from .batch import BatchTracker
from .manager import QueueManager

__all__ = [
    "AuditLog",
    "NullAuditLog",
    "QueueStore",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "BatchInfo",
    "BatchSummary",
    "JobStatus",
    "PostProcessingOptions",
    "ScheduledJob",
    "StateTransition",
    "can_transition",
    "InMemoryQueueStore",
    "JsonQueueStore",
    "SQLiteAuditLog",
    "BatchTracker",
    "QueueManager",
]
