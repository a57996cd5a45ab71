"""Durable job queue, worker pool and item status store."""

from .backends import ItemStatusStore, QueueBackend
from .models import (
    ErrorInfo,
    ItemRecord,
    ItemStatus,
    JobItem,
    JobPayload,
    JobState,
    ProcessingResult,
    StateTransition,
)
from .processing import process_content
from .retry import RetryAction, RetryDecision, RetryPolicy
from .sqlite_backend import SQLiteDatabase, SQLiteJobQueue, SQLiteStatusStore
from .worker import JobWorkerPool

__all__ = [
    "QueueBackend",
    "ItemStatusStore",
    "ErrorInfo",
    "ItemRecord",
    "ItemStatus",
    "JobItem",
    "JobPayload",
    "JobState",
    "ProcessingResult",
    "StateTransition",
    "process_content",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "SQLiteDatabase",
    "SQLiteJobQueue",
    "SQLiteStatusStore",
    "JobWorkerPool",
]
