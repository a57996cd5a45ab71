"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


class JobState(str, Enum):
    """Queue-level job states.

    State transitions:
        waiting → active      (worker claims)
        active → completed    (processing succeeded)
        active → waiting      (retry with delay, or lease expired)
        active → failed       (attempts exhausted)
    """

    WAITING = "waiting"  # Queued, claimable once available_at has passed
    ACTIVE = "active"  # Claimed under a lease
    COMPLETED = "completed"  # Terminal
    FAILED = "failed"  # Terminal


class ItemStatus(str, Enum):
    """Item-level lifecycle states.

    State transitions:
        uploaded → processing   (worker starts an attempt)
        processing → processed  (attempt succeeded)
        processing → failed     (retries exhausted)
    """

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


TERMINAL_ITEM_STATUSES = (ItemStatus.PROCESSED.value, ItemStatus.FAILED.value)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobPayload(BaseModel):
    """Logical submission shape: which item to process and where its bytes live."""

    item_id: str = Field(..., min_length=1, description="Identifier of the item record")
    content_locator: str = Field(..., min_length=1, description="Path or file:// URI")


class JobItem(BaseModel):
    """Job record as persisted by the queue.

    attempt_count is incremented on every claim, so it also serves as the
    fencing token for requeue/finalize and for item status writes.
    """

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    item_id: str = Field(..., description="Target item identifier")
    content_locator: str = Field(..., description="Locator of the stored content")
    state: JobState = Field(default=JobState.WAITING, description="Current job state")
    attempt_count: int = Field(default=0, ge=0, description="Execution attempts made so far")
    max_attempts: int = Field(default=3, ge=1, description="Max attempt limit")
    created_at: datetime = Field(default_factory=utc_now, description="Queue time")
    available_at: float = Field(default=0.0, description="Epoch seconds when claimable")
    started_at: Optional[datetime] = Field(default=None, description="Latest claim time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")
    lease_expires_at: Optional[float] = Field(default=None, description="Epoch seconds")
    worker_id: Optional[str] = Field(default=None, description="Worker holding the lease")
    last_error: Optional[str] = Field(default=None, description="Last error message (truncated)")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @property
    def payload(self) -> JobPayload:
        return JobPayload(item_id=self.item_id, content_locator=self.content_locator)

    def metadata(self) -> Dict[str, Any]:
        """Job view exposed to monitoring and collaborators."""
        return {"job_id": self.job_id, "attempt_count": self.attempt_count, "state": self.state}


class ProcessingResult(BaseModel):
    """Outcome of a successful processing attempt."""

    digest: str = Field(..., pattern=r"^[0-9a-f]+$", description="Hex-encoded SHA-256")
    byte_size: int = Field(..., ge=0, description="Content size in bytes")
    completed_at: str = Field(..., description="ISO-8601 UTC completion timestamp")


class ErrorInfo(BaseModel):
    """Failure payload stored on a failed item."""

    message: str = Field(..., min_length=1, description="Human-readable failure message")


class ItemRecord(BaseModel):
    """Durable representation of the item being processed."""

    item_id: str
    content_locator: str
    status: ItemStatus = Field(default=ItemStatus.UPLOADED)
    result: Optional[ProcessingResult] = None
    error_info: Optional[ErrorInfo] = None
    attempt: int = Field(default=0, ge=0, description="Fencing token of the last writer")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @model_validator(mode="after")
    def payload_matches_status(self) -> "ItemRecord":
        """result only when processed, error_info only when failed."""
        if self.result is not None and self.status != ItemStatus.PROCESSED.value:
            raise ValueError(f"result present with status {self.status}")
        if self.error_info is not None and self.status != ItemStatus.FAILED.value:
            raise ValueError(f"error_info present with status {self.status}")
        if self.status == ItemStatus.PROCESSED.value and self.result is None:
            raise ValueError("processed item requires a result")
        if self.status == ItemStatus.FAILED.value and self.error_info is None:
            raise ValueError("failed item requires error_info")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ITEM_STATUSES


class StateTransition(BaseModel):
    """Audit log entry for job state changes.

    Tracks all state transitions for debugging and monitoring.
    """

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utc_now, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    attempt: int = Field(default=0, ge=0, description="Attempt number at transition time")
    delay_ms: Optional[int] = Field(default=None, description="Backoff applied on requeue")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
