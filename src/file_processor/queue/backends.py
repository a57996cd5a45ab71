from __future__ import annotations

"""Abstract base classes for the job queue and the item status store.

The worker pool only talks to these interfaces. The SQLite implementations
are local-first and crash-safe; a networked broker or a relational store can
replace them without touching the worker.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

if TYPE_CHECKING:
    from .models import ErrorInfo, ItemRecord, JobItem, JobPayload, ProcessingResult


class QueueBackend(ABC):
    """Abstract durable queue.

    Implementations must provide:
    - Persistence beyond the submitting process
    - Atomic claim (at most one active claim per job)
    - Delayed requeue
    - Lease expiry so crashed workers never strand a job
    - Fencing: requeue/finalize only apply to the attempt that holds the lease
    """

    @abstractmethod
    def submit(self, payload: "JobPayload", max_attempts: Optional[int] = None) -> str:
        """Persist a new job in 'waiting' state.

        Args:
            payload: Item id and content locator
            max_attempts: Per-job attempt limit (backend default if None)

        Returns:
            The new job_id

        Implementation notes:
        - Must not block on execution
        - Job is eligible for claim immediately
        """
        pass

    @abstractmethod
    def claim_next(self, worker_id: str, lease_timeout_s: float) -> Optional["JobItem"]:
        """Atomically claim the oldest eligible waiting job.

        Args:
            worker_id: Unique identifier for the claiming worker
            lease_timeout_s: Seconds until the claim expires unless renewed

        Returns:
            JobItem in 'active' state, or None if nothing is eligible

        Implementation notes:
        - MUST be safe under concurrent callers
        - FIFO among jobs whose delay has elapsed
        - Increments attempt_count
        """
        pass

    @abstractmethod
    def requeue(
        self, job_id: str, attempt: int, delay_ms: int, error: Optional[str] = None
    ) -> bool:
        """Return an active job to 'waiting', ineligible for delay_ms.

        Returns:
            False if the job is no longer held by this attempt
        """
        pass

    @abstractmethod
    def finalize(
        self, job_id: str, attempt: int, outcome: str, error: Optional[str] = None
    ) -> bool:
        """Move an active job to 'completed' or 'failed' (terminal).

        Returns:
            False if the job is no longer held by this attempt
        """
        pass

    @abstractmethod
    def extend_lease(self, job_id: str, attempt: int, lease_timeout_s: float) -> bool:
        """Heartbeat: push the lease deadline of an active job forward."""
        pass

    @abstractmethod
    def reclaim_expired(self) -> List["JobItem"]:
        """Crash recovery: release active jobs whose lease has expired.

        Returns:
            Jobs that were failed because the expired attempt was their last

        Implementation notes:
        - Released jobs go back to 'waiting' and are claimable at once
        - Jobs with no attempts left are finalized 'failed' instead
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["JobItem"]:
        """Query a single job (None if unknown)."""
        pass

    @abstractmethod
    def get_all_jobs(self, state_filter: Optional[str] = None) -> List["JobItem"]:
        """Query jobs, optionally filtered by state."""
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, int]:
        """Counts per state plus 'total'."""
        pass


class ItemStatusStore(ABC):
    """Abstract item status record store.

    The submitter creates records in 'uploaded' state; the worker pool is the
    only component that mutates them afterwards.
    """

    @abstractmethod
    def create(self, item_id: str, content_locator: str) -> "ItemRecord":
        """Create (or reset) an item record in 'uploaded' state."""
        pass

    @abstractmethod
    def read(self, item_id: str) -> Optional["ItemRecord"]:
        """Current record, or None if unknown."""
        pass

    @abstractmethod
    def write(
        self,
        item_id: str,
        status: str,
        payload: Union["ProcessingResult", "ErrorInfo", Dict[str, Any], None] = None,
        attempt: int = 0,
    ) -> bool:
        """Atomically replace status and exactly one of result/error_info.

        Args:
            item_id: Item identifier
            status: 'processing', 'processed' or 'failed'
            payload: ProcessingResult for 'processed', ErrorInfo for 'failed',
                     None for 'processing'
            attempt: Fencing token (job attempt number) of the writer

        Returns:
            True if applied, False if fenced off (record terminal, or a newer
            attempt already wrote)

        Raises:
            ValueError: If payload does not match status
            StatusWriteFailure: If the store itself fails
        """
        pass
