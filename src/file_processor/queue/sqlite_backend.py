"""SQLite implementations of QueueBackend and ItemStatusStore.

This module provides the local-first, crash-safe queue implementation using:
- sqlite-utils for table access and simple inserts
- WAL mode for better concurrent performance
- One connection per thread (sqlite3 connections are not shared)
- BEGIN IMMEDIATE transactions for atomic claim/requeue/finalize
- Exponential backoff retry for database lock handling
- Attempt-number fencing so stale workers cannot clobber newer state
"""

import json
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar, Union

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for queue functionality. "
        "Install it with: pip install sqlite-utils"
    )

from ..errors import QueueUnavailable, StatusWriteFailure
from ..log import get_logger
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
    utc_now,
)

logger = get_logger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
-- Jobs table (queue-owned)
CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT UNIQUE NOT NULL,
    item_id TEXT NOT NULL,
    content_locator TEXT NOT NULL,
    state TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    created_at TEXT NOT NULL,
    available_at REAL NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    lease_expires_at REAL,
    worker_id TEXT,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(state, available_at, seq);
CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(state, lease_expires_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    attempt INTEGER NOT NULL DEFAULT 0,
    delay_ms INTEGER,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES jobs(job_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, id);

-- Item status records (written by the submitter, then by workers)
CREATE TABLE IF NOT EXISTS items (
    item_id TEXT PRIMARY KEY,
    content_locator TEXT NOT NULL,
    status TEXT NOT NULL,
    result TEXT,
    error_info TEXT,
    attempt INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
"""

JOB_COLUMNS = (
    "job_id",
    "item_id",
    "content_locator",
    "state",
    "attempt_count",
    "max_attempts",
    "created_at",
    "available_at",
    "started_at",
    "completed_at",
    "lease_expires_at",
    "worker_id",
    "last_error",
)
_JOB_SELECT = ", ".join(JOB_COLUMNS)


class SQLiteDatabase:
    """Per-thread sqlite-utils handles onto one database file.

    Connections run in autocommit mode; writers open explicit
    BEGIN IMMEDIATE transactions through transaction().
    """

    def __init__(self, db_path: Union[str, Path], busy_timeout_s: float = 5.0):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = busy_timeout_s
        self._local = threading.local()

        self.db.executescript(SCHEMA_SQL)

    @property
    def db(self) -> Database:
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path), timeout=self.busy_timeout_s, isolation_level=None
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
            db = Database(conn)
            self._local.db = db
        return db

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE takes the write lock up front, serializing writers."""
        conn = self.db.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def close(self) -> None:
        db = getattr(self._local, "db", None)
        if db is not None:
            db.conn.close()
            self._local.db = None


def _now_iso() -> str:
    return utc_now().isoformat()


class SQLiteJobQueue(QueueBackend):
    """SQLite-based durable queue with leases and fenced transitions.

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - Claim is a single UPDATE ... WHERE job_id = (SELECT ...) RETURNING
    - requeue/finalize/extend_lease match on (job_id, state, attempt_count)
    - Exponential backoff handles transient lock contention
    """

    def __init__(
        self,
        db_path: Union[str, Path, SQLiteDatabase],
        max_attempts: int = 3,
        max_lock_retries: int = 3,
    ):
        """Initialize queue backend.

        Args:
            db_path: Database file, or an SQLiteDatabase shared with a status store
            max_attempts: Default attempt limit for submitted jobs
            max_lock_retries: Attempts per operation on lock contention
        """
        try:
            self.database = (
                db_path if isinstance(db_path, SQLiteDatabase) else SQLiteDatabase(db_path)
            )
        except sqlite3.Error as e:
            raise QueueUnavailable(f"Cannot open queue database {db_path}: {e}") from e
        self.max_attempts = max_attempts
        self.max_lock_retries = max_lock_retries

    @property
    def db(self) -> Database:
        return self.database.db

    def _with_retry(self, operation: Callable[[], T]) -> T:
        """Run operation with backoff on SQLITE_BUSY.

        Exponential backoff: 100ms, 200ms, 400ms delays. Any other database
        error, or contention that outlasts the retries, is fatal.
        """
        for attempt in range(self.max_lock_retries):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.max_lock_retries - 1:
                    time.sleep(0.1 * (2**attempt))
                    continue
                raise QueueUnavailable(f"Queue store failure: {e}") from e
            except sqlite3.DatabaseError as e:
                raise QueueUnavailable(f"Queue store failure: {e}") from e
        raise QueueUnavailable("Queue store failure: retries exhausted")

    def submit(self, payload: JobPayload, max_attempts: Optional[int] = None) -> str:
        """Persist a new waiting job and return its id."""
        job = JobItem(
            job_id=str(uuid.uuid4()),
            item_id=payload.item_id,
            content_locator=payload.content_locator,
            max_attempts=max_attempts or self.max_attempts,
            available_at=time.time(),
        )
        record = {
            "job_id": job.job_id,
            "item_id": job.item_id,
            "content_locator": job.content_locator,
            "state": JobState.WAITING.value,
            "attempt_count": 0,
            "max_attempts": job.max_attempts,
            "created_at": job.created_at.isoformat(),
            "available_at": job.available_at,
        }

        def _insert() -> None:
            with self.database.transaction() as conn:
                conn.execute(
                    f"INSERT INTO jobs ({', '.join(record)}) VALUES ({', '.join('?' * len(record))})",
                    list(record.values()),
                )
                self._log_transition(conn, job.job_id, None, JobState.WAITING.value)

        self._with_retry(_insert)
        logger.debug("job_submitted", job_id=job.job_id, item_id=job.item_id)
        return job.job_id

    def claim_next(self, worker_id: str, lease_timeout_s: float) -> Optional[JobItem]:
        """Atomically claim the oldest eligible waiting job."""

        def _claim() -> Optional[JobItem]:
            now = time.time()
            with self.database.transaction() as conn:
                row = conn.execute(
                    f"""
                    UPDATE jobs
                    SET state = ?,
                        worker_id = ?,
                        attempt_count = attempt_count + 1,
                        started_at = ?,
                        lease_expires_at = ?
                    WHERE job_id = (
                        SELECT job_id FROM jobs
                        WHERE state = ? AND available_at <= ?
                        ORDER BY seq ASC
                        LIMIT 1
                    )
                    RETURNING {_JOB_SELECT}
                    """,
                    (
                        JobState.ACTIVE.value,
                        worker_id,
                        _now_iso(),
                        now + lease_timeout_s,
                        JobState.WAITING.value,
                        now,
                    ),
                ).fetchone()

                if row is None:
                    return None

                job = self._row_to_job_item(row)
                self._log_transition(
                    conn,
                    job.job_id,
                    JobState.WAITING.value,
                    JobState.ACTIVE.value,
                    worker_id=worker_id,
                    attempt=job.attempt_count,
                )
                return job

        return self._with_retry(_claim)

    def requeue(
        self, job_id: str, attempt: int, delay_ms: int, error: Optional[str] = None
    ) -> bool:
        """active → waiting, claimable again after delay_ms."""
        error_snippet = error[:500] if error else None

        def _requeue() -> bool:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        available_at = ?,
                        lease_expires_at = NULL,
                        worker_id = NULL,
                        last_error = COALESCE(?, last_error)
                    WHERE job_id = ? AND state = ? AND attempt_count = ?
                    """,
                    (
                        JobState.WAITING.value,
                        time.time() + delay_ms / 1000.0,
                        error_snippet,
                        job_id,
                        JobState.ACTIVE.value,
                        attempt,
                    ),
                )
                if cursor.rowcount != 1:
                    return False
                self._log_transition(
                    conn,
                    job_id,
                    JobState.ACTIVE.value,
                    JobState.WAITING.value,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    error=error_snippet,
                )
                return True

        return self._with_retry(_requeue)

    def finalize(
        self, job_id: str, attempt: int, outcome: str, error: Optional[str] = None
    ) -> bool:
        """active → completed | failed (terminal)."""
        outcome = JobState(outcome).value
        if outcome not in (JobState.COMPLETED.value, JobState.FAILED.value):
            raise ValueError(f"finalize outcome must be completed or failed, got {outcome}")
        error_snippet = error[:500] if error else None

        def _finalize() -> bool:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        completed_at = ?,
                        lease_expires_at = NULL,
                        last_error = COALESCE(?, last_error)
                    WHERE job_id = ? AND state = ? AND attempt_count = ?
                    """,
                    (outcome, _now_iso(), error_snippet, job_id, JobState.ACTIVE.value, attempt),
                )
                if cursor.rowcount != 1:
                    return False
                self._log_transition(
                    conn, job_id, JobState.ACTIVE.value, outcome, attempt=attempt, error=error_snippet
                )
                return True

        return self._with_retry(_finalize)

    def extend_lease(self, job_id: str, attempt: int, lease_timeout_s: float) -> bool:
        """Update the lease deadline for a long-running job.

        Only updates if the job is still active under the same attempt.
        """

        def _extend() -> bool:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET lease_expires_at = ?
                    WHERE job_id = ? AND state = ? AND attempt_count = ?
                    """,
                    (time.time() + lease_timeout_s, job_id, JobState.ACTIVE.value, attempt),
                )
                return cursor.rowcount == 1

        return self._with_retry(_extend)

    def reclaim_expired(self) -> List[JobItem]:
        """Crash recovery: release active jobs whose lease deadline has passed.

        Returns:
            Jobs finalized as failed because the expired attempt was their last

        The expired attempt still counts toward attempt_count, so a job that
        keeps killing its workers eventually fails instead of cycling forever.
        """

        def _reclaim() -> List[JobItem]:
            now = time.time()
            exhausted: List[JobItem] = []
            with self.database.transaction() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_JOB_SELECT} FROM jobs
                    WHERE state = ? AND lease_expires_at <= ?
                    ORDER BY seq ASC
                    """,
                    (JobState.ACTIVE.value, now),
                ).fetchall()

                for row in rows:
                    job = self._row_to_job_item(row)
                    message = (
                        f"Lease expired on attempt {job.attempt_count} "
                        f"(worker {job.worker_id})"
                    )

                    if job.attempt_count >= job.max_attempts:
                        conn.execute(
                            """
                            UPDATE jobs
                            SET state = ?, completed_at = ?, lease_expires_at = NULL,
                                last_error = ?
                            WHERE job_id = ?
                            """,
                            (JobState.FAILED.value, _now_iso(), message, job.job_id),
                        )
                        to_state = JobState.FAILED.value
                        exhausted.append(
                            job.model_copy(update={"state": to_state, "last_error": message})
                        )
                    else:
                        conn.execute(
                            """
                            UPDATE jobs
                            SET state = ?, available_at = ?, lease_expires_at = NULL,
                                worker_id = NULL, last_error = ?
                            WHERE job_id = ?
                            """,
                            (JobState.WAITING.value, now, message, job.job_id),
                        )
                        to_state = JobState.WAITING.value

                    self._log_transition(
                        conn,
                        job.job_id,
                        JobState.ACTIVE.value,
                        to_state,
                        worker_id=job.worker_id,
                        attempt=job.attempt_count,
                        error=message,
                    )

                if rows:
                    logger.warning("leases_reclaimed", count=len(rows), failed=len(exhausted))
            return exhausted

        return self._with_retry(_reclaim)

    def get_job(self, job_id: str) -> Optional[JobItem]:
        row = self._with_retry(
            lambda: self.db.execute(
                f"SELECT {_JOB_SELECT} FROM jobs WHERE job_id = ?", [job_id]
            ).fetchone()
        )
        return self._row_to_job_item(row) if row else None

    def get_all_jobs(self, state_filter: Optional[str] = None) -> List[JobItem]:
        """Query jobs by state.

        Complexity: O(n) full scan (acceptable for status commands)
        """
        if state_filter:
            sql, params = f"SELECT {_JOB_SELECT} FROM jobs WHERE state = ? ORDER BY seq", [
                JobState(state_filter).value
            ]
        else:
            sql, params = f"SELECT {_JOB_SELECT} FROM jobs ORDER BY seq", []
        rows = self._with_retry(lambda: self.db.execute(sql, params).fetchall())
        return [self._row_to_job_item(row) for row in rows]

    def get_stats(self) -> Dict[str, int]:
        rows = self._with_retry(
            lambda: self.db.execute("SELECT state, COUNT(*) FROM jobs GROUP BY state").fetchall()
        )
        stats = {state.value: 0 for state in JobState}
        for state, count in rows:
            stats[state] = count
        stats["total"] = sum(stats.values())
        return stats

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        """Audit trail for one job, oldest first."""
        rows = self._with_retry(
            lambda: list(
                self.db["state_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
            )
        )
        return [StateTransition(**row) for row in rows]

    def retry_failed(self) -> int:
        """Reset every failed job to waiting with a fresh attempt budget.

        Returns:
            Number of jobs marked for retry
        """

        def _retry() -> int:
            with self.database.transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?, attempt_count = 0, available_at = ?,
                        completed_at = NULL, worker_id = NULL, last_error = NULL
                    WHERE state = ?
                    RETURNING job_id
                    """,
                    (JobState.WAITING.value, time.time(), JobState.FAILED.value),
                ).fetchall()
                for (job_id,) in rows:
                    self._log_transition(conn, job_id, JobState.FAILED.value, JobState.WAITING.value)
                return len(rows)

        return self._with_retry(_retry)

    def clear(self) -> None:
        """Delete all jobs and their transition history."""

        def _clear() -> None:
            with self.database.transaction() as conn:
                conn.execute("DELETE FROM state_transitions")
                conn.execute("DELETE FROM jobs")

        self._with_retry(_clear)

    def _row_to_job_item(self, row) -> JobItem:
        """Convert a row selected with JOB_COLUMNS to a JobItem."""
        return JobItem(**dict(zip(JOB_COLUMNS, row)))

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        attempt: int = 0,
        delay_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log state transition to audit trail (inside the caller's transaction)."""
        conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, attempt, delay_ms, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                from_state,
                to_state,
                _now_iso(),
                worker_id,
                attempt,
                delay_ms,
                error[:200] if error else None,
            ),
        )


class SQLiteStatusStore(ItemStatusStore):
    """SQLite-based item status store.

    Fencing is done in the UPDATE itself: a write only lands while the record
    is non-terminal and no newer attempt has written.
    """

    def __init__(self, db_path: Union[str, Path, SQLiteDatabase]):
        self.database = db_path if isinstance(db_path, SQLiteDatabase) else SQLiteDatabase(db_path)

    @property
    def db(self) -> Database:
        return self.database.db

    def create(self, item_id: str, content_locator: str) -> ItemRecord:
        record = ItemRecord(item_id=item_id, content_locator=content_locator)
        self.db["items"].insert(
            {
                "item_id": record.item_id,
                "content_locator": record.content_locator,
                "status": ItemStatus.UPLOADED.value,
                "result": None,
                "error_info": None,
                "attempt": 0,
                "created_at": record.created_at.isoformat(),
                "updated_at": None,
            },
            pk="item_id",
            replace=True,
        )
        return record

    def read(self, item_id: str) -> Optional[ItemRecord]:
        rows = list(self.db["items"].rows_where("item_id = ?", [item_id]))
        if not rows:
            return None

        row = dict(rows[0])
        row["result"] = json.loads(row["result"]) if row.get("result") else None
        row["error_info"] = json.loads(row["error_info"]) if row.get("error_info") else None
        return ItemRecord(**row)

    def write(
        self,
        item_id: str,
        status: str,
        payload: Union[ProcessingResult, ErrorInfo, Dict[str, Any], None] = None,
        attempt: int = 0,
    ) -> bool:
        status = ItemStatus(status).value
        result_json, error_json = self._serialize_payload(status, payload)

        try:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE items
                    SET status = ?, result = ?, error_info = ?, attempt = ?, updated_at = ?
                    WHERE item_id = ?
                      AND status NOT IN (?, ?)
                      AND attempt <= ?
                    """,
                    (
                        status,
                        result_json,
                        error_json,
                        attempt,
                        _now_iso(),
                        item_id,
                        ItemStatus.PROCESSED.value,
                        ItemStatus.FAILED.value,
                        attempt,
                    ),
                )
                applied = cursor.rowcount == 1
                if not applied:
                    exists = conn.execute(
                        "SELECT 1 FROM items WHERE item_id = ?", [item_id]
                    ).fetchone()
        except sqlite3.Error as e:
            raise StatusWriteFailure(f"Status write for item {item_id} failed: {e}") from e

        if not applied and not exists:
            raise StatusWriteFailure(f"Unknown item: {item_id}")
        return applied

    @staticmethod
    def _serialize_payload(status: str, payload):
        """Check that payload matches status; return (result_json, error_json)."""
        if status == ItemStatus.PROCESSING.value:
            if payload is not None:
                raise ValueError("processing status takes no payload")
            return None, None
        if status == ItemStatus.PROCESSED.value:
            result = ProcessingResult.model_validate(payload)
            return result.model_dump_json(), None
        if status == ItemStatus.FAILED.value:
            error = ErrorInfo.model_validate(payload)
            return None, error.model_dump_json()
        raise ValueError(f"Workers cannot write status {status}")
