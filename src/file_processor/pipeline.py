"""Queue-based pipeline helpers for submitters and operators.

This module provides a higher-level API on top of the job queue system: it
plays the role of the external submitter (create the item record in
'uploaded' state, then submit a job) and exposes the operator commands used
by the CLI.

Usage:
    # Submit a batch of stored files
    pipeline.enqueue_batch(["uploads/a.bin", "uploads/b.bin"], db_path="queue.db")

    # Process the queue
    pipeline.process_queue(config)

    # Check status
    stats = pipeline.get_queue_stats(db_path="queue.db")
"""

import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from tqdm import tqdm

from .models import FileProcessorConfig
from .queue import (
    ItemRecord,
    JobPayload,
    JobWorkerPool,
    RetryPolicy,
    SQLiteDatabase,
    SQLiteJobQueue,
    SQLiteStatusStore,
)
from .queue.models import ItemStatus


def open_backends(
    db_path: str = "queue.db", max_attempts: int = 3
) -> Tuple[SQLiteJobQueue, SQLiteStatusStore]:
    """Open the queue and status store on one database file."""
    database = SQLiteDatabase(db_path)
    return SQLiteJobQueue(database, max_attempts=max_attempts), SQLiteStatusStore(database)


def submit_file(
    queue: SQLiteJobQueue,
    store: SQLiteStatusStore,
    content_locator: str,
    item_id: Optional[str] = None,
) -> Tuple[str, str]:
    """Create the item record in 'uploaded' state, then submit its job.

    Returns:
        Tuple of (item_id, job_id)
    """
    item_id = item_id or str(uuid.uuid4())
    store.create(item_id, content_locator)
    job_id = queue.submit(JobPayload(item_id=item_id, content_locator=content_locator))
    return item_id, job_id


def enqueue_batch(
    paths: Iterable[str], db_path: str = "queue.db", max_attempts: int = 3
) -> Dict[str, Any]:
    """Submit a batch of already-stored files.

    Args:
        paths: Files to process (stored as absolute paths)
        db_path: Path to SQLite database
        max_attempts: Attempt limit for the submitted jobs

    Returns:
        Dictionary with:
            - submitted: list of (item_id, job_id) pairs
            - missing: paths that do not exist (still submitted; they will fail)
            - total: number of paths
    """
    queue, store = open_backends(db_path, max_attempts=max_attempts)
    paths = [str(Path(p).resolve()) for p in paths]
    stats: Dict[str, Any] = {"submitted": [], "missing": [], "total": len(paths)}

    for path in tqdm(paths, desc="Submitting", unit="file", disable=len(paths) < 2):
        if not Path(path).is_file():
            stats["missing"].append(path)
        stats["submitted"].append(submit_file(queue, store, path))

    return stats


def process_queue(
    config: FileProcessorConfig, timeout_s: Optional[float] = None
) -> Dict[str, Any]:
    """Run the worker pool until the queue is idle.

    Returns:
        Worker pool statistics (processed, retried, failed, peak_active, ...)
    """
    queue, store = open_backends(config.queue.db_path, max_attempts=config.retry.max_attempts)
    pool = JobWorkerPool(
        queue,
        store,
        config=config.worker,
        retry_policy=RetryPolicy.from_config(config.retry),
    )
    return pool.run_until_idle(timeout_s=timeout_s)


def get_queue_stats(db_path: str = "queue.db") -> Dict[str, int]:
    """Counts per job state plus 'total'."""
    queue, _ = open_backends(db_path)
    return queue.get_stats()


def get_item(item_id: str, db_path: str = "queue.db") -> Optional[ItemRecord]:
    _, store = open_backends(db_path)
    return store.read(item_id)


def retry_failed(db_path: str = "queue.db") -> int:
    """Reset failed jobs (and their items) for another round of attempts.

    Returns:
        Number of jobs marked for retry
    """
    queue, store = open_backends(db_path)

    failed_jobs = queue.get_all_jobs(state_filter="failed")
    for job in failed_jobs:
        record = store.read(job.item_id)
        if record is not None and record.status == ItemStatus.FAILED.value:
            store.create(job.item_id, job.content_locator)

    return queue.retry_failed()


def clear_queue(db_path: str = "queue.db") -> None:
    """Delete all jobs and transition history (item records are kept)."""
    queue, _ = open_backends(db_path)
    queue.clear()
