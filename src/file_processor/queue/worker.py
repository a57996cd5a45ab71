"""Bounded worker pool that drains the durable queue.

This module provides parallel item processing with:
- A fixed set of executor threads (never more than `concurrency` jobs in flight)
- A bounded ThreadPoolExecutor that runs each attempt under a hard deadline
- A maintenance thread that heartbeats in-flight leases and reclaims expired ones
- Explicit retry decisions via RetryPolicy
- Attempt-fenced status writes so stale attempts cannot overwrite terminal items
- Graceful shutdown; fatal queue errors stop the pool and surface from stop()
"""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import ProcessingTimeout, QueueUnavailable, RetriesExhausted, StatusWriteFailure
from ..log import get_logger
from ..models import WorkerConfig
from .backends import ItemStatusStore, QueueBackend
from .models import ErrorInfo, ItemStatus, JobItem, JobState, ProcessingResult
from .processing import process_content
from .retry import RetryPolicy

logger = get_logger(__name__)

Processor = Callable[..., ProcessingResult]


class JobWorkerPool:
    """Thread-based executor pool for queued items.

    Each executor loops: claim → mark item processing → process → write
    outcome → finalize or requeue. Executors share nothing but the queue and
    the status store, both of which serialize their own writes.

    The processing call itself runs on a separate executor sized like the
    pool. If it overruns job_timeout_s the attempt is abandoned and retried;
    a call stuck in a blocking read keeps its slot until the read returns.

    Example:
        >>> with JobWorkerPool(queue, store, WorkerConfig(concurrency=2)) as pool:
        ...     pool.run_until_idle(timeout_s=60)
    """

    def __init__(
        self,
        queue: QueueBackend,
        status_store: ItemStatusStore,
        config: Optional[WorkerConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        processor: Processor = process_content,
        worker_prefix: Optional[str] = None,
    ):
        """Initialize worker pool.

        Args:
            queue: Durable queue to claim jobs from
            status_store: Item status records to update
            config: Concurrency, timeout and lease settings
            retry_policy: Backoff policy (default: 1000ms, x2); each job's own
                max_attempts decides when it fails
            processor: Processing function (content_locator, timeout_s=, simulated_delay_s=)
            worker_prefix: Prefix for executor ids (default: worker-<pid>)
        """
        self.queue = queue
        self.status_store = status_store
        self.config = config or WorkerConfig()
        self.retry_policy = retry_policy or RetryPolicy()
        self.processor = processor
        self.n_workers = self.config.concurrency
        self.worker_prefix = worker_prefix or f"worker-{os.getpid()}"

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._attempts: Optional[ThreadPoolExecutor] = None
        # job_id -> (job, monotonic deadline of the running attempt)
        self._in_flight: Dict[str, Tuple[JobItem, float]] = {}
        self._peak_active = 0
        self._counters = {
            "claimed": 0,
            "processed": 0,
            "retried": 0,
            "failed": 0,
            "timed_out": 0,
            "already_settled": 0,
            "stale_discarded": 0,
            "status_write_failures": 0,
            "executor_errors": 0,
        }
        self.fatal_error: Optional[QueueUnavailable] = None

    def __enter__(self):
        """Start executors on context entry."""
        self.start()
        return self

    def __exit__(self, *args):
        """Stop executors on context exit."""
        self.stop(wait=True)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def peak_active(self) -> int:
        with self._lock:
            return self._peak_active

    @property
    def is_running(self) -> bool:
        return bool(self._threads) and not self._stop.is_set()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            stats: Dict[str, Any] = dict(self._counters)
            stats["active"] = len(self._in_flight)
            stats["peak_active"] = self._peak_active
        return stats

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started")

        self._stop.clear()
        self.fatal_error = None
        self._attempt_executor()

        for i in range(self.n_workers):
            worker_id = f"{self.worker_prefix}-{i}"
            thread = threading.Thread(
                target=self._executor_loop, args=(worker_id,), name=worker_id, daemon=True
            )
            self._threads.append(thread)

        self._threads.append(
            threading.Thread(
                target=self._maintenance_loop,
                name=f"{self.worker_prefix}-maintenance",
                daemon=True,
            )
        )

        for thread in self._threads:
            thread.start()

        logger.info("worker_pool_started", concurrency=self.n_workers)

    def stop(self, wait: bool = True, timeout_s: Optional[float] = None) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for in-flight jobs to finish their attempt
            timeout_s: Upper bound on the wait (default: one job timeout plus
                one poll interval plus a second for the final writes)

        Raises:
            QueueUnavailable: If the pool stopped because the queue store failed
        """
        self._stop.set()
        if wait:
            if timeout_s is None:
                timeout_s = self.config.job_timeout_s + self.config.poll_interval_s + 1.0
            deadline = time.monotonic() + timeout_s
            for thread in self._threads:
                thread.join(max(0.0, deadline - time.monotonic()))
            stuck = [thread.name for thread in self._threads if thread.is_alive()]
            if stuck:
                logger.warning("worker_threads_still_running", threads=stuck)
        self._threads = []

        with self._lock:
            attempts, self._attempts = self._attempts, None
        if attempts is not None:
            attempts.shutdown(wait=False, cancel_futures=True)
        logger.info("worker_pool_stopped", **self.stats())

        if self.fatal_error is not None:
            raise self.fatal_error

    def run_until_idle(
        self, timeout_s: Optional[float] = None, check_interval_s: float = 0.05
    ) -> Dict[str, Any]:
        """Process until no job is waiting or active, then stop.

        Args:
            timeout_s: Give up after this many seconds (None = no limit)
            check_interval_s: How often to poll queue counts

        Returns:
            Pool statistics

        Raises:
            TimeoutError: If the queue is still busy at the deadline
            QueueUnavailable: If the queue store failed
        """
        if not self._threads:
            self.start()

        deadline = time.monotonic() + timeout_s if timeout_s is not None else None

        while self.fatal_error is None:
            stats = self.queue.get_stats()
            if (
                stats[JobState.WAITING.value] == 0
                and stats[JobState.ACTIVE.value] == 0
                and self.active_count == 0
            ):
                break
            if deadline is not None and time.monotonic() >= deadline:
                self.stop(wait=True)
                raise TimeoutError(f"Queue not idle after {timeout_s}s: {stats}")
            time.sleep(check_interval_s)

        self.stop(wait=True)
        return self.stats()

    def _attempt_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._attempts is None:
                self._attempts = ThreadPoolExecutor(
                    max_workers=self.n_workers,
                    thread_name_prefix=f"{self.worker_prefix}-attempt",
                )
            return self._attempts

    def _executor_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.queue.claim_next(worker_id, self.config.lease_timeout_s)
            except QueueUnavailable as e:
                self._fail_fatally(e)
                return

            if job is None:
                self._stop.wait(self.config.poll_interval_s)
                continue

            self._track(job)
            try:
                self.process_job(job)
            except QueueUnavailable as e:
                self._fail_fatally(e)
                return
            except Exception:
                # Lease expiry hands the job to another executor
                self._count("executor_errors")
                logger.exception(
                    "executor_error",
                    worker_id=worker_id,
                    job_id=job.job_id,
                    attempt=job.attempt_count,
                )
            finally:
                self._untrack(job)

    def process_job(self, job: JobItem) -> str:
        """Run one claimed attempt to its outcome.

        Args:
            job: Job in 'active' state, as returned by claim_next()

        Returns:
            'completed', 'requeued', 'failed', 'already_settled' or 'stale'
        """
        log = logger.bind(
            job_id=job.job_id,
            item_id=job.item_id,
            attempt=job.attempt_count,
            worker_id=job.worker_id,
        )
        attempt = job.attempt_count

        try:
            applied = self.status_store.write(
                job.item_id, ItemStatus.PROCESSING.value, None, attempt
            )
        except StatusWriteFailure as e:
            self._count("status_write_failures")
            log.warning("status_write_failed", status=ItemStatus.PROCESSING.value, error=str(e))
            applied = True

        if not applied:
            return self._resolve_rejected_write(job, log)

        log.debug("attempt_started")
        future = self._attempt_executor().submit(
            self.processor,
            job.content_locator,
            timeout_s=self.config.job_timeout_s,
            simulated_delay_s=self.config.simulated_delay_s,
        )
        try:
            result = future.result(timeout=self.config.job_timeout_s)
        except FuturesTimeout:
            # A blocked call cannot be interrupted; whatever it returns later is dropped
            future.cancel()
            self._count("timed_out")
            error = ProcessingTimeout(job.content_locator, self.config.job_timeout_s)
            return self._handle_failure(job, error, log)
        except Exception as e:
            return self._handle_failure(job, e, log)

        try:
            applied = self.status_store.write(
                job.item_id, ItemStatus.PROCESSED.value, result, attempt
            )
        except StatusWriteFailure as e:
            # Result was not recorded; another attempt has to record it
            self._count("status_write_failures")
            log.warning("status_write_failed", status=ItemStatus.PROCESSED.value, error=str(e))
            return self._handle_failure(job, e, log)

        if not applied:
            return self._resolve_rejected_write(job, log)

        if not self.queue.finalize(job.job_id, attempt, JobState.COMPLETED.value):
            log.warning("finalize_fenced", outcome=JobState.COMPLETED.value)
        self._count("processed")
        log.info("job_completed", digest=result.digest, byte_size=result.byte_size)
        return JobState.COMPLETED.value

    def _handle_failure(self, job: JobItem, error: Exception, log) -> str:
        """Two-step failure path: status write (terminal only), then queue transition."""
        message = str(error) or type(error).__name__
        attempt = job.attempt_count
        decision = self.retry_policy.decide(attempt, max_attempts=job.max_attempts)

        if decision.should_retry:
            # Item stays 'processing'; the error is kept on the job until retries run out
            log.warning(
                "attempt_failed",
                error=message,
                error_type=type(error).__name__,
                retry_in_ms=decision.delay_ms,
            )
            if not self.queue.requeue(job.job_id, attempt, decision.delay_ms, error=message):
                log.warning("requeue_fenced")
            self._count("retried")
            return "requeued"

        exhausted = RetriesExhausted(job.job_id, attempt, message)
        self._write_failed(job.item_id, exhausted, attempt, log)
        if not self.queue.finalize(job.job_id, attempt, JobState.FAILED.value, error=message):
            log.warning("finalize_fenced", outcome=JobState.FAILED.value)
        self._count("failed")
        log.error("job_failed", error=str(exhausted), error_type=type(error).__name__)
        return JobState.FAILED.value

    def _write_failed(self, item_id: str, exhausted: RetriesExhausted, attempt: int, log) -> None:
        try:
            self.status_store.write(
                item_id, ItemStatus.FAILED.value, ErrorInfo(message=str(exhausted)), attempt
            )
        except StatusWriteFailure as e:
            self._count("status_write_failures")
            log.error("status_write_failed", status=ItemStatus.FAILED.value, error=str(e))

    def _resolve_rejected_write(self, job: JobItem, log) -> str:
        """A fenced item write was rejected: the item is terminal or a newer attempt owns it."""
        record = self.status_store.read(job.item_id)
        if record is not None and record.is_terminal:
            return self._settle_from_record(job, record.status, log)

        self._count("stale_discarded")
        log.warning(
            "stale_attempt_discarded",
            item_status=record.status if record else None,
            item_attempt=record.attempt if record else None,
        )
        return "stale"

    def _settle_from_record(self, job: JobItem, item_status: str, log) -> str:
        """Item already terminal: close the job to match without a second write."""
        outcome = (
            JobState.COMPLETED.value
            if item_status == ItemStatus.PROCESSED.value
            else JobState.FAILED.value
        )
        self.queue.finalize(job.job_id, job.attempt_count, outcome)
        self._count("already_settled")
        log.info("job_already_settled", item_status=item_status, outcome=outcome)
        return "already_settled"

    def _maintenance_loop(self) -> None:
        """Heartbeat in-flight leases and reclaim expired ones.

        Runs once at startup (crash recovery) and then every lease_timeout_s / 3.
        An attempt past its job deadline is no longer heartbeated, so its
        lease runs out and the job becomes reclaimable.
        """
        interval = self.config.lease_timeout_s / 3
        while True:
            try:
                now = time.monotonic()
                with self._lock:
                    in_flight = list(self._in_flight.values())
                for job, deadline in in_flight:
                    if now >= deadline:
                        continue
                    self.queue.extend_lease(
                        job.job_id, job.attempt_count, self.config.lease_timeout_s
                    )
                for job in self.queue.reclaim_expired():
                    log = logger.bind(job_id=job.job_id, item_id=job.item_id)
                    exhausted = RetriesExhausted(
                        job.job_id, job.attempt_count, job.last_error or "Lease expired"
                    )
                    self._write_failed(job.item_id, exhausted, job.attempt_count, log)
                    self._count("failed")
                    log.error("job_failed", error=str(exhausted))
            except QueueUnavailable as e:
                self._fail_fatally(e)
                return

            if self._stop.wait(interval):
                return

    def _fail_fatally(self, error: QueueUnavailable) -> None:
        with self._lock:
            if self.fatal_error is None:
                self.fatal_error = error
                logger.critical("queue_unavailable", error=str(error))
        self._stop.set()

    def _track(self, job: JobItem) -> None:
        with self._lock:
            self._in_flight[job.job_id] = (job, time.monotonic() + self.config.job_timeout_s)
            self._counters["claimed"] += 1
            self._peak_active = max(self._peak_active, len(self._in_flight))

    def _untrack(self, job: JobItem) -> None:
        with self._lock:
            self._in_flight.pop(job.job_id, None)

    def _count(self, key: str) -> None:
        with self._lock:
            self._counters[key] += 1
