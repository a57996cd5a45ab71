"""Unit tests for the durable queue and the item status store.

Tests cover:
- Submit/claim operations and FIFO ordering
- Delayed requeue and fenced finalize
- Lease expiry and crash recovery
- Concurrent claim safety
- Status store fencing and payload validation
"""

import sqlite3
import threading
import time
from datetime import timedelta

import pytest

from file_processor.errors import QueueUnavailable, StatusWriteFailure
from file_processor.queue import (
    ErrorInfo,
    ItemStatus,
    JobPayload,
    JobState,
    ProcessingResult,
    SQLiteJobQueue,
)


def _payload(n=0):
    return JobPayload(item_id=f"item-{n}", content_locator=f"/data/file-{n}.bin")


def _result():
    return ProcessingResult(digest="ab" * 32, byte_size=2, completed_at="2024-01-01T00:00:00+00:00")


class TestQueueOperations:
    """Test submit/claim/requeue/finalize."""

    def test_submit_creates_waiting_job(self, queue):
        job_id = queue.submit(_payload())

        job = queue.get_job(job_id)
        assert job is not None
        assert job.state == JobState.WAITING
        assert job.attempt_count == 0
        assert job.max_attempts == 3
        assert job.metadata() == {"job_id": job_id, "attempt_count": 0, "state": "waiting"}

    def test_submit_survives_new_connection(self, queue, temp_db):
        job_id = queue.submit(_payload())

        reopened = SQLiteJobQueue(temp_db)
        assert reopened.get_job(job_id).state == JobState.WAITING

    def test_claim_marks_active_and_counts_attempt(self, queue):
        job_id = queue.submit(_payload())

        claimed = queue.claim_next("test-worker", lease_timeout_s=30)

        assert claimed is not None
        assert claimed.job_id == job_id
        assert claimed.state == JobState.ACTIVE
        assert claimed.worker_id == "test-worker"
        assert claimed.attempt_count == 1
        assert claimed.lease_expires_at > time.time()

    def test_timestamps_are_utc(self, queue, store):
        job_id = queue.submit(_payload())
        queue.claim_next("w", 30)
        store.create("item-0", "/data/file-0.bin")
        store.write("item-0", "processing", None, attempt=1)

        job = queue.get_job(job_id)
        assert job.created_at.utcoffset() == timedelta(0)
        assert job.started_at.utcoffset() == timedelta(0)
        assert all(t.timestamp.utcoffset() == timedelta(0) for t in queue.get_transitions(job_id))
        assert store.read("item-0").updated_at.utcoffset() == timedelta(0)

    def test_claim_empty_queue(self, queue):
        assert queue.claim_next("test-worker", lease_timeout_s=30) is None

    def test_claim_is_fifo(self, queue):
        ids = [queue.submit(_payload(n)) for n in range(3)]

        claimed = [queue.claim_next("w", 30).job_id for _ in range(3)]

        assert claimed == ids

    def test_job_not_claimed_twice(self, queue):
        queue.submit(_payload())

        first = queue.claim_next("w1", 30)
        second = queue.claim_next("w2", 30)

        assert first is not None
        assert second is None

    def test_requeue_delays_eligibility(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)

        assert queue.requeue(job_id, job.attempt_count, delay_ms=200, error="boom")

        assert queue.claim_next("w", 30) is None
        time.sleep(0.25)
        again = queue.claim_next("w", 30)
        assert again.job_id == job_id
        assert again.attempt_count == 2
        assert again.last_error == "boom"

    def test_delayed_job_does_not_block_undelayed(self, queue):
        first = queue.submit(_payload(1))
        job = queue.claim_next("w", 30)
        queue.requeue(first, job.attempt_count, delay_ms=10_000)
        second = queue.submit(_payload(2))

        assert queue.claim_next("w", 30).job_id == second

    def test_finalize_completed(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)

        assert queue.finalize(job_id, job.attempt_count, "completed")

        final = queue.get_job(job_id)
        assert final.state == JobState.COMPLETED
        assert final.completed_at is not None
        assert queue.claim_next("w", 30) is None

    def test_finalize_failed_keeps_error(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)

        queue.finalize(job_id, job.attempt_count, "failed", error="Content unavailable")

        final = queue.get_job(job_id)
        assert final.state == JobState.FAILED
        assert final.last_error == "Content unavailable"

    def test_finalize_rejects_non_terminal_outcome(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)

        with pytest.raises(ValueError):
            queue.finalize(job_id, job.attempt_count, "waiting")

    def test_stale_attempt_is_fenced(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)
        queue.requeue(job_id, job.attempt_count, delay_ms=1)
        time.sleep(0.01)
        newer = queue.claim_next("w", 30)

        assert not queue.finalize(job_id, job.attempt_count, "completed")
        assert not queue.requeue(job_id, job.attempt_count, delay_ms=1)
        assert queue.get_job(job_id).state == JobState.ACTIVE
        assert queue.finalize(job_id, newer.attempt_count, "completed")

    def test_finalize_terminal_job_again_is_noop(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)
        queue.finalize(job_id, job.attempt_count, "completed")

        assert not queue.finalize(job_id, job.attempt_count, "failed")
        assert queue.get_job(job_id).state == JobState.COMPLETED

    def test_get_stats(self, queue):
        for n in range(3):
            queue.submit(_payload(n))
        job = queue.claim_next("w", 30)
        queue.finalize(job.job_id, job.attempt_count, "completed")
        queue.claim_next("w", 30)

        stats = queue.get_stats()
        assert stats == {"waiting": 1, "active": 1, "completed": 1, "failed": 0, "total": 3}

    def test_transitions_logged(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)
        queue.requeue(job_id, job.attempt_count, delay_ms=5, error="boom")

        transitions = queue.get_transitions(job_id)

        assert [(t.from_state, t.to_state) for t in transitions] == [
            (None, "waiting"),
            ("waiting", "active"),
            ("active", "waiting"),
        ]
        assert transitions[-1].delay_ms == 5
        assert transitions[-1].error_snippet == "boom"

    def test_retry_failed_resets_attempts(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", 30)
        queue.finalize(job_id, job.attempt_count, "failed", error="boom")

        assert queue.retry_failed() == 1

        reset = queue.get_job(job_id)
        assert reset.state == JobState.WAITING
        assert reset.attempt_count == 0
        assert reset.last_error is None

    def test_clear(self, queue):
        queue.submit(_payload())
        queue.clear()
        assert queue.get_stats()["total"] == 0


class TestLeases:
    """Test lease expiry and heartbeat."""

    def test_expired_lease_is_reclaimed(self, queue):
        job_id = queue.submit(_payload())
        queue.claim_next("crashed-worker", lease_timeout_s=0.05)
        time.sleep(0.1)

        exhausted = queue.reclaim_expired()

        assert exhausted == []
        job = queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.worker_id is None
        assert "Lease expired" in job.last_error

        again = queue.claim_next("w", 30)
        assert again.job_id == job_id
        assert again.attempt_count == 2

    def test_live_lease_not_reclaimed(self, queue):
        job_id = queue.submit(_payload())
        queue.claim_next("w", lease_timeout_s=30)

        queue.reclaim_expired()

        assert queue.get_job(job_id).state == JobState.ACTIVE

    def test_expired_last_attempt_fails_job(self, queue):
        job_id = queue.submit(_payload(), max_attempts=1)
        queue.claim_next("crashed-worker", lease_timeout_s=0.05)
        time.sleep(0.1)

        exhausted = queue.reclaim_expired()

        assert [j.job_id for j in exhausted] == [job_id]
        assert exhausted[0].state == JobState.FAILED
        assert queue.get_job(job_id).state == JobState.FAILED

    def test_extend_lease(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", lease_timeout_s=0.1)

        assert queue.extend_lease(job_id, job.attempt_count, lease_timeout_s=30)
        time.sleep(0.15)
        queue.reclaim_expired()

        assert queue.get_job(job_id).state == JobState.ACTIVE

    def test_extend_lease_wrong_attempt(self, queue):
        job_id = queue.submit(_payload())
        job = queue.claim_next("w", lease_timeout_s=30)

        assert not queue.extend_lease(job_id, job.attempt_count + 1, lease_timeout_s=30)


class TestConcurrentClaims:
    """Concurrent claimants never share a job."""

    def test_each_job_claimed_once(self, queue):
        job_ids = {queue.submit(_payload(n)) for n in range(20)}
        claimed = []
        lock = threading.Lock()

        def claim_all(worker_id):
            while True:
                job = queue.claim_next(worker_id, 30)
                if job is None:
                    return
                with lock:
                    claimed.append(job.job_id)

        threads = [threading.Thread(target=claim_all, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(job_ids)


class TestQueueFailures:
    def test_unreadable_store_is_fatal(self, queue, monkeypatch):
        def broken():
            raise sqlite3.DatabaseError("file is not a database")

        monkeypatch.setattr(queue.database, "transaction", broken)

        with pytest.raises(QueueUnavailable):
            queue.claim_next("w", 30)

    def test_lock_contention_is_retried(self, queue):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert queue._with_retry(flaky) == "ok"
        assert len(calls) == 3

    def test_persistent_lock_contention_is_fatal(self, queue):
        def locked():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(QueueUnavailable):
            queue._with_retry(locked)


class TestStatusStore:
    """Test item status record operations."""

    def test_create_uploaded(self, store):
        store.create("item-1", "/data/a.bin")

        record = store.read("item-1")
        assert record.status == ItemStatus.UPLOADED
        assert record.result is None
        assert record.error_info is None

    def test_read_unknown(self, store):
        assert store.read("missing") is None

    def test_processing_then_processed(self, store):
        store.create("item-1", "/data/a.bin")

        assert store.write("item-1", "processing", None, attempt=1)
        assert store.read("item-1").status == ItemStatus.PROCESSING

        assert store.write("item-1", "processed", _result(), attempt=1)
        record = store.read("item-1")
        assert record.status == ItemStatus.PROCESSED
        assert record.result.byte_size == 2
        assert record.error_info is None

    def test_failed_with_error_info(self, store):
        store.create("item-1", "/data/a.bin")

        store.write("item-1", "failed", ErrorInfo(message="Content unavailable"), attempt=3)

        record = store.read("item-1")
        assert record.status == ItemStatus.FAILED
        assert record.error_info.message == "Content unavailable"
        assert record.result is None

    def test_terminal_status_not_overwritten(self, store):
        store.create("item-1", "/data/a.bin")
        store.write("item-1", "processed", _result(), attempt=2)

        assert not store.write("item-1", "failed", {"message": "late"}, attempt=3)
        assert not store.write("item-1", "processing", None, attempt=3)
        assert store.read("item-1").status == ItemStatus.PROCESSED

    def test_older_attempt_fenced(self, store):
        store.create("item-1", "/data/a.bin")
        store.write("item-1", "processing", None, attempt=2)

        assert not store.write("item-1", "processed", _result(), attempt=1)
        assert store.read("item-1").status == ItemStatus.PROCESSING

    def test_payload_must_match_status(self, store):
        store.create("item-1", "/data/a.bin")

        with pytest.raises(ValueError):
            store.write("item-1", "processed", None, attempt=1)
        with pytest.raises(ValueError):
            store.write("item-1", "failed", {"message": ""}, attempt=1)
        with pytest.raises(ValueError):
            store.write("item-1", "processing", _result(), attempt=1)
        with pytest.raises(ValueError):
            store.write("item-1", "uploaded", None, attempt=1)

    def test_unknown_item_write_fails(self, store):
        with pytest.raises(StatusWriteFailure):
            store.write("missing", "processing", None, attempt=1)
