import tempfile
from pathlib import Path

import pytest

from file_processor.models import WorkerConfig
from file_processor.queue import SQLiteDatabase, SQLiteJobQueue, SQLiteStatusStore


@pytest.fixture
def temp_db():
    """Create temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_queue.db")


@pytest.fixture
def database(temp_db):
    return SQLiteDatabase(temp_db)


@pytest.fixture
def queue(database):
    """Create SQLiteJobQueue instance."""
    return SQLiteJobQueue(database)


@pytest.fixture
def store(database):
    """Create SQLiteStatusStore sharing the queue database."""
    return SQLiteStatusStore(database)


@pytest.fixture
def content_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def hello_file(content_dir):
    """Stored content 'hello world'."""
    path = content_dir / "hello.txt"
    path.write_bytes(b"hello world")
    return path


@pytest.fixture
def fast_worker_config():
    """Worker settings scaled down so tests finish in well under a second each."""
    return WorkerConfig(
        concurrency=2,
        job_timeout_s=2.0,
        poll_interval_s=0.01,
        lease_timeout_s=3.0,
    )
