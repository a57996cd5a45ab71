"""Content digest computation for queued items.

process_content() is the unit of work executed by the worker pool: it reads
the referenced content in full, computes a SHA-256 digest and reports the
byte size and completion time. It touches no shared state, so any number of
executors may call it concurrently.

The deadline is checked between chunk reads and while waiting out the
simulated delay. A read that blocks outright is not interrupted here; the
worker pool abandons such an attempt once its own deadline passes.
"""

import hashlib
import time
from typing import Optional
from urllib.parse import unquote, urlparse

from ..errors import ContentUnavailable, ProcessingTimeout
from .models import ProcessingResult, utc_now

CHUNK_SIZE = 65536


def resolve_locator(content_locator: str) -> str:
    """Map a content locator (plain path or file:// URI) to a filesystem path."""
    if content_locator.startswith("file://"):
        parsed = urlparse(content_locator)
        return unquote(parsed.path)
    return content_locator


def process_content(
    content_locator: str,
    timeout_s: Optional[float] = None,
    simulated_delay_s: float = 0.0,
) -> ProcessingResult:
    """Digest the content behind content_locator.

    Args:
        content_locator: Path or file:// URI of the stored content
        timeout_s: Execution deadline for this call (None = unbounded)
        simulated_delay_s: Artificial latency after reading (illustrative only)

    Returns:
        ProcessingResult with hex digest, byte size and ISO-8601 UTC timestamp

    Raises:
        ContentUnavailable: If the content cannot be opened or read
        ProcessingTimeout: If the deadline passes
    """
    deadline = time.monotonic() + timeout_s if timeout_s is not None else None

    def _check() -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise ProcessingTimeout(content_locator, timeout_s)

    path = resolve_locator(content_locator)
    hasher = hashlib.sha256()
    byte_size = 0

    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
                byte_size += len(chunk)
                _check()
    except IsADirectoryError as e:
        raise ContentUnavailable(content_locator, "is a directory") from e
    except OSError as e:
        raise ContentUnavailable(content_locator, e.strerror or str(e)) from e

    if simulated_delay_s > 0:
        remaining = deadline - time.monotonic() if deadline is not None else None
        if remaining is not None and simulated_delay_s >= remaining:
            time.sleep(max(0.0, remaining))
            raise ProcessingTimeout(content_locator, timeout_s)
        time.sleep(simulated_delay_s)

    return ProcessingResult(
        digest=hasher.hexdigest(),
        byte_size=byte_size,
        completed_at=utc_now().isoformat(),
    )
