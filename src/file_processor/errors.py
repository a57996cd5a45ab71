"""Error taxonomy for the job-processing subsystem.

Retryable errors (ContentUnavailable, ProcessingTimeout) are raised by the
processing function and handed to the retry policy. StatusWriteFailure is
logged by the worker and never stops an executor. QueueUnavailable is the
only fatal error: it stops the pool and is surfaced to the operator.
"""


class FileProcessorError(Exception):
    """Base class for all subsystem errors."""


class ContentUnavailable(FileProcessorError):
    """Referenced content could not be opened or read."""

    def __init__(self, locator: str, reason: str = ""):
        self.locator = locator
        self.reason = reason
        message = f"Content unavailable: {locator}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ProcessingTimeout(FileProcessorError):
    """Processing exceeded its execution deadline."""

    def __init__(self, locator: str, timeout_s: float):
        self.locator = locator
        self.timeout_s = timeout_s
        super().__init__(f"Processing timed out after {timeout_s:g}s: {locator}")


class StatusWriteFailure(FileProcessorError):
    """The item status store rejected or failed a write."""


class RetriesExhausted(FileProcessorError):
    """Terminal failure: the job used all of its attempts."""

    def __init__(self, job_id: str, attempts: int, last_error: str):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Job {job_id} failed after {attempts} attempts: {last_error}")


class QueueUnavailable(FileProcessorError):
    """The durable backing store cannot be reached (fatal)."""
