"""Pydantic models for configuration and data validation."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator


class QueueConfig(BaseModel):
    """Durable queue settings."""

    db_path: str = Field(default="queue.db", description="SQLite database holding jobs and items")


class WorkerConfig(BaseModel):
    """Worker pool parameters."""

    concurrency: int = Field(default=5, ge=1, description="Maximum concurrent executors (C)")
    job_timeout_s: float = Field(
        default=30.0, gt=0.0, description="Execution deadline for a single processing attempt"
    )
    simulated_delay_s: float = Field(
        default=0.0, ge=0.0, description="Artificial latency added to each attempt (demo only)"
    )
    poll_interval_s: float = Field(
        default=0.5, gt=0.0, description="Idle wait between claim attempts on an empty queue"
    )
    lease_timeout_s: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds a claimed job stays invisible before it becomes reclaimable",
    )

    @field_validator("lease_timeout_s")
    @classmethod
    def lease_outlives_job(cls, v: float, info) -> float:
        """A lease shorter than the job timeout would expire under a healthy worker."""
        if "job_timeout_s" in info.data and v <= info.data["job_timeout_s"]:
            raise ValueError(
                f"lease_timeout_s ({v}) must be > job_timeout_s ({info.data['job_timeout_s']})"
            )
        return v


class RetryConfig(BaseModel):
    """Retry/backoff policy parameters."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts before a job fails terminally")
    base_delay_ms: int = Field(default=1000, gt=0, description="Delay before the first retry")
    growth_factor: float = Field(
        default=2.0, gt=1.0, description="Multiplier applied to the delay on each further retry"
    )


class LoggingConfig(BaseModel):
    """Logging output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(default=False, description="Render log lines as JSON")


class FileProcessorConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "FileProcessorConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "FileProcessorConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "db" in cli_args:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if "workers" in cli_args:
            config_dict["worker"]["concurrency"] = cli_args["workers"]
        if "job_timeout" in cli_args:
            config_dict["worker"]["job_timeout_s"] = cli_args["job_timeout"]
        if "max_attempts" in cli_args:
            config_dict["retry"]["max_attempts"] = cli_args["max_attempts"]
        if "base_delay_ms" in cli_args:
            config_dict["retry"]["base_delay_ms"] = cli_args["base_delay_ms"]
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return FileProcessorConfig.from_dict(config_dict)
