"""Runtime configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class BatchConfig(BaseModel):
    """Per-job execution policy. Immutable once the job exists."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    concurrency: int = Field(default=2, ge=1, le=32)
    max_retries: int = Field(default=2, ge=0, le=10, alias="maxRetries")
    retry_delay_ms: int = Field(default=2000, ge=0, alias="retryDelayMs")

    def backoff_s(self, retry_count: int) -> float:
        """Delay before the retry that follows ``retry_count`` earlier retries."""
        return self.retry_delay_ms * (2**retry_count) / 1000.0


class RuntimeConfig(BaseModel):
    """Tunables shared by the stream reconcilers and the batch engine."""

    idle_timeout_s: float | None = Field(
        default=None,
        gt=0,
        description="Fail a stream that produces no frame for this long. None disables the watchdog.",
    )
    tool_output_max_chars: int = Field(default=5000, ge=0)
    terminal_retention_s: float = Field(
        default=0.0,
        ge=0,
        description="Keep a drained terminal stream in the registry this long for late readers.",
    )
    checkpoint_on_permission: bool = True
    subscriber_queue_size: int = Field(default=256, ge=1)
    batch: BatchConfig = Field(default_factory=BatchConfig)


__all__ = ["BatchConfig", "RuntimeConfig"]
