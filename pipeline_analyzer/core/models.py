"""Canonical, provider-agnostic pipeline data model."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, field_validator

from .timeutils import compute_duration, parse_timestamp, utcnow

UNKNOWN = "unknown"

LogLevel = Literal["debug", "info", "warn", "error"]


class ProviderType(str, Enum):
    GITHUB_ACTIONS = "github-actions"
    GITLAB_CI = "gitlab-ci"
    JENKINS = "jenkins"


class PipelineStatus(str, Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class _Timed(BaseModel):
    """Mixin for records whose duration derives from their timestamps."""

    started_at: datetime | None = None
    finished_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration(self) -> int | None:
        """Elapsed milliseconds, present only when both timestamps are known."""
        return compute_duration(self.started_at, self.finished_at)


class RunnerInfo(BaseModel):
    id: str
    name: str
    os: str = UNKNOWN
    arch: str = UNKNOWN
    labels: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)


class ResourceUsage(BaseModel):
    cpu_cores: int | None = None
    cpu_usage_percent: float | None = None
    cpu_peak_percent: float | None = None
    memory_total_mb: float | None = None
    memory_used_mb: float | None = None
    memory_peak_mb: float | None = None
    disk_total_gb: float | None = None
    disk_used_gb: float | None = None
    disk_io_read_mb: float | None = None
    disk_io_write_mb: float | None = None
    network_download_mb: float | None = None
    network_upload_mb: float | None = None


class StepRecord(_Timed):
    id: str
    name: str
    status: PipelineStatus = PipelineStatus.UNKNOWN
    command: str | None = None
    output: str | None = None
    error_output: str | None = None


class JobRecord(_Timed):
    id: str
    name: str
    status: PipelineStatus = PipelineStatus.UNKNOWN
    stage: str | None = None
    web_url: str | None = None
    steps: list[StepRecord] = Field(default_factory=list)
    runner: RunnerInfo | None = None
    resource_usage: ResourceUsage | None = None


class ArtifactRecord(BaseModel):
    id: str
    name: str
    type: str = "archive"
    size_bytes: int = 0
    download_url: str | None = None
    expires_at: datetime | None = None


class LogLine(BaseModel):
    timestamp: datetime
    level: LogLevel = "info"
    message: str
    source: str
    job_id: str | None = None
    step_id: str | None = None


class PipelineRecord(_Timed):
    """A single pipeline execution normalized across providers.

    ``id`` is stable across repeated fetches of the same execution, so it can
    be used as an idempotent sync key.
    """

    id: str
    provider: str
    name: str
    repository: str
    branch: str = UNKNOWN
    status: PipelineStatus = PipelineStatus.UNKNOWN
    triggered_by: str = UNKNOWN
    triggered_event: str = UNKNOWN
    commit_sha: str = UNKNOWN
    commit_author: str = UNKNOWN
    commit_message: str | None = None
    run_number: int = 0
    web_url: str | None = None
    jobs: list[JobRecord] = Field(default_factory=list)
    artifacts: list[ArtifactRecord] = Field(default_factory=list)
    logs: list[LogLine] = Field(default_factory=list)


class PipelineFilter(BaseModel):
    """Abstract query filter; each adapter maps it onto native parameters."""

    branch: str | None = None
    limit: int | None = Field(default=None, gt=0)
    since: datetime | None = None
    status: list[PipelineStatus] = Field(default_factory=list)

    @field_validator("since", mode="before")
    @classmethod
    def _since_as_utc(cls, value: Any) -> Any:
        # Naive values are read as UTC so they compare with provider timestamps.
        if value is None:
            return None
        parsed = parse_timestamp(value)
        return value if parsed is None else parsed.astimezone(timezone.utc)


class WebhookEnvelope(BaseModel):
    provider: str
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    signature: str | None = None
    received_at: datetime = Field(default_factory=utcnow)


class WebhookRegistration(BaseModel):
    id: str
    secret: str


class ProviderMetrics(BaseModel):
    api_calls_count: int = 0
    api_calls_success_rate: float = 100.0
    average_response_time: float = 0.0
    error_count: int = 0
    last_error: str | None = None
    last_sync_time: datetime = Field(default_factory=utcnow)
    rate_limit_remaining: int | None = None
    rate_limit_reset: datetime | None = None


__all__ = [
    "UNKNOWN",
    "ArtifactRecord",
    "JobRecord",
    "LogLevel",
    "LogLine",
    "PipelineFilter",
    "PipelineRecord",
    "PipelineStatus",
    "ProviderMetrics",
    "ProviderType",
    "ResourceUsage",
    "RunnerInfo",
    "StepRecord",
    "WebhookEnvelope",
    "WebhookRegistration",
]
