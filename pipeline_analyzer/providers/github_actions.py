"""GitHub Actions provider adapter."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Sequence
from typing import Any

from pipeline_analyzer.core.config import GITHUB_API_URL, GitHubActionsConfig
from pipeline_analyzer.core.exceptions import ConfigurationError, ProviderError, WebhookProcessingError
from pipeline_analyzer.core.models import (
    UNKNOWN,
    ArtifactRecord,
    JobRecord,
    LogLine,
    PipelineFilter,
    PipelineRecord,
    PipelineStatus,
    ProviderType,
    RunnerInfo,
    StepRecord,
    WebhookEnvelope,
    WebhookRegistration,
)
from pipeline_analyzer.core.timeutils import parse_timestamp

from .base import ProviderAdapter
from .http import ResponseType, send_request
from .metrics import MetricsRecorder
from .utils import filter_by_status, normalize_status, parse_log_text, status_query_value

logger = logging.getLogger("pipeline_analyzer.providers.github_actions")

USER_AGENT = "cicd-pipeline-analyzer/0.1.0"
DEFAULT_PAGE_SIZE = 30
MAX_PAGE_SIZE = 100

# GitHub's ``status`` query parameter accepts one value, drawn from both its
# status and conclusion vocabularies.
_STATUS_QUERY_VALUES: dict[PipelineStatus, str] = {
    PipelineStatus.PENDING: "queued",
    PipelineStatus.RUNNING: "in_progress",
    PipelineStatus.SUCCESS: "success",
    PipelineStatus.FAILED: "failure",
    PipelineStatus.CANCELLED: "cancelled",
    PipelineStatus.SKIPPED: "skipped",
    PipelineStatus.TIMEOUT: "timed_out",
}


class GitHubActionsProvider(ProviderAdapter):
    provider_id = ProviderType.GITHUB_ACTIONS.value
    signature_prefix = "sha256="
    supported_events = ("workflow_run", "workflow_job", "check_run", "check_suite")

    def __init__(self, config: GitHubActionsConfig, metrics: MetricsRecorder | None = None) -> None:
        super().__init__(config, metrics)
        self._config: GitHubActionsConfig = config
        self._base_url = (config.base_url or GITHUB_API_URL).rstrip("/")

    async def validate_config(self) -> bool:
        if not self._config.api_key:
            raise ConfigurationError(self.provider_id, "GitHub token is required")
        return await self._probe("/user", "provider_validate_fail")

    async def test_connection(self) -> bool:
        return await self._probe("/rate_limit", "provider_connection_fail")

    async def fetch_pipeline(self, pipeline_id: str) -> PipelineRecord:
        owner, repo = self._configured_repository()
        data = await self._request("GET", f"/repos/{owner}/{repo}/actions/runs/{pipeline_id}")
        return self._transform_run(data)

    async def fetch_pipelines(
        self, repository: str, filters: PipelineFilter | None = None
    ) -> list[PipelineRecord]:
        owner, repo = self._split_repository(repository)
        filters = filters or PipelineFilter()

        params: dict[str, Any] = {
            "per_page": min(filters.limit or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE),
        }
        if filters.branch:
            params["branch"] = filters.branch
        if filters.since:
            params["created"] = f">={filters.since.isoformat()}"
        status = status_query_value(self.provider_id, filters.status, _STATUS_QUERY_VALUES)
        if status:
            params["status"] = status

        data = await self._request("GET", f"/repos/{owner}/{repo}/actions/runs", params=params)
        runs = data.get("workflow_runs") or []
        records = [self._transform_run(run, repository=f"{owner}/{repo}") for run in runs]
        return filter_by_status(records, filters.status)

    async def fetch_pipeline_run(self, pipeline_id: str, run_id: str) -> PipelineRecord:
        """Fetch a workflow run together with its jobs and artifacts.

        Runs are top-level objects on GitHub, so ``pipeline_id`` only selects
        the repository when it is given as ``owner/repo``.
        """

        owner, repo = self._resolve_repository(pipeline_id)
        base_path = f"/repos/{owner}/{repo}/actions/runs/{run_id}"
        run = await self._request("GET", base_path)
        jobs = await self._request("GET", f"{base_path}/jobs", params={"per_page": MAX_PAGE_SIZE})
        artifacts = await self._request(
            "GET", f"{base_path}/artifacts", params={"per_page": MAX_PAGE_SIZE}
        )

        record = self._transform_run(run, repository=f"{owner}/{repo}")
        return record.model_copy(
            update={
                "jobs": [self._transform_job(job) for job in jobs.get("jobs") or []],
                "artifacts": [
                    self._transform_artifact(item) for item in artifacts.get("artifacts") or []
                ],
            }
        )

    async def fetch_logs(
        self,
        pipeline_id: str,
        run_id: str,
        job_id: str | None = None,
        step_id: str | None = None,
    ) -> list[LogLine]:
        if not job_id:
            # Whole-run logs are served as a zip archive, which is not parsed.
            logger.info(
                "Run-level log archives are not supported",
                extra={"event": "log_archive_skipped", "provider": self.provider_id, "run_id": run_id},
            )
            return []

        owner, repo = self._resolve_repository(pipeline_id)
        text = await self._request(
            "GET", f"/repos/{owner}/{repo}/actions/jobs/{job_id}/logs", response_type="text"
        )
        return parse_log_text(text, source=self.provider_id, job_id=str(job_id), step_id=step_id)

    async def setup_webhook(
        self, repository: str, webhook_url: str, events: Sequence[str]
    ) -> WebhookRegistration:
        owner, repo = self._split_repository(repository)
        secret = secrets.token_hex(32)
        data = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/hooks",
            json={
                "name": "web",
                "active": True,
                "events": list(events) or list(self.supported_events),
                "config": {
                    "url": webhook_url,
                    "content_type": "json",
                    "secret": secret,
                    "insecure_ssl": "0",
                },
            },
        )
        logger.info(
            "Created GitHub webhook",
            extra={"event": "webhook_created", "provider": self.provider_id, "repository": repository},
        )
        return WebhookRegistration(id=str(data["id"]), secret=secret)

    def _translate_webhook(self, envelope: WebhookEnvelope) -> PipelineRecord | None:
        if envelope.event != "workflow_run":
            return None
        run = envelope.payload.get("workflow_run")
        if not isinstance(run, dict):
            raise WebhookProcessingError(self.provider_id, "workflow_run payload is missing its run")
        repository = (envelope.payload.get("repository") or {}).get("full_name")
        return self._transform_run(run, repository=repository)

    async def _probe(self, path: str, failure_event: str) -> bool:
        try:
            await self._request("GET", path)
        except ProviderError as exc:
            logger.warning(
                "GitHub probe failed",
                extra={
                    "event": failure_event,
                    "provider": self.provider_id,
                    "path": path,
                    "error_message": exc.message,
                },
            )
            return False
        return True

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        response_type: ResponseType = "json",
    ) -> Any:
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": USER_AGENT,
        }
        return await send_request(
            self.provider_id,
            self._metrics,
            method,
            f"{self._base_url}{path}",
            headers=headers,
            timeout=self._config.timeout_seconds,
            params=params,
            json=json,
            response_type=response_type,
        )

    def _configured_repository(self) -> tuple[str, str]:
        if self._config.owner and self._config.repo:
            return self._config.owner, self._config.repo
        raise ConfigurationError(
            self.provider_id, "Owner and repo must be configured for GitHub Actions provider"
        )

    def _resolve_repository(self, pipeline_id: str) -> tuple[str, str]:
        if "/" in pipeline_id:
            return self._split_repository(pipeline_id)
        return self._configured_repository()

    def _split_repository(self, repository: str) -> tuple[str, str]:
        owner, _, repo = repository.strip("/").partition("/")
        if not owner or not repo or "/" in repo:
            raise ConfigurationError(
                self.provider_id, f"Repository must look like owner/repo, got {repository!r}"
            )
        return owner, repo

    @staticmethod
    def _combined_status(status: str | None, conclusion: str | None) -> PipelineStatus:
        if status == "completed":
            return normalize_status(conclusion or UNKNOWN)
        return normalize_status(status)

    def _transform_run(
        self, run: dict[str, Any], repository: str | None = None
    ) -> PipelineRecord:
        run_id = run.get("id")
        if run_id is None:
            raise ProviderError(self.provider_id, "Workflow run payload has no id")

        completed = run.get("status") == "completed"
        repo_info = run.get("repository") or {}
        head_commit = run.get("head_commit") or {}
        author = head_commit.get("author") or {}
        actor = run.get("triggering_actor") or run.get("actor") or {}

        return PipelineRecord(
            id=str(run_id),
            provider=self.provider_id,
            name=run.get("name") or run.get("display_title") or f"Run {run_id}",
            repository=repo_info.get("full_name") or repository or UNKNOWN,
            branch=run.get("head_branch") or UNKNOWN,
            status=self._combined_status(run.get("status"), run.get("conclusion")),
            started_at=parse_timestamp(run.get("run_started_at") or run.get("created_at")),
            finished_at=parse_timestamp(run.get("updated_at")) if completed else None,
            triggered_by=actor.get("login") or UNKNOWN,
            triggered_event=run.get("event") or UNKNOWN,
            commit_sha=run.get("head_sha") or UNKNOWN,
            commit_author=author.get("name") or UNKNOWN,
            commit_message=head_commit.get("message"),
            run_number=int(run.get("run_number") or 0),
            web_url=run.get("html_url"),
        )

    def _transform_job(self, job: dict[str, Any]) -> JobRecord:
        job_id = str(job.get("id"))
        steps = [
            StepRecord(
                id=f"{job_id}:{step.get('number', index)}",
                name=step.get("name") or f"Step {index}",
                status=self._combined_status(step.get("status"), step.get("conclusion")),
                started_at=parse_timestamp(step.get("started_at")),
                finished_at=parse_timestamp(step.get("completed_at")),
            )
            for index, step in enumerate(job.get("steps") or [], start=1)
        ]

        runner = None
        if job.get("runner_name"):
            labels = [str(label) for label in job.get("labels") or []]
            runner = RunnerInfo(
                id=str(job.get("runner_id") or job["runner_name"]),
                name=job["runner_name"],
                os=_runner_os(labels),
                arch=_runner_arch(labels),
                labels=labels,
            )

        return JobRecord(
            id=job_id,
            name=job.get("name") or job_id,
            status=self._combined_status(job.get("status"), job.get("conclusion")),
            started_at=parse_timestamp(job.get("started_at")),
            finished_at=parse_timestamp(job.get("completed_at")),
            web_url=job.get("html_url"),
            steps=steps,
            runner=runner,
        )

    @staticmethod
    def _transform_artifact(item: dict[str, Any]) -> ArtifactRecord:
        return ArtifactRecord(
            id=str(item.get("id")),
            name=item.get("name") or UNKNOWN,
            type="archive",
            size_bytes=int(item.get("size_in_bytes") or 0),
            download_url=item.get("archive_download_url"),
            expires_at=parse_timestamp(item.get("expires_at")),
        )


def _runner_os(labels: list[str]) -> str:
    lowered = " ".join(labels).lower()
    for marker, name in (("ubuntu", "linux"), ("linux", "linux"), ("windows", "windows"), ("macos", "macos")):
        if marker in lowered:
            return name
    return UNKNOWN


def _runner_arch(labels: list[str]) -> str:
    lowered = {label.lower() for label in labels}
    if "arm64" in lowered:
        return "arm64"
    if "x64" in lowered:
        return "x64"
    return UNKNOWN
