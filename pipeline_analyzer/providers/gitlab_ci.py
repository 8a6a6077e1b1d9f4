"""GitLab CI provider adapter."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

from pipeline_analyzer.core.config import GITLAB_API_URL, GitLabCIConfig
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
    WebhookEnvelope,
    WebhookRegistration,
)
from pipeline_analyzer.core.timeutils import parse_timestamp, utcnow

from .base import ProviderAdapter
from .http import ResponseType, send_request
from .metrics import MetricsRecorder
from .utils import filter_by_status, normalize_status, parse_log_text, status_query_value

logger = logging.getLogger("pipeline_analyzer.providers.gitlab_ci")

DEFAULT_PAGE_SIZE = 100

# GitLab states the shared status table does not know.
_NATIVE_STATUS_ALIASES = {
    "created": "pending",
    "preparing": "pending",
    "scheduled": "pending",
    "waiting_for_resource": "pending",
    "manual": "skipped",
}

_STATUS_QUERY_VALUES: dict[PipelineStatus, str] = {
    PipelineStatus.PENDING: "pending",
    PipelineStatus.RUNNING: "running",
    PipelineStatus.SUCCESS: "success",
    PipelineStatus.FAILED: "failed",
    PipelineStatus.CANCELLED: "canceled",
    PipelineStatus.SKIPPED: "skipped",
}

_HOOK_EVENT_FLAGS = {
    "push": "push_events",
    "pipeline": "pipeline_events",
    "job": "job_events",
    "merge_request": "merge_requests_events",
}


def _normalize_gitlab_status(status: str | None) -> PipelineStatus:
    token = (status or "").lower()
    return normalize_status(_NATIVE_STATUS_ALIASES.get(token, token))


class GitLabCIProvider(ProviderAdapter):
    provider_id = ProviderType.GITLAB_CI.value
    signature_prefix = "sha256="
    supported_events = ("push", "pipeline", "job", "merge_request")

    def __init__(self, config: GitLabCIConfig, metrics: MetricsRecorder | None = None) -> None:
        super().__init__(config, metrics)
        self._config: GitLabCIConfig = config
        self._base_url = (config.base_url or GITLAB_API_URL).rstrip("/")
        logger.info(
            "GitLab CI provider initialized",
            extra={
                "event": "provider_initialized",
                "provider": self.provider_id,
                "base_url": self._base_url,
                "has_token": bool(config.api_key),
            },
        )

    async def validate_config(self) -> bool:
        if not self._config.api_key:
            raise ConfigurationError(self.provider_id, "GitLab token is required")
        if not self._config.base_url:
            raise ConfigurationError(self.provider_id, "GitLab base URL is required")
        return await self._probe("/user", "provider_validate_fail")

    async def test_connection(self) -> bool:
        return await self._probe("/version", "provider_connection_fail")

    async def fetch_pipeline(self, pipeline_id: str) -> PipelineRecord:
        project, gitlab_pipeline_id = self._split_pipeline_id(pipeline_id)
        data = await self._request(
            "GET", f"/projects/{self._encode(project)}/pipelines/{gitlab_pipeline_id}"
        )
        return self._transform_pipeline(data, project)

    async def fetch_pipelines(
        self, repository: str, filters: PipelineFilter | None = None
    ) -> list[PipelineRecord]:
        project = repository or self._config.project_id
        if not project:
            raise ConfigurationError(self.provider_id, "Project ID is required")
        filters = filters or PipelineFilter()

        params: dict[str, Any] = {
            "per_page": filters.limit or DEFAULT_PAGE_SIZE,
            "order_by": "updated_at",
            "sort": "desc",
        }
        if filters.branch:
            params["ref"] = filters.branch
        if filters.since:
            params["updated_after"] = filters.since.isoformat()
        status = status_query_value(self.provider_id, filters.status, _STATUS_QUERY_VALUES)
        if status:
            params["status"] = status

        data = await self._request(
            "GET", f"/projects/{self._encode(project)}/pipelines", params=params
        )
        pipelines = filter_by_status(
            [self._transform_pipeline(item, project) for item in data or []], filters.status
        )
        logger.info(
            "Fetched GitLab pipelines",
            extra={
                "event": "pipelines_fetched",
                "provider": self.provider_id,
                "project": project,
                "count": len(pipelines),
            },
        )
        return pipelines

    async def fetch_pipeline_run(self, pipeline_id: str, run_id: str) -> PipelineRecord:
        """Fetch pipeline ``run_id`` of project ``pipeline_id`` including its jobs."""

        project = self._project_from(pipeline_id)
        encoded = self._encode(project)
        data = await self._request("GET", f"/projects/{encoded}/pipelines/{run_id}")
        jobs = await self._request(
            "GET",
            f"/projects/{encoded}/pipelines/{run_id}/jobs",
            params={"per_page": DEFAULT_PAGE_SIZE},
        )

        record = self._transform_pipeline(data, project)
        job_records = [self._transform_job(job) for job in jobs or []]
        artifacts = [
            artifact
            for job in jobs or []
            for artifact in self._transform_artifacts(job)
        ]
        return record.model_copy(update={"jobs": job_records, "artifacts": artifacts})

    async def fetch_logs(
        self,
        pipeline_id: str,
        run_id: str,
        job_id: str | None = None,
        step_id: str | None = None,
    ) -> list[LogLine]:
        project = self._project_from(pipeline_id)
        encoded = self._encode(project)

        if job_id:
            return await self._fetch_trace(encoded, str(job_id), step_id)

        jobs = await self._request(
            "GET",
            f"/projects/{encoded}/pipelines/{run_id}/jobs",
            params={"per_page": DEFAULT_PAGE_SIZE},
        )
        ordered = sorted(
            jobs or [],
            key=lambda job: parse_timestamp(job.get("started_at") or job.get("created_at"))
            or utcnow(),
        )
        lines: list[LogLine] = []
        for job in ordered:
            lines.extend(await self._fetch_trace(encoded, str(job.get("id")), step_id))
        return lines

    async def setup_webhook(
        self, repository: str, webhook_url: str, events: Sequence[str]
    ) -> WebhookRegistration:
        project = repository or self._config.project_id
        if not project:
            raise ConfigurationError(self.provider_id, "Project ID is required")

        requested = set(events or self.supported_events)
        unknown = requested - set(_HOOK_EVENT_FLAGS)
        if unknown:
            raise ConfigurationError(
                self.provider_id, f"Unsupported GitLab webhook events: {sorted(unknown)}"
            )

        secret = secrets.token_hex(32)
        body: dict[str, Any] = {"url": webhook_url, "token": secret, "enable_ssl_verification": True}
        for event, flag in _HOOK_EVENT_FLAGS.items():
            body[flag] = event in requested

        data = await self._request("POST", f"/projects/{self._encode(project)}/hooks", json=body)
        logger.info(
            "Created GitLab webhook",
            extra={"event": "webhook_created", "provider": self.provider_id, "repository": project},
        )
        return WebhookRegistration(id=str(data["id"]), secret=secret)

    def _translate_webhook(self, envelope: WebhookEnvelope) -> PipelineRecord | None:
        payload = envelope.payload
        if payload.get("object_kind") != "pipeline":
            return None

        attributes = payload.get("object_attributes")
        if not isinstance(attributes, dict):
            raise WebhookProcessingError(self.provider_id, "Pipeline hook has no object_attributes")
        project_info = payload.get("project") or {}
        project = str(
            project_info.get("path_with_namespace") or project_info.get("id") or UNKNOWN
        )
        commit = payload.get("commit") or {}
        user = payload.get("user") or {}

        pipeline = {
            "id": attributes.get("id"),
            "iid": attributes.get("iid"),
            "ref": attributes.get("ref"),
            "sha": attributes.get("sha"),
            "status": attributes.get("status"),
            "source": attributes.get("source"),
            "created_at": attributes.get("created_at"),
            "started_at": attributes.get("started_at") or attributes.get("created_at"),
            "finished_at": attributes.get("finished_at"),
            "web_url": attributes.get("url") or project_info.get("web_url"),
            "user": user,
        }
        record = self._transform_pipeline(pipeline, project)
        jobs = [self._transform_job(build) for build in payload.get("builds") or []]
        return record.model_copy(
            update={
                "commit_author": (commit.get("author") or {}).get("name") or record.commit_author,
                "commit_message": commit.get("message"),
                "jobs": jobs,
            }
        )

    async def _fetch_trace(self, encoded_project: str, job_id: str, step_id: str | None) -> list[LogLine]:
        text = await self._request(
            "GET", f"/projects/{encoded_project}/jobs/{job_id}/trace", response_type="text"
        )
        return parse_log_text(text or "", source=self.provider_id, job_id=job_id, step_id=step_id)

    async def _probe(self, path: str, failure_event: str) -> bool:
        try:
            await self._request("GET", path)
        except ProviderError as exc:
            logger.warning(
                "GitLab probe failed",
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
            "PRIVATE-TOKEN": self._config.api_key or "",
            "Content-Type": "application/json",
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

    @staticmethod
    def _encode(project: str) -> str:
        return quote(str(project), safe="")

    def _split_pipeline_id(self, pipeline_id: str) -> tuple[str, str]:
        project, separator, gitlab_pipeline_id = pipeline_id.rpartition(":")
        if separator and project:
            return project, gitlab_pipeline_id
        if self._config.project_id:
            return self._config.project_id, pipeline_id
        raise ConfigurationError(
            self.provider_id, "Pipeline ID must look like <project>:<pipeline> without a project_id"
        )

    def _project_from(self, pipeline_id: str) -> str:
        project = pipeline_id.partition(":")[0] if pipeline_id else ""
        project = project or self._config.project_id or ""
        if not project:
            raise ConfigurationError(self.provider_id, "Project ID is required")
        return project

    def _transform_pipeline(self, pipeline: dict[str, Any], project: str) -> PipelineRecord:
        pipeline_id = pipeline.get("id")
        if pipeline_id is None:
            raise ProviderError(self.provider_id, "Pipeline payload has no id")
        user = pipeline.get("user") or {}
        username = user.get("username") or UNKNOWN

        return PipelineRecord(
            id=f"{project}:{pipeline_id}",
            provider=self.provider_id,
            name=pipeline.get("name") or f"Pipeline #{pipeline_id}",
            repository=project,
            branch=pipeline.get("ref") or UNKNOWN,
            status=_normalize_gitlab_status(pipeline.get("status")),
            started_at=parse_timestamp(pipeline.get("started_at") or pipeline.get("created_at")),
            finished_at=parse_timestamp(pipeline.get("finished_at")),
            triggered_by=username,
            triggered_event=pipeline.get("source") or UNKNOWN,
            commit_sha=pipeline.get("sha") or UNKNOWN,
            commit_author=user.get("name") or username,
            run_number=int(pipeline.get("iid") or pipeline_id),
            web_url=pipeline.get("web_url"),
        )

    def _transform_job(self, job: dict[str, Any]) -> JobRecord:
        runner = None
        runner_info = job.get("runner")
        if isinstance(runner_info, dict) and runner_info.get("id") is not None:
            runner = RunnerInfo(
                id=str(runner_info["id"]),
                name=runner_info.get("description") or runner_info.get("name") or UNKNOWN,
                labels=[str(tag) for tag in job.get("tag_list") or runner_info.get("tags") or []],
            )

        return JobRecord(
            id=str(job.get("id")),
            name=job.get("name") or str(job.get("id")),
            status=_normalize_gitlab_status(job.get("status")),
            stage=job.get("stage"),
            started_at=parse_timestamp(job.get("started_at") or job.get("created_at")),
            finished_at=parse_timestamp(job.get("finished_at")),
            web_url=job.get("web_url"),
            runner=runner,
        )

    @staticmethod
    def _transform_artifacts(job: dict[str, Any]) -> list[ArtifactRecord]:
        artifacts: list[ArtifactRecord] = []
        for item in job.get("artifacts") or []:
            filename = item.get("filename") or item.get("file_type") or UNKNOWN
            artifacts.append(
                ArtifactRecord(
                    id=f"{job.get('id')}:{filename}",
                    name=filename,
                    type=item.get("file_type") or "archive",
                    size_bytes=int(item.get("size") or 0),
                    expires_at=parse_timestamp(job.get("artifacts_expire_at")),
                )
            )
        return artifacts
