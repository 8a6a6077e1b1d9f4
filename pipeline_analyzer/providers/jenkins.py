"""Jenkins provider adapter."""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from http import HTTPStatus
from typing import Any
from urllib.parse import quote, unquote

from pipeline_analyzer.core.config import JenkinsConfig
from pipeline_analyzer.core.exceptions import (
    ConfigurationError,
    ProviderError,
    TransportError,
    UnsupportedOperationError,
    WebhookProcessingError,
)
from pipeline_analyzer.core.models import (
    UNKNOWN,
    JobRecord,
    LogLine,
    PipelineFilter,
    PipelineRecord,
    PipelineStatus,
    ProviderType,
    WebhookEnvelope,
    WebhookRegistration,
)
from pipeline_analyzer.core.timeutils import parse_timestamp

from .base import ProviderAdapter
from .http import ResponseType, send_request
from .metrics import MetricsRecorder
from .utils import filter_by_status, normalize_status, parse_log_text

logger = logging.getLogger("pipeline_analyzer.providers.jenkins")

DEFAULT_PAGE_SIZE = 30

BUILD_TREE = (
    "number,result,building,timestamp,duration,displayName,fullDisplayName,url,"
    "actions[causes[shortDescription,userId,userName],lastBuiltRevision[SHA1,branch[name]]],"
    "changeSets[items[commitId,msg,author[fullName]]]"
)

# Jenkins results and pipeline stage states, folded into the shared vocabulary.
_RESULT_ALIASES = {
    "failure": "failed",
    "unstable": "failed",
    "aborted": "cancelled",
    "not_built": "skipped",
    "not_executed": "skipped",
    "in_progress": "running",
    "paused_pending_input": "pending",
}

_PHASE_STATUS = {
    "QUEUED": PipelineStatus.PENDING,
    "STARTED": PipelineStatus.RUNNING,
}


def _normalize_result(result: str | None) -> PipelineStatus:
    token = (result or "").lower()
    return normalize_status(_RESULT_ALIASES.get(token, token))


def job_url_path(job_name: str) -> str:
    """Expand ``folder/job`` into Jenkins' ``/job/folder/job/job`` URL path."""

    segments = [segment for segment in job_name.strip("/").split("/") if segment]
    if not segments:
        raise ValueError("Jenkins job name is empty")
    return "".join(f"/job/{quote(segment, safe='')}" for segment in segments)


def branch_job_name(branch: str) -> str:
    """Name of the multibranch child job for ``branch``.

    Jenkins stores ``feature/login`` as the single item ``feature%2Flogin``,
    so the slash never becomes a folder separator.
    """

    return quote(branch, safe="")


def job_name_from_url(url: str) -> str:
    """Recover ``folder/job`` from a build or job URL such as ``job/folder/job/app/12/``."""

    parts = [part for part in url.split("/") if part]
    names = [unquote(parts[index + 1]) for index, part in enumerate(parts[:-1]) if part == "job"]
    return "/".join(names)


class JenkinsProvider(ProviderAdapter):
    provider_id = ProviderType.JENKINS.value
    signature_prefix = ""
    supported_events = ("QUEUED", "STARTED", "COMPLETED", "FINALIZED")

    def __init__(self, config: JenkinsConfig, metrics: MetricsRecorder | None = None) -> None:
        super().__init__(config, metrics)
        self._config: JenkinsConfig = config
        self._base_url = (config.base_url or "").rstrip("/")

    async def validate_config(self) -> bool:
        if not self._config.api_key:
            raise ConfigurationError(self.provider_id, "Jenkins API token is required")
        if not self._base_url:
            raise ConfigurationError(self.provider_id, "Jenkins base URL is required")
        return await self._probe("/me/api/json", "provider_validate_fail")

    async def test_connection(self) -> bool:
        return await self._probe("/api/json", "provider_connection_fail")

    async def fetch_pipeline(self, pipeline_id: str) -> PipelineRecord:
        job_name, build_number = self._split_pipeline_id(pipeline_id)
        data = await self._request(
            "GET", f"{self._job_path(job_name)}/{build_number}/api/json", params={"tree": BUILD_TREE}
        )
        return self._transform_build(data, job_name)

    async def fetch_pipelines(
        self, repository: str, filters: PipelineFilter | None = None
    ) -> list[PipelineRecord]:
        """List builds of job ``repository``.

        A branch selects the matching child of a multibranch job. ``since`` and
        the status set have no server-side equivalent and are applied to the
        fetched page.
        """

        filters = filters or PipelineFilter()
        job_name = repository.strip("/")
        if filters.branch:
            job_name = f"{job_name}/{branch_job_name(filters.branch)}"
        limit = filters.limit or DEFAULT_PAGE_SIZE

        data = await self._request(
            "GET",
            f"{self._job_path(job_name)}/api/json",
            params={"tree": f"builds[{BUILD_TREE}]{{0,{limit}}}"},
        )
        records = [self._transform_build(build, job_name) for build in data.get("builds") or []]

        if filters.since:
            records = [
                record
                for record in records
                if record.started_at is not None and record.started_at >= filters.since
            ]
        return filter_by_status(records, filters.status)

    async def fetch_pipeline_run(self, pipeline_id: str, run_id: str) -> PipelineRecord:
        job_name = self._job_from(pipeline_id)
        record = await self.fetch_pipeline(f"{job_name}:{run_id}")
        stages = await self._fetch_stages(job_name, run_id)
        return record.model_copy(update={"jobs": stages})

    async def fetch_logs(
        self,
        pipeline_id: str,
        run_id: str,
        job_id: str | None = None,
        step_id: str | None = None,
    ) -> list[LogLine]:
        job_name = self._job_from(pipeline_id)
        build_path = f"{self._job_path(job_name)}/{run_id}"

        if job_id:
            data = await self._request(
                "GET", f"{build_path}/execution/node/{job_id}/wfapi/log"
            )
            text = data.get("text") or "" if isinstance(data, dict) else ""
        else:
            text = await self._request("GET", f"{build_path}/consoleText", response_type="text")
        return parse_log_text(
            text, source=self.provider_id, job_id=str(job_id) if job_id else None, step_id=step_id
        )

    async def setup_webhook(
        self, repository: str, webhook_url: str, events: Sequence[str]
    ) -> WebhookRegistration:
        raise UnsupportedOperationError(
            self.provider_id,
            "Jenkins notifications are configured per job on the Jenkins server",
        )

    def _translate_webhook(self, envelope: WebhookEnvelope) -> PipelineRecord | None:
        payload = envelope.payload
        build = payload.get("build")
        if not isinstance(build, dict):
            return None
        number = build.get("number")
        if number is None:
            raise WebhookProcessingError(self.provider_id, "Build notification has no build number")

        job_name = job_name_from_url(payload.get("url") or "") or payload.get("name") or UNKNOWN
        phase = str(build.get("phase") or envelope.event).upper()
        status = _PHASE_STATUS.get(phase) or _normalize_result(build.get("status"))
        scm = build.get("scm") or {}

        started_at = parse_timestamp(build.get("timestamp"))
        finished_at = None
        if started_at is not None and phase in {"COMPLETED", "FINALIZED"} and build.get("duration"):
            finished_at = parse_timestamp(int(build["timestamp"]) + int(build["duration"]))

        return PipelineRecord(
            id=f"{job_name}:{number}",
            provider=self.provider_id,
            name=payload.get("display_name") or payload.get("name") or job_name,
            repository=job_name,
            branch=_short_branch(scm.get("branch")) or UNKNOWN,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            triggered_event="notification",
            commit_sha=scm.get("commit") or UNKNOWN,
            run_number=int(number),
            web_url=build.get("full_url"),
        )

    async def _fetch_stages(self, job_name: str, run_id: str) -> list[JobRecord]:
        try:
            data = await self._request(
                "GET", f"{self._job_path(job_name)}/{run_id}/wfapi/describe"
            )
        except TransportError as exc:
            if exc.status_code == HTTPStatus.NOT_FOUND:
                # Freestyle jobs have no pipeline stages.
                return []
            raise

        stages: list[JobRecord] = []
        for stage in data.get("stages") or []:
            started_at = parse_timestamp(stage.get("startTimeMillis"))
            finished_at = None
            if started_at is not None and stage.get("status") != "IN_PROGRESS":
                finished_at = parse_timestamp(
                    int(stage["startTimeMillis"]) + int(stage.get("durationMillis") or 0)
                )
            stages.append(
                JobRecord(
                    id=str(stage.get("id")),
                    name=stage.get("name") or str(stage.get("id")),
                    status=_normalize_result(stage.get("status")),
                    stage=stage.get("name"),
                    started_at=started_at,
                    finished_at=finished_at,
                )
            )
        return stages

    async def _probe(self, path: str, failure_event: str) -> bool:
        try:
            await self._request("GET", path)
        except ProviderError as exc:
            logger.warning(
                "Jenkins probe failed",
                extra={
                    "event": failure_event,
                    "provider": self.provider_id,
                    "path": path,
                    "error_message": exc.message,
                },
            )
            return False
        return True

    def _auth_header(self) -> str:
        token = self._config.api_key or ""
        if self._config.username:
            raw = f"{self._config.username}:{token}".encode("utf-8")
            return f"Basic {base64.b64encode(raw).decode('ascii')}"
        return f"Bearer {token}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        response_type: ResponseType = "json",
    ) -> Any:
        if not self._base_url:
            raise ConfigurationError(self.provider_id, "Jenkins base URL is required")
        return await send_request(
            self.provider_id,
            self._metrics,
            method,
            f"{self._base_url}{path}",
            headers={"Authorization": self._auth_header(), "Accept": "application/json"},
            timeout=self._config.timeout_seconds,
            params=params,
            json=json,
            response_type=response_type,
        )

    def _job_path(self, job_name: str) -> str:
        try:
            return job_url_path(job_name)
        except ValueError as exc:
            raise ConfigurationError(self.provider_id, str(exc)) from exc

    def _split_pipeline_id(self, pipeline_id: str) -> tuple[str, str]:
        job_name, separator, build_number = pipeline_id.rpartition(":")
        if not separator or not job_name or not build_number:
            raise ConfigurationError(
                self.provider_id, f"Pipeline ID must look like <job>:<build>, got {pipeline_id!r}"
            )
        return job_name, build_number

    @staticmethod
    def _job_from(pipeline_id: str) -> str:
        job_name, separator, _ = pipeline_id.rpartition(":")
        return job_name if separator else pipeline_id

    def _transform_build(self, build: dict[str, Any], job_name: str) -> PipelineRecord:
        number = build.get("number")
        if number is None:
            raise ProviderError(self.provider_id, "Build payload has no number")

        if build.get("building"):
            status = PipelineStatus.RUNNING
        elif not build.get("result"):
            status = PipelineStatus.PENDING
        else:
            status = _normalize_result(build.get("result"))

        started_at = parse_timestamp(build.get("timestamp"))
        finished_at = None
        # Jenkins reports a start time and an elapsed time but no end time.
        if started_at is not None and not build.get("building") and build.get("result"):
            finished_at = parse_timestamp(int(build["timestamp"]) + int(build.get("duration") or 0))

        cause, revision = _build_actions(build.get("actions") or [])
        commit = _last_commit(build.get("changeSets") or [])
        branches = revision.get("branch") or []

        return PipelineRecord(
            id=f"{job_name}:{number}",
            provider=self.provider_id,
            name=build.get("fullDisplayName") or f"{job_name} #{number}",
            repository=job_name,
            branch=_short_branch(branches[0].get("name") if branches else None) or UNKNOWN,
            status=status,
            started_at=started_at,
            finished_at=finished_at,
            triggered_by=cause.get("userId") or cause.get("userName") or UNKNOWN,
            triggered_event=_trigger_event(cause),
            commit_sha=commit.get("commitId") or revision.get("SHA1") or UNKNOWN,
            commit_author=(commit.get("author") or {}).get("fullName") or UNKNOWN,
            commit_message=commit.get("msg"),
            run_number=int(number),
            web_url=build.get("url"),
        )


def _build_actions(actions: list[Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    cause: dict[str, Any] = {}
    revision: dict[str, Any] = {}
    for action in actions:
        if not isinstance(action, dict):
            continue
        if not cause and action.get("causes"):
            cause = action["causes"][0] or {}
        if not revision and action.get("lastBuiltRevision"):
            revision = action["lastBuiltRevision"] or {}
    return cause, revision


def _last_commit(change_sets: list[Any]) -> dict[str, Any]:
    for change_set in reversed(change_sets):
        items = change_set.get("items") if isinstance(change_set, dict) else None
        if items:
            return items[-1]
    return {}


def _trigger_event(cause: dict[str, Any]) -> str:
    if cause.get("userId") or cause.get("userName"):
        return "manual"
    description = (cause.get("shortDescription") or "").lower()
    if "scm" in description or "push" in description:
        return "push"
    if "timer" in description:
        return "schedule"
    if "upstream" in description:
        return "upstream"
    return UNKNOWN


def _short_branch(name: str | None) -> str | None:
    if not name:
        return None
    for prefix in ("refs/remotes/origin/", "refs/heads/", "origin/"):
        if name.startswith(prefix):
            return name[len(prefix):]
    return name
