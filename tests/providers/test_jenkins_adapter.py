import base64
from datetime import datetime, timezone
from http import HTTPStatus

import pytest

from pipeline_analyzer.core.config import JenkinsConfig
from pipeline_analyzer.core.exceptions import ConfigurationError, UnsupportedOperationError
from pipeline_analyzer.core.models import PipelineFilter, PipelineStatus, WebhookEnvelope
from pipeline_analyzer.providers.jenkins import JenkinsProvider, job_name_from_url, job_url_path
from pipeline_analyzer.providers.utils import sign_payload

BASE_URL = "https://ci.example.com"
STARTED_MS = 1_714_557_600_000  # 2024-05-01T10:00:00Z
BUILD_DURATION_MS = 95_000


def _build_payload(number: int = 12, **overrides) -> dict:
    payload = {
        "number": number,
        "result": "SUCCESS",
        "building": False,
        "timestamp": STARTED_MS,
        "duration": BUILD_DURATION_MS,
        "fullDisplayName": f"platform » api #{number}",
        "url": f"{BASE_URL}/job/platform/job/api/{number}/",
        "actions": [
            {"_class": "hudson.model.CauseAction", "causes": [{"shortDescription": "Started by an SCM change"}]},
            {
                "_class": "hudson.plugins.git.util.BuildData",
                "lastBuiltRevision": {
                    "SHA1": "cafebabe",
                    "branch": [{"name": "refs/remotes/origin/main"}],
                },
            },
        ],
        "changeSets": [
            {"items": [{"commitId": "cafebabe", "msg": "Bump deps", "author": {"fullName": "Ada"}}]}
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def adapter() -> JenkinsProvider:
    return JenkinsProvider(
        JenkinsConfig(api_key="jenkins-token", base_url=BASE_URL, username="ci-bot", webhook_secret="notify")
    )


def test_job_paths_round_trip_folders():
    assert job_url_path("platform/api") == "/job/platform/job/api"
    assert job_url_path("my job") == "/job/my%20job"
    assert job_name_from_url("job/platform/job/api/12/") == "platform/api"


@pytest.mark.asyncio
async def test_fetch_pipeline_normalizes_build(adapter, http_stub, fake_response):
    http_stub.routes["/job/platform/job/api/12/api/json"] = fake_response(HTTPStatus.OK, _build_payload())

    record = await adapter.fetch_pipeline("platform/api:12")

    call = http_stub.calls[0]
    expected_auth = base64.b64encode(b"ci-bot:jenkins-token").decode("ascii")
    assert call["url"] == f"{BASE_URL}/job/platform/job/api/12/api/json"
    assert call["headers"]["Authorization"] == f"Basic {expected_auth}"
    assert "tree" in call["params"]
    assert record.id == "platform/api:12"
    assert record.status is PipelineStatus.SUCCESS
    assert record.branch == "main"
    assert record.commit_sha == "cafebabe"
    assert record.commit_author == "Ada"
    assert record.triggered_event == "push"
    assert record.started_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert record.duration == BUILD_DURATION_MS


@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({"building": True, "result": None}, PipelineStatus.RUNNING),
        ({"result": None}, PipelineStatus.PENDING),
        ({"result": "FAILURE"}, PipelineStatus.FAILED),
        ({"result": "UNSTABLE"}, PipelineStatus.FAILED),
        ({"result": "ABORTED"}, PipelineStatus.CANCELLED),
        ({"result": "NOT_BUILT"}, PipelineStatus.SKIPPED),
    ],
)
@pytest.mark.asyncio
async def test_build_results_map_to_canonical_status(adapter, http_stub, fake_response, overrides, expected):
    http_stub.routes["/job/platform/job/api/12/api/json"] = fake_response(
        HTTPStatus.OK, _build_payload(**overrides)
    )

    record = await adapter.fetch_pipeline("platform/api:12")

    assert record.status is expected
    if expected in {PipelineStatus.RUNNING, PipelineStatus.PENDING}:
        assert record.finished_at is None


@pytest.mark.asyncio
async def test_fetch_pipeline_rejects_id_without_build_number(adapter, http_stub):
    with pytest.raises(ConfigurationError):
        await adapter.fetch_pipeline("platform/api")

    assert http_stub.calls == []


@pytest.mark.asyncio
async def test_fetch_pipelines_filters_client_side(adapter, http_stub, fake_response):
    http_stub.routes["/job/platform/job/api/job/main/api/json"] = fake_response(
        HTTPStatus.OK,
        {
            "builds": [
                _build_payload(14, result="FAILURE"),
                _build_payload(13),
                _build_payload(12, result="FAILURE", timestamp=STARTED_MS - 86_400_000),
            ]
        },
    )

    records = await adapter.fetch_pipelines(
        "platform/api",
        PipelineFilter(
            branch="main",
            limit=3,
            since=datetime(2024, 5, 1, tzinfo=timezone.utc),
            status=[PipelineStatus.FAILED],
        ),
    )

    assert http_stub.calls[0]["params"]["tree"].endswith("{0,3}")
    assert [record.id for record in records] == ["platform/api/main:14"]


@pytest.mark.asyncio
async def test_fetch_pipelines_accepts_naive_since_as_utc(adapter, http_stub, fake_response):
    http_stub.routes["/job/platform/job/api/api/json"] = fake_response(
        HTTPStatus.OK,
        {
            "builds": [
                _build_payload(13),
                _build_payload(12, timestamp=STARTED_MS - 86_400_000),
            ]
        },
    )

    records = await adapter.fetch_pipelines("platform/api", PipelineFilter(since=datetime(2024, 5, 1)))

    assert [record.id for record in records] == ["platform/api:13"]


@pytest.mark.asyncio
async def test_branch_with_slash_is_one_multibranch_job(adapter, http_stub, fake_response):
    http_stub.routes["/job/platform/job/api/job/feature%252Flogin/api/json"] = fake_response(
        HTTPStatus.OK, {"builds": [_build_payload(7)]}
    )
    http_stub.routes["/job/platform/job/api/job/feature%252Flogin/7/api/json"] = fake_response(
        HTTPStatus.OK, _build_payload(7)
    )

    records = await adapter.fetch_pipelines("platform/api", PipelineFilter(branch="feature/login"))

    assert http_stub.calls[0]["url"] == (
        f"{BASE_URL}/job/platform/job/api/job/feature%252Flogin/api/json"
    )
    assert [record.id for record in records] == ["platform/api/feature%2Flogin:7"]

    again = await adapter.fetch_pipeline(records[0].id)

    assert http_stub.calls[1]["url"] == (
        f"{BASE_URL}/job/platform/job/api/job/feature%252Flogin/7/api/json"
    )
    assert again.id == records[0].id
    assert job_name_from_url("job/platform/job/api/job/feature%252Flogin/7/") == (
        "platform/api/feature%2Flogin"
    )


@pytest.mark.asyncio
async def test_fetch_pipeline_run_adds_stages(adapter, http_stub, fake_response):
    http_stub.routes["/job/platform/job/api/12/api/json"] = fake_response(HTTPStatus.OK, _build_payload())
    http_stub.routes["/job/platform/job/api/12/wfapi/describe"] = fake_response(
        HTTPStatus.OK,
        {
            "stages": [
                {"id": "6", "name": "Build", "status": "SUCCESS", "startTimeMillis": STARTED_MS, "durationMillis": 30_000},
                {"id": "14", "name": "Deploy", "status": "IN_PROGRESS", "startTimeMillis": STARTED_MS + 30_000},
            ]
        },
    )

    record = await adapter.fetch_pipeline_run("platform/api", "12")

    assert [job.name for job in record.jobs] == ["Build", "Deploy"]
    assert record.jobs[0].duration == 30_000
    assert record.jobs[1].status is PipelineStatus.RUNNING
    assert record.jobs[1].finished_at is None


@pytest.mark.asyncio
async def test_fetch_pipeline_run_without_pipeline_stages(adapter, http_stub, fake_response):
    http_stub.routes["/job/platform/job/api/12/api/json"] = fake_response(HTTPStatus.OK, _build_payload())

    record = await adapter.fetch_pipeline_run("platform/api:12", "12")

    assert record.jobs == []
    assert adapter.get_metrics().error_count == 1


@pytest.mark.asyncio
async def test_fetch_logs_reads_console_text(adapter, http_stub, fake_response):
    http_stub.routes["/job/platform/job/api/12/consoleText"] = fake_response(
        HTTPStatus.OK, text="Started by user admin\n\x1b[31mERROR: tests failed\x1b[0m\nFinished: FAILURE\n"
    )

    lines = await adapter.fetch_logs("platform/api", "12")

    assert [line.message for line in lines] == [
        "Started by user admin",
        "ERROR: tests failed",
        "Finished: FAILURE",
    ]
    assert [line.level for line in lines] == ["info", "error", "error"]


@pytest.mark.asyncio
async def test_setup_webhook_is_unsupported(adapter, http_stub):
    with pytest.raises(UnsupportedOperationError):
        await adapter.setup_webhook("platform/api", "https://hooks.example.com/jenkins", ["COMPLETED"])


@pytest.mark.asyncio
async def test_process_webhook_translates_notification(adapter):
    envelope = WebhookEnvelope(
        provider="jenkins",
        event="COMPLETED",
        payload={
            "name": "api",
            "url": "job/platform/job/api/",
            "build": {
                "full_url": f"{BASE_URL}/job/platform/job/api/12/",
                "number": 12,
                "phase": "COMPLETED",
                "status": "UNSTABLE",
                "timestamp": STARTED_MS,
                "duration": BUILD_DURATION_MS,
                "scm": {"branch": "origin/main", "commit": "cafebabe"},
            },
        },
    )

    record = await adapter.process_webhook(envelope)

    assert record is not None
    assert record.id == "platform/api:12"
    assert record.status is PipelineStatus.FAILED
    assert record.branch == "main"
    assert record.duration == BUILD_DURATION_MS


@pytest.mark.asyncio
async def test_process_webhook_started_phase_is_running(adapter):
    envelope = WebhookEnvelope(
        provider="jenkins",
        event="STARTED",
        payload={"name": "api", "url": "job/api/", "build": {"number": 3, "phase": "STARTED"}},
    )

    record = await adapter.process_webhook(envelope)

    assert record is not None
    assert record.status is PipelineStatus.RUNNING
    assert record.finished_at is None


def test_signature_is_bare_hex(adapter):
    payload = b'{"name":"api"}'

    assert adapter.verify_webhook_signature(payload, sign_payload("notify", payload)) is True
    assert adapter.verify_webhook_signature(payload, sign_payload("notify", payload, "sha256=")) is False


def test_bearer_auth_without_username(http_stub):
    adapter = JenkinsProvider(JenkinsConfig(api_key="jenkins-token", base_url=BASE_URL))

    assert adapter._auth_header() == "Bearer jenkins-token"
