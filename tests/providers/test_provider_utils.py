from datetime import datetime, timezone

import pytest

from pipeline_analyzer.core.models import PipelineStatus
from pipeline_analyzer.providers.utils import (
    classify_log_level,
    normalize_status,
    parse_log_text,
    sanitize_data,
    sign_payload,
    verify_hmac_signature,
)

FETCHED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        ("success", PipelineStatus.SUCCESS),
        ("completed", PipelineStatus.SUCCESS),
        ("passed", PipelineStatus.SUCCESS),
        ("failed", PipelineStatus.FAILED),
        ("failure", PipelineStatus.FAILED),
        ("error", PipelineStatus.FAILED),
        ("running", PipelineStatus.RUNNING),
        ("in_progress", PipelineStatus.RUNNING),
        ("pending", PipelineStatus.PENDING),
        ("queued", PipelineStatus.PENDING),
        ("waiting", PipelineStatus.PENDING),
        ("cancelled", PipelineStatus.CANCELLED),
        ("canceled", PipelineStatus.CANCELLED),
        ("skipped", PipelineStatus.SKIPPED),
        ("timeout", PipelineStatus.TIMEOUT),
        ("timed_out", PipelineStatus.TIMEOUT),
        ("SUCCESS", PipelineStatus.SUCCESS),
        ("  Queued ", PipelineStatus.PENDING),
        ("neutral", PipelineStatus.UNKNOWN),
        ("", PipelineStatus.UNKNOWN),
        (None, PipelineStatus.UNKNOWN),
    ],
)
def test_normalize_status(token, expected):
    assert normalize_status(token) is expected


def test_sanitize_data_masks_nested_credentials():
    data = {
        "api_key": "abc",
        "nested": {"Authorization": "Bearer xyz", "name": "ci"},
        "items": [{"webhook_secret": "s"}, "token=topsecret value"],
        "timeout": 30000,
    }

    sanitized = sanitize_data(data)

    assert sanitized["api_key"] == "***"
    assert sanitized["nested"] == {"Authorization": "***", "name": "ci"}
    assert sanitized["items"][0] == {"webhook_secret": "***"}
    assert sanitized["items"][1] == "token=*** value"
    assert sanitized["timeout"] == 30000
    assert data["api_key"] == "abc"


def test_verify_hmac_signature_fails_closed():
    payload = '{"ref":"main"}'
    signature = sign_payload("secret", payload, prefix="sha256=")

    assert verify_hmac_signature("secret", payload, signature, prefix="sha256=") is True
    assert verify_hmac_signature("secret", payload.encode("utf-8"), signature, prefix="sha256=") is True
    assert verify_hmac_signature("wrong", payload, signature, prefix="sha256=") is False
    assert verify_hmac_signature("secret", payload + " ", signature, prefix="sha256=") is False
    assert verify_hmac_signature("secret", payload, signature[:20], prefix="sha256=") is False
    assert verify_hmac_signature("secret", payload, signature.removeprefix("sha256="), prefix="sha256=") is False
    assert verify_hmac_signature(None, payload, signature, prefix="sha256=") is False
    assert verify_hmac_signature("secret", payload, "", prefix="sha256=") is False


@pytest.mark.parametrize(
    ("message", "level"),
    [
        ("Error: build broke", "error"),
        ("Step failed", "error"),
        ("WARNING deprecated flag", "warn"),
        ("[debug] cache key", "debug"),
        ("Compiling sources", "info"),
    ],
)
def test_classify_log_level(message, level):
    assert classify_log_level(message) == level


def test_parse_log_text_keeps_every_line():
    text = "2024-05-01T10:00:00Z start\n\nplain line\r\n2024-05-01T10:00:01.5+02:00 offset line"

    lines = parse_log_text(text, source="github-actions", job_id="1", fetched_at=FETCHED_AT)

    assert len(lines) == 4
    assert lines[0].timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert lines[0].message == "start"
    assert lines[1].message == ""
    assert lines[1].timestamp == FETCHED_AT
    assert lines[2].message == "plain line"
    assert lines[3].timestamp == datetime(2024, 5, 1, 8, 0, 1, 500000, tzinfo=timezone.utc)
    assert all(line.source == "github-actions" for line in lines)


def test_parse_log_text_empty_input():
    assert parse_log_text("", source="jenkins") == []
