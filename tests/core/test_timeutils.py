from datetime import datetime, timedelta, timezone

import pytest

from pipeline_analyzer.core.models import PipelineFilter, PipelineRecord
from pipeline_analyzer.core.timeutils import compute_duration, parse_timestamp

START = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2024-05-01T10:00:00Z", START),
        ("2024-05-01T10:00:00.1234567Z", START.replace(microsecond=123456)),
        ("2024-05-01T12:00:00+02:00", START),
        ("2024-05-01T10:00:00", START),
        (1_714_557_600_000, START),
        (datetime(2024, 5, 1, 10, 0), START),
        ("not a date", None),
        ("", None),
        (None, None),
        (True, None),
    ],
)
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


def test_compute_duration_in_milliseconds():
    assert compute_duration(START, START + timedelta(minutes=2, milliseconds=5)) == 120_005
    assert compute_duration("2024-05-01T10:00:00Z", "2024-05-01T10:00:01Z") == 1_000


def test_compute_duration_clamps_and_requires_both_ends():
    assert compute_duration(START, START - timedelta(seconds=5)) == 0
    assert compute_duration(START, None) is None
    assert compute_duration(None, START) is None


def test_record_duration_ignores_supplied_value():
    record = PipelineRecord(
        id="1",
        provider="github-actions",
        name="CI",
        repository="octo/app",
        started_at=START,
        finished_at=START + timedelta(seconds=3),
        duration=999,
    )

    assert record.duration == 3_000
    assert record.model_dump()["duration"] == 3_000


@pytest.mark.parametrize(
    "since",
    [
        datetime(2024, 5, 1, 12, 0),
        "2024-05-01T12:00:00",
        datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2))),
    ],
)
def test_pipeline_filter_since_is_aware_utc(since):
    filters = PipelineFilter(since=since)

    assert filters.since == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert filters.since.utcoffset() == timedelta(0)
