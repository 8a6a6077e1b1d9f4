"""Helper utilities shared by every provider adapter."""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

import httpx

from pipeline_analyzer.core.models import LogLevel, LogLine, PipelineRecord, PipelineStatus
from pipeline_analyzer.core.timeutils import parse_timestamp, utcnow

logger = logging.getLogger("pipeline_analyzer.providers")

MAX_ERROR_DETAIL_LENGTH = 300
MASK = "***"

STATUS_MAP: dict[str, PipelineStatus] = {
    "success": PipelineStatus.SUCCESS,
    "completed": PipelineStatus.SUCCESS,
    "passed": PipelineStatus.SUCCESS,
    "failed": PipelineStatus.FAILED,
    "failure": PipelineStatus.FAILED,
    "error": PipelineStatus.FAILED,
    "running": PipelineStatus.RUNNING,
    "in_progress": PipelineStatus.RUNNING,
    "pending": PipelineStatus.PENDING,
    "queued": PipelineStatus.PENDING,
    "waiting": PipelineStatus.PENDING,
    "cancelled": PipelineStatus.CANCELLED,
    "canceled": PipelineStatus.CANCELLED,
    "skipped": PipelineStatus.SKIPPED,
    "timeout": PipelineStatus.TIMEOUT,
    "timed_out": PipelineStatus.TIMEOUT,
}

SENSITIVE_KEYS = (
    "password",
    "token",
    "key",
    "secret",
    "credential",
    "auth",
    "authorization",
    "bearer",
    "api_key",
)

_SECRET_ASSIGNMENT = re.compile(
    r"([a-zA-Z0-9_-]*(?:password|token|key|secret)[a-zA-Z0-9_-]*\s*[:=]\s*)([^\s]+)",
    re.IGNORECASE,
)
_TIMESTAMP_PREFIX = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)\s?(.*)$"
)
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


def normalize_status(provider_status: str | None) -> PipelineStatus:
    """Map a provider status token onto the canonical set, case-insensitively."""

    if not provider_status:
        return PipelineStatus.UNKNOWN
    return STATUS_MAP.get(provider_status.strip().lower(), PipelineStatus.UNKNOWN)


def status_query_value(
    provider_id: str,
    requested: Sequence[PipelineStatus],
    query_values: Mapping[PipelineStatus, str],
) -> str | None:
    """Pick the single native status to send for a status filter.

    Providers accept one status per query, and some canonical statuses have
    no native token at all. Whenever the query cannot express the whole
    filter it is logged, and callers narrow the results with
    ``filter_by_status``.
    """

    mappable = [status for status in requested if status in query_values]
    forwarded = query_values[mappable[0]] if mappable else None
    if requested and (len(requested) > 1 or forwarded is None):
        logger.info(
            "Status filter narrowed for provider query",
            extra={
                "event": "status_filter_truncated",
                "provider": provider_id,
                "requested": [status.value for status in requested],
                "forwarded": forwarded,
            },
        )
    return forwarded


def filter_by_status(
    records: list[PipelineRecord], requested: Sequence[PipelineStatus]
) -> list[PipelineRecord]:
    if not requested:
        return records
    wanted = set(requested)
    return [record for record in records if record.status in wanted]


def sanitize_data(data: Any) -> Any:
    """Return a copy of ``data`` with credentials masked, for logging."""

    if isinstance(data, str):
        return _SECRET_ASSIGNMENT.sub(lambda match: f"{match.group(1)}{MASK}", data)
    if isinstance(data, dict):
        sanitized: dict[Any, Any] = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if any(sensitive in lowered for sensitive in SENSITIVE_KEYS):
                sanitized[key] = MASK
            else:
                sanitized[key] = sanitize_data(value)
        return sanitized
    if isinstance(data, (list, tuple)):
        return [sanitize_data(item) for item in data]
    return data


def _as_bytes(payload: str | bytes) -> bytes:
    return payload.encode("utf-8") if isinstance(payload, str) else payload


def sign_payload(secret: str, payload: str | bytes, prefix: str = "") -> str:
    """Return the prefixed hex HMAC-SHA256 signature for ``payload``."""

    digest = hmac.new(secret.encode("utf-8"), _as_bytes(payload), hashlib.sha256).hexdigest()
    return f"{prefix}{digest}"


def verify_hmac_signature(
    secret: str | None,
    payload: str | bytes,
    signature: str | None,
    prefix: str = "",
) -> bool:
    """Check ``signature`` against the payload HMAC; fails closed.

    The comparison runs in constant time regardless of where a mismatch
    occurs, including signatures of the wrong length.
    """

    if not secret or not signature:
        return False
    expected = sign_payload(secret, payload, prefix)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


def classify_log_level(message: str) -> LogLevel:
    lowered = message.lower()
    if "error" in lowered or "fail" in lowered:
        return "error"
    if "warn" in lowered:
        return "warn"
    if "debug" in lowered:
        return "debug"
    return "info"


def parse_log_text(
    text: str,
    *,
    source: str,
    job_id: str | None = None,
    step_id: str | None = None,
    fetched_at: datetime | None = None,
) -> list[LogLine]:
    """Split raw log output into one ``LogLine`` per line.

    Lines without a leading ISO-8601 timestamp are stamped with the fetch
    time and kept, so the result always has as many entries as the input has
    lines.
    """

    fallback = fetched_at or utcnow()
    lines: list[LogLine] = []
    for raw_line in text.splitlines():
        line = _ANSI_ESCAPE.sub("", raw_line).rstrip("\r")
        timestamp = None
        message = line
        match = _TIMESTAMP_PREFIX.match(line)
        if match:
            timestamp = parse_timestamp(match.group(1))
            if timestamp is not None:
                message = match.group(2)
        lines.append(
            LogLine(
                timestamp=timestamp or fallback,
                level=classify_log_level(message),
                message=message,
                source=source,
                job_id=job_id,
                step_id=step_id,
            )
        )
    return lines


def extract_error_detail(response: httpx.Response) -> str | None:
    """Return a trimmed provider error detail, if available."""

    detail: str | None = None
    try:
        data = response.json()
    except ValueError:
        text_summary = (response.text or "").strip()
        if text_summary:
            detail = text_summary
    else:
        if isinstance(data, dict):
            message = data.get("message") or data.get("error") or data.get("error_description")
            if isinstance(message, str):
                detail = message
            elif message:
                detail = str(message)
            elif data:
                detail = str(data)
        elif data:
            detail = str(data)

    if detail:
        compact = " ".join(detail.split())
        if len(compact) > MAX_ERROR_DETAIL_LENGTH:
            compact = f"{compact[: MAX_ERROR_DETAIL_LENGTH - 3]}..."
        return compact
    return None


__all__ = [
    "STATUS_MAP",
    "classify_log_level",
    "extract_error_detail",
    "filter_by_status",
    "normalize_status",
    "parse_log_text",
    "sanitize_data",
    "sign_payload",
    "status_query_value",
    "verify_hmac_signature",
]
