"""Provider telemetry: a short-lived table of notable adapter and registry events.

Events are things an operator wants to see after the fact without trawling
log files: an instance that failed to build, a health check that came back
unhealthy, a webhook that could not be translated. Rows older than the
retention window are pruned whenever the table is written or read.
"""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from pipeline_analyzer.logging import get_correlation_id
from pipeline_analyzer.storage.database import session_scope
from pipeline_analyzer.storage.models import ProviderEvent

logger = logging.getLogger("pipeline_analyzer.events")

_EVENTS_ENABLED = os.getenv("EVENTS_ENABLED", "true").lower() in {"1", "true", "yes"}

DEFAULT_RETENTION_DAYS = 2
MESSAGE_LIMIT = 512


def retention_days() -> int:
    """Days of events to keep, counting today; ``EVENTS_RETENTION_DAYS`` overrides."""
    raw = os.getenv("EVENTS_RETENTION_DAYS")
    if not raw:
        return DEFAULT_RETENTION_DAYS
    try:
        days = int(raw)
    except ValueError:
        days = 0
    if days < 1:
        logger.warning(
            "Ignoring invalid event retention",
            extra={"event": "events_retention_invalid", "value": raw},
        )
        return DEFAULT_RETENTION_DAYS
    return days


def retention_cutoff(now: datetime | None = None) -> datetime:
    """Start of the oldest UTC day still inside the retention window."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=retention_days() - 1)


def _prune(session: Session) -> None:
    session.execute(delete(ProviderEvent).where(ProviderEvent.ts < retention_cutoff()))


def record_event(
    kind: str,
    level: str,
    *,
    provider: str | None = None,
    instance_id: str | None = None,
    error_code: str | None = None,
    message: str | None = None,
    correlation_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Store one event; persistence failures are logged and never reach the caller."""
    if not _EVENTS_ENABLED:
        return

    row = ProviderEvent(
        ts=datetime.now(timezone.utc),
        level=level.upper(),
        kind=kind,
        correlation_id=correlation_id or get_correlation_id(),
        provider=provider,
        instance_id=instance_id,
        error_code=error_code,
        message=message[:MESSAGE_LIMIT] if message else None,
        meta=json.dumps(meta, ensure_ascii=True, default=str) if meta else None,
    )

    try:
        with session_scope() as session:
            session.add(row)
            _prune(session)
    except Exception:
        logger.exception(
            "Failed to record event",
            extra={"event": "event_persist_error", "kind": kind, "provider": provider},
        )


def _decode_meta(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _as_dict(row: ProviderEvent) -> dict[str, Any]:
    ts = row.ts
    if ts is not None and ts.tzinfo is None:
        # SQLite hands back naive values for timezone-aware columns.
        ts = ts.replace(tzinfo=timezone.utc)
    return {
        "id": row.id,
        "timestamp": ts.isoformat() if ts else None,
        "level": row.level,
        "kind": row.kind,
        "correlation_id": row.correlation_id,
        "provider": row.provider,
        "instance_id": row.instance_id,
        "error_code": row.error_code,
        "message": row.message,
        "meta": _decode_meta(row.meta),
    }


def list_recent_events(
    limit: int = 50,
    kind: str | None = None,
    provider: str | None = None,
) -> list[dict[str, Any]]:
    """Return retained events, newest first, optionally narrowed by kind or provider."""
    if not _EVENTS_ENABLED:
        return []

    with session_scope() as session:
        _prune(session)
        stmt = select(ProviderEvent).where(ProviderEvent.ts >= retention_cutoff())
        if kind:
            stmt = stmt.where(ProviderEvent.kind == kind)
        if provider:
            stmt = stmt.where(ProviderEvent.provider == provider)
        stmt = stmt.order_by(ProviderEvent.ts.desc(), ProviderEvent.id.desc()).limit(limit)
        return [_as_dict(row) for row in session.scalars(stmt).all()]


def summarize_events(events: list[dict[str, Any]]) -> dict[str, dict[str, int]]:
    """Count events per provider and kind, as shown in the CLI health report."""
    counts: dict[str, Counter[str]] = {}
    for item in events:
        counts.setdefault(item.get("provider") or "registry", Counter())[item["kind"]] += 1
    return {provider: dict(counter) for provider, counter in counts.items()}


__all__ = [
    "list_recent_events",
    "record_event",
    "retention_cutoff",
    "retention_days",
    "summarize_events",
]
