"""CLI entry point printing a health report for every configured provider instance."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import pathlib
from collections.abc import Mapping
from typing import Any

from pipeline_analyzer.core.config import ENV_MAPPINGS, load_config
from pipeline_analyzer.logging import configure_logging, correlation_scope
from pipeline_analyzer.registry.builtin import build_default_registry
from pipeline_analyzer.registry.factory import ProviderRegistry
from pipeline_analyzer.storage.database import init_db
from pipeline_analyzer.telemetry.events import list_recent_events, summarize_events

logger = logging.getLogger("pipeline_analyzer.cli")

REPORT_EVENT_LIMIT = 20


def build_report(
    registry: ProviderRegistry,
    config_path: pathlib.Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Create instances from YAML and env, health-check them and collect recent events."""
    with correlation_scope() as correlation_id:
        registry.create_from_config(load_config(config_path))
        for provider in ENV_MAPPINGS:
            registry.create_provider_from_env(provider, instance_id=f"env:{provider}", environ=environ)

        reports = asyncio.run(registry.health_check())
        logger.info(
            "Health check finished",
            extra={
                "event": "health_check_finished",
                "instances": len(reports),
                "healthy": sum(1 for report in reports if report.healthy),
            },
        )
        events = list_recent_events(limit=REPORT_EVENT_LIMIT)
        return {
            "correlation_id": correlation_id,
            "statistics": registry.get_provider_statistics().model_dump(),
            "providers": registry.describe_providers(),
            "instances": [report.model_dump(mode="json") for report in reports],
            "recent_events": events,
            "event_counts": summarize_events(events),
        }


def main() -> None:
    configure_logging()
    init_db()

    config_path = os.getenv("PROVIDERS_CONFIG")
    report = build_report(
        build_default_registry(), pathlib.Path(config_path) if config_path else None
    )
    print(json.dumps(report, indent=2))


if __name__ == "__main__":  # pragma: no cover - convenience entry point
    main()
