"""Provider adapter interface."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pipeline_analyzer.core.config import ProviderConfig
from pipeline_analyzer.core.models import (
    LogLine,
    PipelineFilter,
    PipelineRecord,
    ProviderMetrics,
    WebhookEnvelope,
    WebhookRegistration,
)

from pipeline_analyzer.telemetry.events import record_event

from .metrics import MetricsRecorder
from .utils import sanitize_data, verify_hmac_signature

logger = logging.getLogger("pipeline_analyzer.providers")


class ProviderAdapter:
    """Abstract CI/CD provider adapter.

    Fetch operations raise after metrics are recorded; ``validate_config``,
    ``test_connection`` and ``process_webhook`` report failure through their
    return value instead.
    """

    provider_id: str
    signature_prefix: str = ""
    supported_events: Sequence[str] = ()

    def __init__(self, config: ProviderConfig, metrics: MetricsRecorder | None = None) -> None:
        self._config = config
        self._metrics = metrics or MetricsRecorder()

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def get_provider_type(self) -> str:
        return self.provider_id

    async def validate_config(self) -> bool:
        raise NotImplementedError

    async def test_connection(self) -> bool:
        raise NotImplementedError

    async def fetch_pipeline(self, pipeline_id: str) -> PipelineRecord:
        raise NotImplementedError

    async def fetch_pipelines(
        self, repository: str, filters: PipelineFilter | None = None
    ) -> list[PipelineRecord]:
        raise NotImplementedError

    async def fetch_pipeline_run(self, pipeline_id: str, run_id: str) -> PipelineRecord:
        raise NotImplementedError

    async def fetch_logs(
        self,
        pipeline_id: str,
        run_id: str,
        job_id: str | None = None,
        step_id: str | None = None,
    ) -> list[LogLine]:
        raise NotImplementedError

    async def process_webhook(self, envelope: WebhookEnvelope) -> PipelineRecord | None:
        """Translate a webhook into a record; ``None`` for unmodeled or broken payloads."""

        if envelope.provider != self.provider_id:
            logger.warning(
                "Webhook routed to the wrong provider",
                extra={
                    "event": "webhook_provider_mismatch",
                    "provider": self.provider_id,
                    "envelope_provider": envelope.provider,
                },
            )
            return None
        try:
            return self._translate_webhook(envelope)
        except Exception as exc:
            logger.warning(
                "Failed to process webhook",
                extra={
                    "event": "webhook_processing_error",
                    "provider": self.provider_id,
                    "webhook_event": envelope.event,
                    "payload": sanitize_data(envelope.payload),
                },
                exc_info=True,
            )
            record_event(
                "webhook_processing_error",
                "WARNING",
                provider=self.provider_id,
                message=str(exc),
                meta={"webhook_event": envelope.event},
            )
            return None

    def _translate_webhook(self, envelope: WebhookEnvelope) -> PipelineRecord | None:
        raise NotImplementedError

    async def setup_webhook(
        self, repository: str, webhook_url: str, events: Sequence[str]
    ) -> WebhookRegistration:
        raise NotImplementedError

    def verify_webhook_signature(self, payload: str | bytes, signature: str | None) -> bool:
        return verify_hmac_signature(
            self._config.webhook_secret, payload, signature, prefix=self.signature_prefix
        )

    def get_supported_events(self) -> list[str]:
        return list(self.supported_events)

    def get_metrics(self) -> ProviderMetrics:
        return self._metrics.snapshot()
