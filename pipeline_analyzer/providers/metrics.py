"""Per-adapter call metrics with constant-memory running averages."""

from __future__ import annotations

from collections.abc import Mapping

from pipeline_analyzer.core.models import ProviderMetrics
from pipeline_analyzer.core.timeutils import parse_timestamp, utcnow


class MetricsRecorder:
    """Accumulate outbound call statistics for one adapter instance.

    Counters only grow; the success rate and mean latency are running
    averages, and only the most recent error message is kept.
    """

    def __init__(self) -> None:
        self._metrics = ProviderMetrics()

    def record(self, response_time_ms: float, success: bool, error: str | None = None) -> None:
        metrics = self._metrics
        metrics.api_calls_count += 1
        count = metrics.api_calls_count

        metrics.average_response_time = (
            metrics.average_response_time * (count - 1) + response_time_ms
        ) / count
        outcome = 100.0 if success else 0.0
        metrics.api_calls_success_rate = (
            metrics.api_calls_success_rate * (count - 1) + outcome
        ) / count

        if not success:
            metrics.error_count += 1
            if error:
                metrics.last_error = error

        metrics.last_sync_time = utcnow()

    def record_rate_limit(self, headers: Mapping[str, str]) -> None:
        """Capture ``x-ratelimit-*`` headers when the provider sends them."""

        remaining = headers.get("x-ratelimit-remaining")
        if remaining is not None and str(remaining).isdigit():
            self._metrics.rate_limit_remaining = int(remaining)
        reset = headers.get("x-ratelimit-reset")
        if reset is not None and str(reset).isdigit():
            self._metrics.rate_limit_reset = parse_timestamp(int(reset) * 1000)

    def snapshot(self) -> ProviderMetrics:
        return self._metrics.model_copy()


__all__ = ["MetricsRecorder"]
