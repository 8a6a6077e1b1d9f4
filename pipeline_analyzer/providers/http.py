"""Outbound HTTP call helper used by every adapter."""

from __future__ import annotations

import logging
import time
from http import HTTPStatus
from typing import Any, Literal

import httpx

from pipeline_analyzer.core.exceptions import AuthenticationRequiredError, TransportError

from .metrics import MetricsRecorder
from .utils import extract_error_detail

logger = logging.getLogger("pipeline_analyzer.providers.http")

ResponseType = Literal["json", "text", "bytes"]


async def send_request(
    provider_id: str,
    metrics: MetricsRecorder,
    method: str,
    url: str,
    *,
    headers: dict[str, str],
    timeout: float,
    params: dict[str, Any] | None = None,
    json: Any | None = None,
    response_type: ResponseType = "json",
) -> Any:
    """Perform one provider request and record exactly one metrics sample.

    Network failures, timeouts and HTTP error statuses are raised as
    ``TransportError`` after the sample is recorded. No retry is attempted.
    """

    start = time.perf_counter()

    def _elapsed_ms() -> float:
        return (time.perf_counter() - start) * 1000

    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.request(
                method, url, params=params, json=json, headers=headers
            )
    except httpx.TimeoutException as exc:
        metrics.record(_elapsed_ms(), False, f"timeout: {method} {url}")
        raise TransportError(provider_id, message="Provider request timed out") from exc
    except httpx.RequestError as exc:
        metrics.record(_elapsed_ms(), False, f"network: {exc}")
        raise TransportError(provider_id, message="Provider request failed") from exc

    elapsed = _elapsed_ms()
    metrics.record_rate_limit(response.headers)

    if response.status_code == HTTPStatus.UNAUTHORIZED:
        metrics.record(elapsed, False, "http_401")
        raise AuthenticationRequiredError(provider_id)
    if response.is_error:
        detail = extract_error_detail(response)
        metrics.record(elapsed, False, f"http_{response.status_code}: {detail or 'no detail'}")
        logger.info(
            "Provider returned an error status",
            extra={
                "event": "provider_http_error",
                "provider": provider_id,
                "method": method,
                "url": url,
                "status_code": response.status_code,
            },
        )
        message = "Provider error"
        if detail:
            message = f"{message}: {detail}"
        raise TransportError(
            provider_id, message=message, status_code=response.status_code, detail=detail
        )

    if response_type == "text":
        metrics.record(elapsed, True)
        return response.text
    if response_type == "bytes":
        metrics.record(elapsed, True)
        return response.content

    try:
        data = response.json()
    except ValueError as exc:
        metrics.record(elapsed, False, "invalid_json")
        raise TransportError(provider_id, message="Unexpected response format") from exc
    metrics.record(elapsed, True)
    return data


__all__ = ["ResponseType", "send_request"]
