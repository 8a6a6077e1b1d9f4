"""Provider registration, construction and instance caching."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from pipeline_analyzer.core.config import AppConfig, ProviderConfig, config_from_env
from pipeline_analyzer.core.exceptions import (
    ConfigurationError,
    InvalidProviderConfigError,
    ProviderError,
    UnregisteredProviderError,
)
from pipeline_analyzer.core.models import ProviderMetrics, ProviderType
from pipeline_analyzer.providers.base import ProviderAdapter
from pipeline_analyzer.providers.utils import sanitize_data
from pipeline_analyzer.telemetry.events import record_event

logger = logging.getLogger("pipeline_analyzer.registry")

ProviderFactory = Callable[[Any], ProviderAdapter]
ConfigValidator = Callable[[Mapping[str, Any]], bool]


@dataclass
class ProviderRegistration:
    provider: str
    factory: ProviderFactory
    validate_config: ConfigValidator
    required_fields: tuple[str, ...] = ()
    optional_fields: tuple[str, ...] = ()
    supported_features: tuple[str, ...] = ()
    config_model: type[ProviderConfig] = field(default=ProviderConfig)

    def get_required_fields(self) -> list[str]:
        return list(self.required_fields)

    def get_optional_fields(self) -> list[str]:
        return list(self.optional_fields)

    def get_supported_features(self) -> list[str]:
        return list(self.supported_features)

    def describe(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "required_fields": self.get_required_fields(),
            "optional_fields": self.get_optional_fields(),
            "supported_features": self.get_supported_features(),
        }


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    instance_id: str
    provider: str
    healthy: bool
    metrics: ProviderMetrics | None = None
    error: str | None = None


class ProviderStatistics(BaseModel):
    total_providers: int
    registered_providers: list[str]
    active_instances: int
    instances_per_provider: dict[str, int] = Field(default_factory=dict)


def _provider_key(provider: ProviderType | str) -> str:
    return provider.value if isinstance(provider, Enum) else str(provider)


def _config_payload(config: Mapping[str, Any] | ProviderConfig) -> dict[str, Any]:
    if isinstance(config, BaseModel):
        return config.model_dump()
    return dict(config)


def _format_validation_error(exc: ValidationError) -> list[str]:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "config"
        errors.append(f"Invalid field {location}: {error.get('msg')}")
    return errors


class ProviderRegistry:
    """Catalog of provider types plus the cache of live adapter instances.

    Build one per process and pass it to whatever needs adapters; nothing in
    this module keeps a shared instance.
    """

    def __init__(self) -> None:
        self._registrations: dict[str, ProviderRegistration] = {}
        self._instances: dict[str, ProviderAdapter] = {}

    def register_provider(self, registration: ProviderRegistration) -> None:
        key = _provider_key(registration.provider)
        if key in self._registrations:
            logger.warning(
                "Provider already registered, overwriting",
                extra={"event": "provider_registration_overwritten", "provider": key},
            )
        self._registrations[key] = registration
        logger.info("Registered provider", extra={"event": "provider_registered", "provider": key})

    def _registration(self, provider: ProviderType | str) -> ProviderRegistration:
        key = _provider_key(provider)
        registration = self._registrations.get(key)
        if registration is None:
            raise UnregisteredProviderError(key)
        return registration

    def validate_provider_config(
        self, provider: ProviderType | str, config: Mapping[str, Any] | ProviderConfig
    ) -> ValidationResult:
        """Check ``config`` against a registration without constructing anything.

        Required fields are checked first; the registration's own validator and
        the config model only run when every required field is present.
        """

        registration = self._registration(provider)
        payload = _config_payload(config)

        errors = [
            f"Missing required field: {name}"
            for name in registration.required_fields
            if not payload.get(name)
        ]
        if not errors and not registration.validate_config(payload):
            errors.append("Provider-specific validation failed")
        if not errors:
            try:
                registration.config_model.model_validate(payload)
            except ValidationError as exc:
                errors.extend(_format_validation_error(exc))

        return ValidationResult(valid=not errors, errors=errors)

    def create_provider(
        self,
        provider: ProviderType | str,
        config: Mapping[str, Any] | ProviderConfig,
        instance_id: str | None = None,
    ) -> ProviderAdapter:
        key = _provider_key(provider)
        registration = self._registration(key)
        payload = _config_payload(config)

        result = self.validate_provider_config(key, payload)
        if not result.valid:
            logger.warning(
                "Rejected provider configuration",
                extra={
                    "event": "provider_config_invalid",
                    "provider": key,
                    "instance_id": instance_id,
                    "errors": result.errors,
                },
            )
            record_event(
                "provider_instance_failed",
                "WARNING",
                provider=key,
                instance_id=instance_id,
                message="; ".join(result.errors),
            )
            raise InvalidProviderConfigError(key, result.errors)

        parsed = registration.config_model.model_validate(payload)
        try:
            instance = registration.factory(parsed)
        except Exception as exc:
            logger.error(
                "Failed to create provider instance",
                extra={"event": "provider_instance_failed", "provider": key, "instance_id": instance_id},
                exc_info=True,
            )
            record_event(
                "provider_instance_failed",
                "ERROR",
                provider=key,
                instance_id=instance_id,
                message=str(exc),
            )
            raise

        if instance_id:
            self._instances[instance_id] = instance

        logger.info(
            "Created provider instance",
            extra={
                "event": "provider_instance_created",
                "provider": key,
                "instance_id": instance_id,
                "config": sanitize_data(payload),
            },
        )
        record_event(
            "provider_instance_created",
            "INFO",
            provider=key,
            instance_id=instance_id,
        )
        return instance

    def create_provider_from_env(
        self,
        provider: ProviderType | str,
        instance_id: str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ProviderAdapter | None:
        """Create an adapter from environment variables.

        Returns ``None`` when the provider's token variable is unset or the
        derived configuration is rejected. An unregistered ``provider`` raises
        ``UnregisteredProviderError``; factory failures propagate.
        """

        key = _provider_key(provider)
        self._registration(key)
        config = config_from_env(key, environ)
        if config is None:
            logger.debug(
                "No environment configuration for provider",
                extra={"event": "provider_env_missing", "provider": key},
            )
            return None
        try:
            return self.create_provider(key, config, instance_id)
        except (InvalidProviderConfigError, ConfigurationError) as exc:
            logger.error(
                "Failed to create provider from environment",
                extra={
                    "event": "provider_env_failed",
                    "provider": key,
                    "error_message": exc.message,
                    "errors": getattr(exc, "errors", None),
                },
            )
            return None

    def create_from_config(self, app_config: AppConfig) -> dict[str, ProviderAdapter]:
        created: dict[str, ProviderAdapter] = {}
        for instance in app_config.instances:
            if not instance.enabled:
                continue
            provider = instance.config.provider
            try:
                created[instance.id] = self.create_provider(
                    provider, instance.config.model_dump(exclude_none=True), instance.id
                )
            except (ProviderError, ValueError) as exc:
                logger.warning(
                    "Skipping provider instance",
                    extra={
                        "event": "provider_instance_skipped",
                        "provider": provider,
                        "instance_id": instance.id,
                        "error_message": str(exc),
                    },
                )
        return created

    def get_instance(self, instance_id: str) -> ProviderAdapter | None:
        return self._instances.get(instance_id)

    def remove_instance(self, instance_id: str) -> bool:
        return self._instances.pop(instance_id, None) is not None

    def clear_instances(self) -> None:
        self._instances.clear()
        logger.info("Cleared provider instances", extra={"event": "provider_instances_cleared"})

    def get_registered_providers(self) -> list[str]:
        return list(self._registrations)

    def get_provider_info(self, provider: ProviderType | str) -> ProviderRegistration | None:
        return self._registrations.get(_provider_key(provider))

    def describe_providers(self) -> list[dict[str, Any]]:
        return [registration.describe() for registration in self._registrations.values()]

    async def health_check(self) -> list[HealthReport]:
        """Probe every cached instance concurrently.

        A failure in one instance is reported in its own entry and never hides
        the others.
        """

        instances = list(self._instances.items())
        return list(
            await asyncio.gather(
                *(self._check_instance(instance_id, adapter) for instance_id, adapter in instances)
            )
        )

    async def _check_instance(self, instance_id: str, adapter: ProviderAdapter) -> HealthReport:
        provider = adapter.get_provider_type()
        try:
            healthy = await adapter.test_connection()
            metrics = adapter.get_metrics()
        except Exception as exc:
            logger.warning(
                "Provider health check raised",
                extra={"event": "health_check_error", "provider": provider, "instance_id": instance_id},
                exc_info=True,
            )
            record_event(
                "health_check_failed",
                "WARNING",
                provider=provider,
                instance_id=instance_id,
                message=str(exc),
            )
            return HealthReport(
                instance_id=instance_id, provider=provider, healthy=False, error=str(exc)
            )

        if not healthy:
            record_event(
                "health_check_failed",
                "WARNING",
                provider=provider,
                instance_id=instance_id,
                message=metrics.last_error,
            )
        return HealthReport(
            instance_id=instance_id, provider=provider, healthy=healthy, metrics=metrics
        )

    def get_provider_statistics(self) -> ProviderStatistics:
        per_provider: dict[str, int] = {}
        for adapter in self._instances.values():
            provider = adapter.get_provider_type()
            per_provider[provider] = per_provider.get(provider, 0) + 1
        return ProviderStatistics(
            total_providers=len(self._registrations),
            registered_providers=self.get_registered_providers(),
            active_instances=len(self._instances),
            instances_per_provider=per_provider,
        )


__all__ = [
    "HealthReport",
    "ProviderRegistration",
    "ProviderRegistry",
    "ProviderStatistics",
    "ValidationResult",
]
