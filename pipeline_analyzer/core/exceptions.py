"""Custom exception types."""

from __future__ import annotations


class ProviderError(Exception):
    """Base class for provider failures."""

    def __init__(self, provider_id: str, message: str = "Provider error") -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.message = message


class ConfigurationError(ProviderError):
    """Raised when an adapter prerequisite is missing; never worth retrying."""


class TransportError(ProviderError):
    """Raised when a provider call fails on the network or with an HTTP error."""

    def __init__(
        self,
        provider_id: str,
        message: str = "Provider request failed",
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(provider_id, message)
        self.status_code = status_code
        self.detail = detail


class AuthenticationRequiredError(TransportError):
    """Raised when a provider rejects the configured credentials."""

    def __init__(self, provider_id: str, status_code: int | None = 401) -> None:
        super().__init__(provider_id, message="Provider credentials rejected", status_code=status_code)


class WebhookProcessingError(ProviderError):
    """Raised while translating a webhook payload; adapters swallow it."""


class UnsupportedOperationError(ProviderError):
    """Raised when a provider cannot perform a contract operation."""


class UnregisteredProviderError(ProviderError):
    """Raised when a provider type has no registration."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(provider_id, message=f"Provider {provider_id} is not registered")


class InvalidProviderConfigError(ProviderError):
    """Raised by the factory when a configuration fails validation."""

    def __init__(self, provider_id: str, errors: list[str]) -> None:
        super().__init__(provider_id, message=f"Invalid configuration for provider {provider_id}")
        self.errors = errors
