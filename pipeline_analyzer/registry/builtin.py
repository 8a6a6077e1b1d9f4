"""Built-in provider registrations."""

from __future__ import annotations

import logging

from pipeline_analyzer.core.config import GitHubActionsConfig, GitLabCIConfig, JenkinsConfig
from pipeline_analyzer.core.models import ProviderType
from pipeline_analyzer.providers.github_actions import GitHubActionsProvider
from pipeline_analyzer.providers.gitlab_ci import GitLabCIProvider
from pipeline_analyzer.providers.jenkins import JenkinsProvider

from .factory import ProviderRegistration, ProviderRegistry

logger = logging.getLogger("pipeline_analyzer.registry")

BUILTIN_REGISTRATIONS: tuple[ProviderRegistration, ...] = (
    ProviderRegistration(
        provider=ProviderType.GITHUB_ACTIONS.value,
        factory=GitHubActionsProvider,
        validate_config=lambda config: bool(config.get("api_key")),
        required_fields=("api_key",),
        optional_fields=("base_url", "webhook_secret", "timeout", "owner", "repo"),
        supported_features=("pipelines", "webhooks", "logs", "artifacts", "resource_usage"),
        config_model=GitHubActionsConfig,
    ),
    ProviderRegistration(
        provider=ProviderType.GITLAB_CI.value,
        factory=GitLabCIProvider,
        validate_config=lambda config: bool(config.get("api_key") and config.get("base_url")),
        required_fields=("api_key", "base_url"),
        optional_fields=("webhook_secret", "timeout", "project_id"),
        supported_features=("pipelines", "webhooks", "logs", "artifacts"),
        config_model=GitLabCIConfig,
    ),
    ProviderRegistration(
        provider=ProviderType.JENKINS.value,
        factory=JenkinsProvider,
        validate_config=lambda config: bool(config.get("api_key") and config.get("base_url")),
        required_fields=("api_key", "base_url"),
        optional_fields=("username", "timeout", "webhook_secret"),
        supported_features=("pipelines", "logs"),
        config_model=JenkinsConfig,
    ),
)


def build_default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    for registration in BUILTIN_REGISTRATIONS:
        registry.register_provider(registration)
    logger.info(
        "Registered built-in providers",
        extra={"event": "builtin_providers_registered", "providers": registry.get_registered_providers()},
    )
    return registry


__all__ = ["BUILTIN_REGISTRATIONS", "build_default_registry"]
