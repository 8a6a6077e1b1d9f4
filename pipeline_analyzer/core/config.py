"""Provider configuration models and loading utilities."""

from __future__ import annotations

import logging
import os
import pathlib
import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Annotated, Any, List, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .models import ProviderType

logger = logging.getLogger("pipeline_analyzer.config")

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "config" / "providers.yaml"

DEFAULT_TIMEOUT_MS = 30_000
GITHUB_API_URL = "https://api.github.com"
GITLAB_API_URL = "https://gitlab.com/api/v4"

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ProviderConfig(BaseModel):
    """Settings shared by every provider; immutable once an adapter holds it."""

    model_config = ConfigDict(frozen=True, extra="allow")

    api_key: str | None = None
    base_url: str | None = None
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)
    webhook_secret: str | None = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000


class GitHubActionsConfig(ProviderConfig):
    provider: Literal["github-actions"] = "github-actions"
    base_url: str | None = GITHUB_API_URL
    owner: str | None = None
    repo: str | None = None


class GitLabCIConfig(ProviderConfig):
    provider: Literal["gitlab-ci"] = "gitlab-ci"
    base_url: str | None = GITLAB_API_URL
    project_id: str | None = None


class JenkinsConfig(ProviderConfig):
    provider: Literal["jenkins"] = "jenkins"
    username: str | None = None


AnyProviderConfig = Annotated[
    Union[GitHubActionsConfig, GitLabCIConfig, JenkinsConfig],
    Field(discriminator="provider"),
]


class ProviderInstanceModel(BaseModel):
    id: str
    enabled: bool = True
    config: AnyProviderConfig


class AppConfig(BaseModel):
    instances: List[ProviderInstanceModel] = Field(default_factory=list)


class EnvMapping(BaseModel):
    """Environment variable layout for one provider type."""

    prefix: str
    default_base_url: str | None = None
    base_url_aliases: tuple[str, ...] = ()
    extra_fields: dict[str, str] = Field(default_factory=dict)


ENV_MAPPINGS: dict[str, EnvMapping] = {
    ProviderType.GITHUB_ACTIONS.value: EnvMapping(
        prefix="GITHUB",
        default_base_url=GITHUB_API_URL,
        extra_fields={"owner": "GITHUB_OWNER", "repo": "GITHUB_REPO"},
    ),
    ProviderType.GITLAB_CI.value: EnvMapping(
        prefix="GITLAB",
        default_base_url=GITLAB_API_URL,
        base_url_aliases=("GITLAB_BASE_URL",),
        extra_fields={"project_id": "GITLAB_PROJECT_ID"},
    ),
    ProviderType.JENKINS.value: EnvMapping(
        prefix="JENKINS",
        base_url_aliases=("JENKINS_URL",),
        extra_fields={"username": "JENKINS_USERNAME"},
    ),
}


def _env_timeout(env: Mapping[str, str], variable: str) -> int:
    raw = env.get(variable)
    if not raw:
        return DEFAULT_TIMEOUT_MS
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 0
    if timeout <= 0:
        logger.warning(
            "Ignoring invalid provider timeout",
            extra={"event": "provider_timeout_invalid", "variable": variable, "value": raw},
        )
        return DEFAULT_TIMEOUT_MS
    return timeout


def config_from_env(
    provider: str, environ: Mapping[str, str] | None = None
) -> dict[str, Any] | None:
    """Derive a provider config from environment variables.

    Returns ``None`` when the provider has no mapping or its token variable is
    unset, so optional providers are skipped quietly at boot.
    """

    env = os.environ if environ is None else environ
    mapping = ENV_MAPPINGS.get(provider)
    if mapping is None:
        return None

    prefix = mapping.prefix
    api_key = env.get(f"{prefix}_TOKEN") or env.get(f"{prefix}_API_KEY")
    if not api_key:
        return None

    base_url = env.get(f"{prefix}_API_URL")
    for alias in mapping.base_url_aliases:
        base_url = base_url or env.get(alias)

    config: dict[str, Any] = {
        "api_key": api_key,
        "base_url": base_url or mapping.default_base_url,
        "timeout": _env_timeout(env, f"{prefix}_TIMEOUT"),
    }

    webhook_secret = env.get(f"{prefix}_WEBHOOK_SECRET")
    if webhook_secret:
        config["webhook_secret"] = webhook_secret

    for field, variable in mapping.extra_fields.items():
        value = env.get(variable)
        if value:
            config[field] = value

    if config["base_url"] is None:
        del config["base_url"]
    return config


def _expand_env(text: str, environ: Mapping[str, str]) -> str:
    return _ENV_REFERENCE.sub(lambda match: environ.get(match.group(1), ""), text)


@lru_cache(maxsize=1)
def load_config(path: pathlib.Path | None = None) -> AppConfig:
    """Load provider instance definitions from YAML.

    ``${VAR}`` references are substituted from the environment; unset
    variables become empty strings and fail required-field validation later.
    """

    config_path = path or DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return AppConfig()
    raw = yaml.safe_load(_expand_env(config_path.read_text(), os.environ)) or {}
    return AppConfig(**raw)


__all__ = [
    "AnyProviderConfig",
    "AppConfig",
    "ENV_MAPPINGS",
    "GitHubActionsConfig",
    "GitLabCIConfig",
    "JenkinsConfig",
    "ProviderConfig",
    "ProviderInstanceModel",
    "config_from_env",
    "load_config",
]
