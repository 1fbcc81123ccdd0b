"""Configuration parsing and validation for the ADO pipeline dashboard."""

from __future__ import annotations

from dataclasses import dataclass

from .credentials import CredentialStore, get_pat_token
from .errors import AuthenticationError, ConfigurationError

DEFAULT_API_VERSION = "7.1-preview.1"


@dataclass(frozen=True)
class Config:
    """Validated runtime settings used by the dashboard."""

    organization: str
    project: str
    api_version: str = DEFAULT_API_VERSION
    max_pipelines: int = 500
    max_runs: int = 100
    cache_duration_minutes: float = 15
    timeout_seconds: int = 30
    max_workers: int = 8
    max_retries: int = 3

    @property
    def service_root(self) -> str:
        """Organization-level URL that every API path hangs off."""
        return f"https://dev.azure.com/{self.organization}"

    def api_base(self, project: str) -> str:
        """Base URL for project-scoped endpoints (``{root}/{project}/_apis``)."""
        return f"{self.service_root}/{project}/_apis"


def load_config(
    organization: str,
    project: str,
    credential_store: CredentialStore,
    cache_duration_minutes: float = 15,
    max_pipelines: int = 500,
    max_runs: int = 100,
    timeout_seconds: int = 30,
    max_workers: int = 8,
) -> Config:
    """Build and validate application configuration.

    Args:
        organization: Azure DevOps organization name.
        project: Default Azure DevOps project name.
        credential_store: Store the personal access token is read from.
        cache_duration_minutes: Freshness window for cached data.
        max_pipelines: Page size used when listing pipelines.
        max_runs: Page size used when listing runs per pipeline.
        timeout_seconds: Per-request timeout in seconds.
        max_workers: Upper bound on concurrent requests inside one batch.

    Returns:
        A validated ``Config`` instance.

    Raises:
        ConfigurationError: If a required name is blank or a numeric setting
            is not greater than ``0``.
        AuthenticationError: If no personal access token is stored.
    """
    if not organization.strip():
        raise ConfigurationError("Invalid value for 'organization': expected a non-empty name.")
    if not project.strip():
        raise ConfigurationError("Invalid value for 'project': expected a non-empty name.")

    numeric_settings = {
        "cache_duration_minutes": cache_duration_minutes,
        "max_pipelines": max_pipelines,
        "max_runs": max_runs,
        "timeout_seconds": timeout_seconds,
        "max_workers": max_workers,
    }
    for name, value in numeric_settings.items():
        if value <= 0:
            raise ConfigurationError(f"Invalid value for '{name}': expected a number greater than 0.")

    if not get_pat_token(credential_store):
        raise AuthenticationError(
            "Missing required Azure DevOps Personal Access Token. "
            "Set the 'ADO_PAT' environment variable before running the dashboard."
        )

    return Config(
        organization=organization.strip(),
        project=project.strip(),
        cache_duration_minutes=cache_duration_minutes,
        max_pipelines=max_pipelines,
        max_runs=max_runs,
        timeout_seconds=timeout_seconds,
        max_workers=max_workers,
    )
