"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (the internal service
token) live in .env. Environment variables override both using ``__`` as the
nested delimiter (e.g. ``KUBERNETES__NAMESPACE``, ``BACKEND__INTERNAL_TOKEN``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from drydock.config import get_settings

    s = get_settings()
    print(s.kubernetes.namespace)
    print(s.runner.backend)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class RunnerConfig(_StrictModel):
    backend: Literal["docker", "kubernetes"] = "docker"
    default_timeout_seconds: int = 300
    status_poll_interval: float = 2.0  # seconds between job status checks
    container_poll_interval: float = 1.0  # seconds between "does the pod exist yet" checks
    container_ready_timeout: float = 60.0  # wait for running/terminated before streaming logs
    log_drain_timeout: float = 10.0  # grace period for the log stream after job completion
    log_tail_chars: int = 500  # log tail attached to ContainerError
    service_ready_timeout: float = 90.0  # stay-up containers must reach "running" within this

    @field_validator("default_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("default_timeout_seconds must be positive")
        return v


class DockerConfig(_StrictModel):
    cli: str = "docker"
    service_host: str = "localhost"  # hostname the worker uses to reach published ports
    scratch_dir: str | None = None  # parent of per-job input/output dirs; None = system tmp


class KubernetesConfig(_StrictModel):
    namespace: str = "drydock-workloads"
    image_pull_policy: Literal["Always", "IfNotPresent", "Never"] = "IfNotPresent"
    image_pull_secret: str | None = None
    ttl_seconds_after_finished: int = 120
    in_cluster: bool = True  # False → load ~/.kube/config
    cpu_request: str = "100m"
    memory_request: str = "128Mi"
    cpu_limit: str = "1000m"
    memory_limit: str = "2Gi"


class VolumesConfig(_StrictModel):
    mode: Literal["local", "configmap", "gcs"] = "local"
    scratch_dir: str = "data/volumes"  # local mode; relative paths resolve from project root
    gcs_bucket: str | None = None  # required for gcs mode

    @model_validator(mode="after")
    def _require_bucket(self) -> VolumesConfig:
        if self.mode == "gcs" and not self.gcs_bucket:
            raise ValueError("volumes.mode = 'gcs' requires volumes.gcs_bucket")
        return self


class BackendConfig(_StrictModel):
    url: str = "http://localhost:3211"
    internal_api_path: str = "/api/v1/internal/mcp"
    internal_token: SecretStr | None = None
    request_timeout: float = 30.0

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class DiscoveryConfig(_StrictModel):
    max_attempts: int = 8
    base_delay: float = 1.0  # seconds; doubled per attempt
    max_delay: float = 5.0  # cap for a single backoff sleep
    client_name: str = "drydock-tool-discovery"

    @field_validator("max_attempts")
    @classmethod
    def clamp_attempts(cls, v: int) -> int:
        return max(1, v)


class GroupsConfig(_StrictModel):
    template_dir: str | None = None  # directory of *.json group templates
    max_concurrent_servers: int = 4
    credential_mount: str = "/root/.aws"

    @field_validator("max_concurrent_servers")
    @classmethod
    def clamp_concurrency(cls, v: int) -> int:
        return max(1, v)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    runner: RunnerConfig = RunnerConfig()
    docker: DockerConfig = DockerConfig()
    kubernetes: KubernetesConfig = KubernetesConfig()
    volumes: VolumesConfig = VolumesConfig()
    backend: BackendConfig = BackendConfig()
    discovery: DiscoveryConfig = DiscoveryConfig()
    groups: GroupsConfig = GroupsConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def volume_scratch_dir(self) -> Path:
        p = Path(self.volumes.scratch_dir)
        if not p.is_absolute():
            p = self.project_root / p
        return p.resolve()

    @cached_property
    def internal_api_url(self) -> str:
        return f"{self.backend.url}{self.backend.internal_api_path}"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
