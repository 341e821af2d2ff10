"""Shared test fixtures for drydock."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "volume_scratch_dir", "internal_api_url"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (runner, kubernetes, etc.) and cached property
    overrides (project_root, volume_scratch_dir, internal_api_url).

    Usage::

        s = make_settings(volume_scratch_dir=tmp_path)
        s = make_settings(runner=RunnerConfig(status_poll_interval=0.01))
    """
    from drydock.config import (
        BackendConfig,
        DiscoveryConfig,
        DockerConfig,
        GroupsConfig,
        KubernetesConfig,
        LoggingConfig,
        RunnerConfig,
        Settings,
        VolumesConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "runner": RunnerConfig(),
        "docker": DockerConfig(),
        "kubernetes": KubernetesConfig(),
        "volumes": VolumesConfig(),
        "backend": BackendConfig(),
        "discovery": DiscoveryConfig(),
        "groups": GroupsConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def fast_runner_config(**overrides):
    """RunnerConfig with polling intervals short enough for unit tests."""
    from drydock.config import RunnerConfig

    values = {
        "status_poll_interval": 0.01,
        "container_poll_interval": 0.01,
        "container_ready_timeout": 1.0,
        "log_drain_timeout": 1.0,
        "service_ready_timeout": 1.0,
    }
    values.update(overrides)
    return RunnerConfig(**values)


class FakeBackend:
    """In-memory JobBackend with fault injection.

    ``statuses`` is consumed one entry per ``job_status`` call; the last entry
    repeats. ``logs`` is what the container "printed".
    """

    name = "fake"

    def __init__(
        self,
        *,
        logs: str = "",
        statuses: list[str] | None = None,
        container_id: str | None = "ctr-1",
        container_state: str = "running",
        submit_error: Exception | None = None,
        address: str = "http://127.0.0.1",
    ) -> None:
        self.logs = logs
        self.statuses = list(statuses or ["succeeded"])
        self.container_id = container_id
        self.state = container_state
        self.submit_error = submit_error
        self.address = address
        self.submissions: list[Any] = []
        self.inputs: dict[str, dict] = {}
        self.cleanups: list[str] = []

    async def create_input(self, job_name, params):
        from drydock.types import VolumeMount

        self.inputs[job_name] = params
        return (
            VolumeMount(source=f"/tmp/{job_name}/in", target="/drydock-input"),
            VolumeMount(source=f"/tmp/{job_name}/out", target="/drydock-output", read_only=False),
        )

    async def submit(self, submission):
        self.submissions.append(submission)
        if self.submit_error is not None:
            raise self.submit_error

    async def find_container(self, job_name):
        return self.container_id

    async def container_state(self, container_id):
        return self.state

    async def job_status(self, job_name):
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    async def follow_logs(self, container_id) -> AsyncIterator[str]:
        for line in self.logs.splitlines(keepends=True):
            await asyncio.sleep(0)
            yield line

    async def read_logs(self, container_id):
        return self.logs

    async def service_address(self, container_id, port):
        return f"{self.address}:{port}"

    async def cleanup(self, job_name):
        self.cleanups.append(job_name)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O. Tests are fully isolated from production config.
    """
    safe = make_settings()
    monkeypatch.setattr("drydock.config._settings", safe)
