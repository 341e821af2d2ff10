"""Backend contract for the job runner.

A backend knows how to turn a :class:`Submission` into a running container on
one platform (local Docker engine, Kubernetes Jobs) and how to observe and
reclaim it. It knows nothing about result parsing, deadlines or sinks; the
:class:`~drydock.runtime.runner.JobRunner` owns those.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from drydock.types import ContainerState, JobStatus, NetworkMode, VolumeMount

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "drydock"
RUN_ID_LABEL = "drydock.io/run-id"
COMPONENT_LABEL = "drydock.io/component-ref"


@dataclass(frozen=True)
class Submission:
    """Everything a backend needs to create one container."""

    name: str
    image: str
    run_id: str
    component_ref: str
    command: list[str]  # replaces the image ENTRYPOINT; empty keeps it
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    mounts: tuple[VolumeMount, ...] = ()
    network: NetworkMode = "none"
    timeout_seconds: int | None = None  # None for stay-up services
    platform: str | None = None
    service_port: int | None = None

    @property
    def labels(self) -> dict[str, str]:
        return {
            MANAGED_BY_LABEL: MANAGED_BY,
            RUN_ID_LABEL: _label_value(self.run_id),
            COMPONENT_LABEL: _label_value(self.component_ref),
        }


def _label_value(value: str) -> str:
    # Label values: ≤ 63 chars of [A-Za-z0-9_.-], alphanumeric at both ends
    cleaned = "".join(c if c.isalnum() or c in "_.-" else "-" for c in value)
    return cleaned[:63].strip("_.-")


@runtime_checkable
class JobBackend(Protocol):
    """Platform operations used by the job runner.

    Every method is async; implementations run blocking client calls in
    worker threads. ``cleanup`` must be idempotent and must not raise for
    resources that are already gone.
    """

    name: str

    async def create_input(self, job_name: str, params: dict[str, Any]) -> tuple[VolumeMount, ...]:
        """Create the per-job input resource (``input.json``) and the output mount."""
        ...

    async def submit(self, submission: Submission) -> None: ...

    async def find_container(self, job_name: str) -> str | None: ...

    async def container_state(self, container_id: str) -> ContainerState | None: ...

    async def job_status(self, job_name: str) -> JobStatus: ...

    def follow_logs(self, container_id: str) -> AsyncIterator[str]: ...

    async def read_logs(self, container_id: str) -> str: ...

    async def service_address(self, container_id: str, port: int) -> str: ...

    async def cleanup(self, job_name: str) -> None: ...
