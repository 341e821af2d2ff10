"""Data models for drydock."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from drydock.volumes import IsolatedVolume

MountKind = Literal["bind", "configmap", "gcsfuse", "emptydir"]
NetworkMode = Literal["none", "bridge", "host"]

# created → scheduled → running → {succeeded | failed | timed_out} → cleaned
JobState = Literal["created", "scheduled", "running", "succeeded", "failed", "timed_out", "cleaned"]
TERMINAL_STATES: frozenset[str] = frozenset({"succeeded", "failed", "timed_out"})

# What a backend reports for a submitted job / its container
JobStatus = Literal["pending", "running", "succeeded", "failed"]
ContainerState = Literal["waiting", "running", "terminated"]


@dataclass(frozen=True)
class VolumeMount:
    source: str  # host path, ConfigMap name, or "bucket:prefix"
    target: str  # path inside the container
    read_only: bool = True
    kind: MountKind = "bind"
    # Owning volume, when the mount came from an IsolatedVolume. Used for
    # writing captured content back after the job finishes.
    volume: IsolatedVolume | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class RunSpec:
    """Declarative container execution. Never mutated after submission."""

    image: str
    command: tuple[str, ...] = ()
    entrypoint: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    volumes: tuple[VolumeMount, ...] = ()
    network: NetworkMode = "none"
    timeout_seconds: int | None = None  # None → settings.runner.default_timeout_seconds
    platform: str | None = None

    def __post_init__(self) -> None:
        # Accept lists from callers, store tuples
        object.__setattr__(self, "command", tuple(self.command))
        object.__setattr__(self, "volumes", tuple(self.volumes))

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RunSpec:
        return cls(
            image=raw["image"],
            command=tuple(raw.get("command", ())),
            entrypoint=raw.get("entrypoint"),
            env=dict(raw.get("env", {})),
            volumes=tuple(
                VolumeMount(
                    source=v["source"],
                    target=v["target"],
                    read_only=v.get("read_only", True),
                    kind=v.get("kind", "bind"),
                )
                for v in raw.get("volumes", [])
            ),
            network=raw.get("network", "none"),
            timeout_seconds=raw.get("timeout_seconds"),
            platform=raw.get("platform"),
        )


@dataclass
class Job:
    """One execution of a RunSpec for one workflow step."""

    name: str
    namespace: str
    image: str
    run_id: str
    state: JobState = "created"
    container_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class JobResult:
    job: Job
    output: Any
    # mount path → {relative path → decoded content}
    files: dict[str, dict[str, bytes]] = field(default_factory=dict)
    structured: bool = True


@dataclass(frozen=True)
class ServiceHandle:
    """A long-lived ("stay-up") container started by the job runner."""

    name: str
    container_id: str
    port: int
    address: str  # e.g. http://localhost:41234


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass(frozen=True)
class ServerEndpoint:
    endpoint: str
    container_id: str
    server_id: str
