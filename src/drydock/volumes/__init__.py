"""Isolated volumes — ephemeral per-run storage backing a container mount.

Three interchangeable variants, selected by ``settings.volumes.mode``:

  local      — scratch directory, bind-mounted (Docker)
  configmap  — Kubernetes ConfigMap; writable mounts rely on log capture
  gcs        — GCS object prefix mounted through the GCS FUSE CSI driver

Callers go through :func:`create_isolated_volume` and the
:class:`IsolatedVolume` protocol; nothing else needs to know the variant.

Lifecycle::

    vol = create_isolated_volume(tenant_id, run_id)
    try:
        await vol.initialize({"targets.txt": "example.com\\n"})
        spec = RunSpec(..., volumes=[vol.get_mount_config("/inputs")])
        ...
        outputs = await vol.read_files()
    finally:
        await vol.cleanup()
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from drydock.config import Settings, get_settings
from drydock.types import VolumeMount

FileContent = str | bytes


@runtime_checkable
class IsolatedVolume(Protocol):
    @property
    def name(self) -> str | None:
        """Backing resource name once initialized (directory, ConfigMap or prefix)."""
        ...

    @property
    def needs_capture(self) -> bool:
        """True when writable mounts are not persisted natively and must be captured from logs."""
        ...

    async def initialize(self, files: dict[str, FileContent]) -> str: ...

    def get_mount_config(self, target: str, read_only: bool = True) -> VolumeMount: ...

    async def read_files(self, filenames: list[str] | None = None) -> dict[str, str]: ...

    async def write_back(self, files: dict[str, str]) -> None:
        """Persist captured ``{relative path: base64}`` content."""
        ...

    async def cleanup(self) -> None: ...


def create_isolated_volume(
    tenant_id: str,
    run_id: str,
    *,
    settings: Settings | None = None,
    core_api: Any = None,
    storage_client: Any = None,
) -> IsolatedVolume:
    """Build the volume variant configured by ``settings.volumes.mode``.

    Platform clients may be injected (tests); otherwise they are built from
    the ambient environment the first time they are needed.
    """
    s = settings or get_settings()
    mode = s.volumes.mode

    if mode == "configmap":
        from drydock.volumes.configmap import ConfigMapVolume

        return ConfigMapVolume(tenant_id, run_id, settings=s, core_api=core_api)

    if mode == "gcs":
        from drydock.volumes.gcs import GcsVolume

        return GcsVolume(tenant_id, run_id, settings=s, client=storage_client)

    from drydock.volumes.local import LocalVolume

    return LocalVolume(tenant_id, run_id, settings=s)


__all__ = ["FileContent", "IsolatedVolume", "create_isolated_volume"]
