"""Kubernetes ConfigMap-backed volume.

Text files go to ``data``, bytes to ``binaryData`` (base64). ConfigMap keys
cannot contain ``/`` so paths are flattened to ``__`` and restored on read.

ConfigMaps are read-only inside a pod. A writable mount becomes an
``emptyDir``; its content is captured from the job's log stream and merged
back into ``binaryData`` with :meth:`ConfigMapVolume.write_back` before the
job is cleaned up.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any

from kubernetes.client.rest import ApiException

from drydock.config import Settings, get_settings
from drydock.errors import ConfigurationError, ContainerError
from drydock.logger import logger
from drydock.types import VolumeMount
from drydock.volumes import FileContent
from drydock.volumes._validation import validate_files, validate_filename, validate_id, volume_name


def flatten_key(path: str) -> str:
    return path.replace("/", "__")


def unflatten_key(key: str) -> str:
    return key.replace("__", "/")


class ConfigMapVolume:
    def __init__(
        self,
        tenant_id: str,
        run_id: str,
        *,
        settings: Settings | None = None,
        core_api: Any = None,
        namespace: str | None = None,
    ) -> None:
        self.tenant_id = validate_id("tenant_id", tenant_id)
        self.run_id = validate_id("run_id", run_id)
        self._settings = settings or get_settings()
        self.namespace = namespace or self._settings.kubernetes.namespace
        self._core = core_api
        self._name: str | None = None

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def needs_capture(self) -> bool:
        return True

    def _api(self) -> Any:
        if self._core is None:
            from drydock.runtime._kubernetes import load_kube_clients

            self._core, _ = load_kube_clients(self._settings)
        return self._core

    async def initialize(self, files: dict[str, FileContent]) -> str:
        if self._name is not None:
            raise ConfigurationError(
                "Volume already initialized",
                details={
                    "configmap": self._name,
                    "tenant_id": self.tenant_id,
                    "run_id": self.run_id,
                },
            )
        validate_files(files)

        data: dict[str, str] = {}
        binary_data: dict[str, str] = {}
        for filename, content in files.items():
            key = flatten_key(filename)
            if isinstance(content, bytes):
                binary_data[key] = base64.b64encode(content).decode()
            else:
                data[key] = content

        self._name = volume_name(self.tenant_id, self.run_id)
        body: dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": self._name,
                "namespace": self.namespace,
                "labels": {
                    "app.kubernetes.io/managed-by": "drydock",
                    "drydock.io/purpose": "isolated-volume",
                    "drydock.io/tenant": self.tenant_id.lower().replace("_", "-")[:63],
                    "drydock.io/run": self.run_id.lower().replace("_", "-")[:63],
                },
            },
        }
        if data:
            body["data"] = data
        if binary_data:
            body["binaryData"] = binary_data
        try:
            await asyncio.to_thread(
                self._api().create_namespaced_config_map, namespace=self.namespace, body=body
            )
        except ApiException as exc:
            await self.cleanup()
            raise ContainerError(
                f"Failed to initialize ConfigMap volume: {exc.reason}",
                details={"tenant_id": self.tenant_id, "run_id": self.run_id, "status": exc.status},
            ) from exc

        logger.info("ConfigMap volume initialized", configmap=self._name, files=len(files))
        return self._name

    def get_mount_config(self, target: str, read_only: bool = True) -> VolumeMount:
        name = self._require_name()
        return VolumeMount(
            source=name, target=target, read_only=read_only, kind="configmap", volume=self
        )

    async def read_files(self, filenames: list[str] | None = None) -> dict[str, str]:
        name = self._require_name()
        if filenames is not None:
            validate_files(filenames)

        cm = await asyncio.to_thread(
            self._api().read_namespaced_config_map, name=name, namespace=self.namespace
        )
        data = cm.data or {}
        binary_data = cm.binary_data or {}

        if filenames is None:
            keys = sorted(set(data) | set(binary_data))
            filenames = [unflatten_key(k) for k in keys]

        results: dict[str, str] = {}
        for filename in filenames:
            key = flatten_key(filename)
            if key in data:
                results[filename] = data[key]
            elif key in binary_data:
                raw = base64.b64decode(binary_data[key])
                results[filename] = raw.decode("utf-8", errors="replace")
        return results

    async def write_back(self, files: dict[str, str]) -> None:
        """Merge captured ``{relative path: base64}`` content into ``binaryData``."""
        name = self._require_name()
        if not files:
            return
        captured = {}
        for rel_path, b64 in files.items():
            validate_filename(rel_path)
            # binaryData values must be single-line base64
            captured[flatten_key(rel_path)] = "".join(b64.split())

        api = self._api()
        try:
            existing = await asyncio.to_thread(
                api.read_namespaced_config_map, name=name, namespace=self.namespace
            )
            # A key may live in data or binaryData, never both
            data = {k: v for k, v in (existing.data or {}).items() if k not in captured}
            existing.data = data or None
            existing.binary_data = {**(existing.binary_data or {}), **captured}
            await asyncio.to_thread(
                api.replace_namespaced_config_map,
                name=name,
                namespace=self.namespace,
                body=existing,
            )
        except ApiException as exc:
            raise ContainerError(
                f"Failed to write back captured files to ConfigMap {name}: {exc.reason}",
                details={"configmap": name, "status": exc.status},
            ) from exc
        logger.info("Wrote captured files back to ConfigMap", configmap=name, files=len(captured))

    async def cleanup(self) -> None:
        if self._name is None:
            return
        name, self._name = self._name, None
        try:
            await asyncio.to_thread(
                self._api().delete_namespaced_config_map, name=name, namespace=self.namespace
            )
        except Exception as exc:
            if getattr(exc, "status", None) != 404:
                logger.warning("Failed to clean up ConfigMap volume", configmap=name, err=str(exc))

    def _require_name(self) -> str:
        if self._name is None:
            raise ConfigurationError("Volume not initialized")
        return self._name
