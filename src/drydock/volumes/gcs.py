"""GCS prefix volume, mounted into pods through the GCS FUSE CSI driver.

Objects live under ``<tenant>/<run>/<timestamp>/`` in the configured bucket.
The FUSE mount is natively read-write, so nothing has to be captured from
logs; whatever the container writes is visible to :meth:`read_files`.
"""

from __future__ import annotations

import asyncio
import base64
import time
from typing import Any

from google.api_core.exceptions import NotFound

from drydock.config import Settings, get_settings
from drydock.errors import ConfigurationError, ContainerError
from drydock.logger import logger
from drydock.types import VolumeMount
from drydock.volumes import FileContent
from drydock.volumes._validation import validate_files, validate_filename, validate_id


class GcsVolume:
    def __init__(
        self,
        tenant_id: str,
        run_id: str,
        *,
        settings: Settings | None = None,
        client: Any = None,
        bucket_name: str | None = None,
    ) -> None:
        self.tenant_id = validate_id("tenant_id", tenant_id)
        self.run_id = validate_id("run_id", run_id)
        self._settings = settings or get_settings()
        self.bucket_name = bucket_name or self._settings.volumes.gcs_bucket
        if not self.bucket_name:
            raise ConfigurationError("GCS volume requires volumes.gcs_bucket")
        self._client = client
        self._prefix: str | None = None

    @property
    def name(self) -> str | None:
        return self._prefix

    @property
    def needs_capture(self) -> bool:
        return False

    def _storage(self) -> Any:
        if self._client is None:
            from google.cloud import storage

            self._client = storage.Client()
        return self._client

    def _bucket(self) -> Any:
        return self._storage().bucket(self.bucket_name)

    async def initialize(self, files: dict[str, FileContent]) -> str:
        if self._prefix is not None:
            raise ConfigurationError(
                "Volume already initialized",
                details={
                    "prefix": self._prefix,
                    "tenant_id": self.tenant_id,
                    "run_id": self.run_id,
                },
            )
        validate_files(files)

        self._prefix = f"{self.tenant_id}/{self.run_id}/{int(time.time() * 1000)}"
        try:
            await asyncio.to_thread(self._upload, files)
        except Exception as exc:
            # Also transport errors raised once the client gives up retrying
            await self.cleanup()
            raise ContainerError(
                f"Failed to initialize GCS volume: {exc}",
                details={"tenant_id": self.tenant_id, "run_id": self.run_id},
            ) from exc

        logger.info("GCS volume initialized", bucket=self.bucket_name, prefix=self._prefix)
        return self._prefix

    def _upload(self, files: dict[str, FileContent]) -> None:
        bucket = self._bucket()
        for filename, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            bucket.blob(f"{self._prefix}/{filename}").upload_from_string(data)

    def get_mount_config(self, target: str, read_only: bool = True) -> VolumeMount:
        prefix = self._require_prefix()
        return VolumeMount(
            source=f"{self.bucket_name}:{prefix}",
            target=target,
            read_only=read_only,
            kind="gcsfuse",
            volume=self,
        )

    async def read_files(self, filenames: list[str] | None = None) -> dict[str, str]:
        prefix = self._require_prefix()
        if filenames is not None:
            validate_files(filenames)
        return await asyncio.to_thread(self._download, prefix, filenames)

    def _download(self, prefix: str, filenames: list[str] | None) -> dict[str, str]:
        bucket = self._bucket()
        if filenames is None:
            blobs = self._storage().list_blobs(self.bucket_name, prefix=f"{prefix}/")
            filenames = sorted(b.name[len(prefix) + 1 :] for b in blobs if not b.name.endswith("/"))

        results: dict[str, str] = {}
        for filename in filenames:
            try:
                data = bucket.blob(f"{prefix}/{filename}").download_as_bytes()
            except NotFound:
                logger.warning("File not found in GCS volume", prefix=prefix, file=filename)
                continue
            results[filename] = data.decode("utf-8", errors="replace")
        return results

    async def write_back(self, files: dict[str, str]) -> None:
        """Upload captured ``{relative path: base64}`` content under the prefix."""
        self._require_prefix()
        decoded: dict[str, FileContent] = {}
        for rel_path, b64 in files.items():
            validate_filename(rel_path)
            decoded[rel_path] = base64.b64decode(b64)
        if decoded:
            await asyncio.to_thread(self._upload, decoded)

    async def cleanup(self) -> None:
        if self._prefix is None:
            return
        prefix, self._prefix = self._prefix, None
        try:
            deleted = await asyncio.to_thread(self._delete_prefix, prefix)
            logger.debug("GCS volume cleaned up", prefix=prefix, deleted=deleted)
        except Exception as exc:
            logger.warning("Failed to clean up GCS volume", prefix=prefix, err=str(exc))

    def _delete_prefix(self, prefix: str) -> int:
        count = 0
        for blob in self._storage().list_blobs(self.bucket_name, prefix=f"{prefix}/"):
            try:
                blob.delete()
                count += 1
            except NotFound:
                pass
        return count

    def _require_prefix(self) -> str:
        if self._prefix is None:
            raise ConfigurationError("Volume not initialized")
        return self._prefix
