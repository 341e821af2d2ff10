"""Bind-mounted scratch directory volume (local Docker engine)."""

from __future__ import annotations

import asyncio
import base64
import binascii
import shutil
from pathlib import Path

from drydock.config import Settings, get_settings
from drydock.errors import ConfigurationError, ContainerError
from drydock.logger import logger
from drydock.types import VolumeMount
from drydock.volumes import FileContent
from drydock.volumes._validation import validate_files, validate_filename, validate_id, volume_name


class LocalVolume:
    def __init__(self, tenant_id: str, run_id: str, *, settings: Settings | None = None) -> None:
        self.tenant_id = validate_id("tenant_id", tenant_id)
        self.run_id = validate_id("run_id", run_id)
        self._settings = settings or get_settings()
        self._path: Path | None = None

    @property
    def name(self) -> str | None:
        return str(self._path) if self._path else None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def needs_capture(self) -> bool:
        return False

    async def initialize(self, files: dict[str, FileContent]) -> str:
        if self._path is not None:
            raise ConfigurationError(
                "Volume already initialized",
                details={
                    "path": str(self._path),
                    "tenant_id": self.tenant_id,
                    "run_id": self.run_id,
                },
            )
        validate_files(files)

        path = self._settings.volume_scratch_dir / volume_name(self.tenant_id, self.run_id)
        self._path = path
        try:
            await asyncio.to_thread(_write_tree, path, files)
        except OSError as exc:
            await self.cleanup()
            raise ContainerError(
                f"Failed to initialize local volume: {exc}",
                details={"tenant_id": self.tenant_id, "run_id": self.run_id},
            ) from exc

        logger.info("Local volume initialized", path=str(path), files=len(files))
        return str(path)

    def get_mount_config(self, target: str, read_only: bool = True) -> VolumeMount:
        path = self._require_path()
        return VolumeMount(
            source=str(path), target=target, read_only=read_only, kind="bind", volume=self
        )

    async def read_files(self, filenames: list[str] | None = None) -> dict[str, str]:
        path = self._require_path()
        if filenames is not None:
            validate_files(filenames)
        return await asyncio.to_thread(_read_tree, path, filenames)

    async def write_back(self, files: dict[str, str]) -> None:
        path = self._require_path()
        decoded: dict[str, FileContent] = {}
        for rel_path, b64 in files.items():
            validate_filename(rel_path)
            try:
                decoded[rel_path] = base64.b64decode(b64)
            except (binascii.Error, ValueError):
                logger.warning("Skipping undecodable captured file", path=rel_path)
        await asyncio.to_thread(_write_tree, path, decoded)

    async def cleanup(self) -> None:
        if self._path is None:
            return
        path, self._path = self._path, None
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to clean up local volume", path=str(path), err=str(exc))

    def _require_path(self) -> Path:
        if self._path is None:
            raise ConfigurationError("Volume not initialized")
        return self._path


def _write_tree(root: Path, files: dict[str, FileContent]) -> None:
    root.mkdir(parents=True, exist_ok=True)
    # Containers frequently run as a non-root user
    root.chmod(0o777)
    for rel_path, content in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content)


def _read_tree(root: Path, filenames: list[str] | None) -> dict[str, str]:
    if filenames is None:
        candidates = sorted(p for p in root.rglob("*") if p.is_file())
    else:
        candidates = [root / f for f in filenames]

    results: dict[str, str] = {}
    for p in candidates:
        if not p.is_file():
            continue
        results[p.relative_to(root).as_posix()] = p.read_bytes().decode("utf-8", errors="replace")
    return results
