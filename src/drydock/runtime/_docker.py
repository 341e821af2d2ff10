"""Docker CLI backend — jobs as detached containers on the local engine.

All calls go through the ``docker`` CLI. Blocking invocations run in a thread
via ``asyncio.to_thread``; log following uses an async subprocess so chunks
reach the sinks as they are produced.

Input and output are per-job host directories bind-mounted at
``/drydock-input`` (read-only) and ``/drydock-output``.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from drydock.config import Settings, get_settings
from drydock.errors import ConfigurationError, ContainerError
from drydock.logger import logger
from drydock.runtime._backend import Submission
from drydock.runtime.protocol import INPUT_DIR, INPUT_FILENAME, OUTPUT_DIR
from drydock.types import ContainerState, JobStatus, VolumeMount

_STATE_MAP: dict[str, ContainerState] = {
    "created": "waiting",
    "restarting": "waiting",
    "running": "running",
    "paused": "running",
    "removing": "terminated",
    "exited": "terminated",
    "dead": "terminated",
}


class DockerBackend:
    name = "docker"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self.cli = self._settings.docker.cli
        self._scratch: dict[str, Path] = {}

    # --- CLI plumbing ---

    def _run_sync(
        self,
        *args: str,
        check: bool = True,
        timeout: int = 30,
        merge_stderr: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self.cli, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=check,
        )

    async def run_docker(
        self,
        *args: str,
        check: bool = True,
        timeout: int = 30,
        merge_stderr: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run a ``docker`` CLI command without blocking the event loop."""
        return await asyncio.to_thread(
            self._run_sync, *args, check=check, timeout=timeout, merge_stderr=merge_stderr
        )

    async def _inspect(self, target: str, fmt: str) -> str | None:
        result = await self.run_docker("inspect", "-f", fmt, target, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    # --- JobBackend ---

    async def create_input(self, job_name: str, params: dict[str, Any]) -> tuple[VolumeMount, ...]:
        parent = self._settings.docker.scratch_dir
        root = await asyncio.to_thread(_make_scratch, job_name, parent, params)
        self._scratch[job_name] = root
        return (
            VolumeMount(source=str(root / "input"), target=INPUT_DIR, read_only=True),
            VolumeMount(source=str(root / "output"), target=OUTPUT_DIR, read_only=False),
        )

    def build_run_args(self, sub: Submission) -> list[str]:
        args = ["run", "-d", "--name", sub.name, "--network", sub.network]
        for key, value in sub.labels.items():
            args += ["--label", f"{key}={value}"]
        if sub.platform:
            args += ["--platform", sub.platform]
        for key, value in sub.env.items():
            args += ["-e", f"{key}={value}"]
        for mount in sub.mounts:
            if mount.kind != "bind":
                raise ConfigurationError(
                    f"Docker backend cannot mount {mount.kind!r} volumes",
                    details={"source": mount.source, "target": mount.target},
                )
            spec = f"{mount.source}:{mount.target}"
            args += ["-v", f"{spec}:ro" if mount.read_only else spec]
        if sub.service_port is not None and sub.network == "bridge":
            args += ["-p", f"{sub.service_port}:{sub.service_port}"]
        if sub.command:
            args += ["--entrypoint", sub.command[0]]
        args.append(sub.image)
        # --entrypoint takes a single executable; the rest becomes leading args
        args += sub.command[1:] + sub.args
        return args

    async def submit(self, submission: Submission) -> None:
        args = self.build_run_args(submission)
        logger.debug("Starting container", job=submission.name, image=submission.image)
        try:
            await self.run_docker(*args, timeout=300)
        except subprocess.CalledProcessError as exc:
            raise ContainerError(
                f"Failed to start container {submission.name}",
                details={"image": submission.image, "logs": (exc.stderr or "")[-2000:]},
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ContainerError(
                f"Timed out starting container {submission.name} (image pull?)",
                details={"image": submission.image},
            ) from exc

    async def find_container(self, job_name: str) -> str | None:
        return await self._inspect(job_name, "{{.Id}}") or None

    async def container_state(self, container_id: str) -> ContainerState | None:
        status = await self._inspect(container_id, "{{.State.Status}}")
        if status is None:
            return None
        return _STATE_MAP.get(status, "waiting")

    async def job_status(self, job_name: str) -> JobStatus:
        raw = await self._inspect(job_name, "{{.State.Status}} {{.State.ExitCode}}")
        if raw is None:
            return "failed"
        status, _, exit_code = raw.partition(" ")
        if status in ("exited", "dead"):
            return "succeeded" if exit_code.strip() == "0" else "failed"
        if status == "created":
            return "pending"
        return "running"

    async def follow_logs(self, container_id: str) -> AsyncIterator[str]:
        proc = await asyncio.create_subprocess_exec(
            self.cli,
            "logs",
            "-f",
            container_id,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        assert proc.stdout is not None
        try:
            while True:
                chunk = await proc.stdout.read(8192)
                if not chunk:
                    break
                yield chunk.decode(errors="replace")
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

    async def read_logs(self, container_id: str) -> str:
        result = await self.run_docker(
            "logs", container_id, check=False, timeout=60, merge_stderr=True
        )
        return result.stdout

    async def service_address(self, container_id: str, port: int) -> str:
        return f"http://{self._settings.docker.service_host}:{port}"

    async def cleanup(self, job_name: str) -> None:
        await self.run_docker("rm", "-f", job_name, check=False)
        root = self._scratch.pop(job_name, None)
        if root is not None:
            await asyncio.to_thread(shutil.rmtree, root, True)
        logger.debug("Container removed", job=job_name)


def _make_scratch(job_name: str, parent: str | None, params: dict[str, Any]) -> Path:
    root = Path(tempfile.mkdtemp(prefix=f"{job_name}-", dir=parent))
    (root / "input").mkdir()
    (root / "input" / INPUT_FILENAME).write_text(json.dumps(params))
    output = root / "output"
    output.mkdir()
    # Non-root container users must be able to write the result
    output.chmod(0o777)
    return root
