"""Job runner — one workflow step as one isolated, observed, reclaimed container.

Flow of :meth:`JobRunner.run_job`::

    create input ──► submit ──► wait for container ──┬─► poll job status ─┐
                                                     └─► stream logs ─────┤
                                          read final logs ◄── drain ◄─────┘
                                 parse result, write back captured volumes
                              finally: backend cleanup (exactly once)

The deadline is computed once on entry and checked on every poll. The
runner never retries; retry policy belongs to the workflow engine.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from drydock.config import Settings, get_settings
from drydock.context import ExecutionContext
from drydock.errors import ContainerError, DrydockError, ExecutionTimeoutError
from drydock.logger import bound_context, logger
from drydock.runtime._backend import JobBackend, Submission
from drydock.runtime._names import free_port, job_name
from drydock.runtime.protocol import (
    INPUT_DIR,
    INPUT_FILENAME,
    OUTPUT_DIR,
    OUTPUT_FILENAME,
    WRITABLE_MOUNTS_ENV,
    decode_captured_files,
    parse_logs,
    wrap_command,
)
from drydock.types import Job, JobResult, JobState, JobStatus, RunSpec, ServiceHandle, VolumeMount


def create_backend(name: str | None = None, settings: Settings | None = None) -> JobBackend:
    """Build the backend named by ``settings.runner.backend`` (or *name*)."""
    s = settings or get_settings()
    name = name or s.runner.backend
    if name == "kubernetes":
        from drydock.runtime._kubernetes import KubernetesBackend

        return KubernetesBackend(s)
    if name == "docker":
        from drydock.runtime._docker import DockerBackend

        return DockerBackend(s)
    raise ValueError(f"Unknown job backend: {name!r}")


class JobRunner:
    def __init__(self, backend: JobBackend, settings: Settings | None = None) -> None:
        self.backend = backend
        self.settings = settings or get_settings()

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, *, backend: str | None = None
    ) -> JobRunner:
        s = settings or get_settings()
        return cls(create_backend(backend, s), s)

    @property
    def namespace(self) -> str:
        if self.backend.name == "kubernetes":
            return self.settings.kubernetes.namespace
        return "local"

    # ------------------------------------------------------------------
    # One-shot jobs
    # ------------------------------------------------------------------

    async def run(self, spec: RunSpec, params: dict[str, Any], context: ExecutionContext) -> Any:
        """Run *spec* to completion and return its parsed result."""
        result = await self.run_job(spec, params, context)
        return result.output

    async def run_job(
        self, spec: RunSpec, params: dict[str, Any], context: ExecutionContext
    ) -> JobResult:
        timeout = spec.timeout_seconds or self.settings.runner.default_timeout_seconds
        job = Job(
            name=job_name(spec.image, context.run_id),
            namespace=self.namespace,
            image=spec.image,
            run_id=context.run_id,
        )
        with bound_context(run_id=context.run_id, job=job.name):
            logger.info(
                "Starting job", image=spec.image, backend=self.backend.name, timeout=timeout
            )
            return await self._execute(job, spec, params, context, timeout)

    async def _execute(
        self,
        job: Job,
        spec: RunSpec,
        params: dict[str, Any],
        context: ExecutionContext,
        timeout: int,
    ) -> JobResult:
        cfg = self.settings.runner
        deadline = asyncio.get_running_loop().time() + timeout

        stream_task: asyncio.Task[None] | None = None
        try:
            io_mounts = await self.backend.create_input(job.name, params)
            submission = self._build_submission(job, spec, context, io_mounts, timeout)
            await self.backend.submit(submission)
            self._transition(job, "scheduled")
            context.emit_progress(f"Job {job.name} submitted")

            container_id = await self._wait_for_container(job, deadline, timeout)
            job.container_id = container_id
            self._transition(job, "running")

            stream_task = asyncio.create_task(self._stream_logs(container_id, context, deadline))
            status = await self._wait_for_completion(job, stream_task, deadline, timeout)
            await self._drain(stream_task)

            logs = await self.backend.read_logs(container_id)
            if status == "failed":
                self._transition(job, "failed")
                raise ContainerError(
                    f"Job {job.name} failed",
                    details={"job": job.name, "logs": logs[-cfg.log_tail_chars :]},
                )

            parsed = parse_logs(logs)
            await self._write_back(job, spec, parsed.files)
            self._transition(job, "succeeded")
            context.emit_progress(f"Job {job.name} completed")
            return JobResult(
                job=job,
                output=parsed.result,
                files=decode_captured_files(parsed.files),
                structured=parsed.structured,
            )
        except ExecutionTimeoutError:
            self._transition(job, "timed_out")
            context.emit_progress(f"Job {job.name} timed out", level="error")
            raise
        except DrydockError:
            if not job.is_terminal:
                self._transition(job, "failed")
            raise
        except Exception as exc:
            if not job.is_terminal:
                self._transition(job, "failed")
            raise ContainerError(
                f"Job {job.name} failed: {exc}", details={"job": job.name}
            ) from exc
        finally:
            if stream_task is not None:
                await _cancel(stream_task)
            await self._cleanup(job)

    def _build_submission(
        self,
        job: Job,
        spec: RunSpec,
        context: ExecutionContext,
        io_mounts: tuple[VolumeMount, ...],
        timeout: int,
    ) -> Submission:
        captured = [
            m.target
            for m in spec.volumes
            if not m.read_only and m.volume is not None and m.volume.needs_capture
        ]

        env = {
            "DRYDOCK_INPUT_PATH": f"{INPUT_DIR}/{INPUT_FILENAME}",
            "DRYDOCK_OUTPUT_PATH": f"{OUTPUT_DIR}/{OUTPUT_FILENAME}",
        }
        env.update(_job_env(spec.env))
        if captured:
            env[WRITABLE_MOUNTS_ENV] = " ".join(captured)

        wrapped = wrap_command(spec.entrypoint, spec.command, capture_volumes=bool(captured))
        if not wrapped.wrapped:
            logger.debug("Command not wrapped, result will be parsed from raw logs", job=job.name)
            if captured:
                logger.warning(
                    "Writable mounts cannot be captured without a shell entrypoint",
                    job=job.name,
                    mounts=captured,
                )

        return Submission(
            name=job.name,
            image=spec.image,
            run_id=context.run_id,
            component_ref=context.component_ref,
            command=wrapped.command,
            args=wrapped.args,
            env=env,
            mounts=(*io_mounts, *spec.volumes),
            network=spec.network,
            timeout_seconds=timeout,
            platform=spec.platform,
        )

    async def _wait_for_container(self, job: Job, deadline: float, timeout: float) -> str:
        loop = asyncio.get_running_loop()
        while True:
            container_id = await self.backend.find_container(job.name)
            if container_id:
                return container_id
            if loop.time() >= deadline:
                raise ExecutionTimeoutError(
                    f"Timed out waiting for container of job {job.name}",
                    timeout,
                    details={"job": job.name},
                )
            await asyncio.sleep(self.settings.runner.container_poll_interval)

    async def _wait_for_completion(
        self,
        job: Job,
        stream_task: asyncio.Task[None],
        deadline: float,
        timeout: float,
    ) -> JobStatus:
        loop = asyncio.get_running_loop()
        while True:
            status = await self.backend.job_status(job.name)
            if status in ("succeeded", "failed"):
                logger.info("Job finished", job=job.name, status=status)
                return status

            # The stream task surfaces containers that can never start
            if stream_task.done() and not stream_task.cancelled():
                exc = stream_task.exception()
                if exc is not None:
                    raise exc

            if loop.time() >= deadline:
                raise ExecutionTimeoutError(
                    f"Job {job.name} timed out after {timeout}s",
                    timeout,
                    details={"job": job.name, "container": job.container_id},
                )
            await asyncio.sleep(self.settings.runner.status_poll_interval)

    async def _stream_logs(
        self, container_id: str, context: ExecutionContext, deadline: float
    ) -> None:
        """Forward container output to the context sinks while the job runs."""
        cfg = self.settings.runner
        loop = asyncio.get_running_loop()
        ready_by = min(deadline, loop.time() + cfg.container_ready_timeout)

        state = None
        while loop.time() < ready_by:
            state = await self.backend.container_state(container_id)
            if state in ("running", "terminated"):
                break
            await asyncio.sleep(cfg.container_poll_interval)

        origin = self.backend.name
        try:
            if state == "terminated":
                # Too late to follow; one final read instead
                context.emit_output(await self.backend.read_logs(container_id), origin=origin)
                return
            async for chunk in self.backend.follow_logs(container_id):
                context.emit_output(chunk, origin=origin)
        except Exception as exc:
            logger.warning("Log streaming failed", container=container_id, err=str(exc))

    async def _drain(self, stream_task: asyncio.Task[None]) -> None:
        timeout = self.settings.runner.log_drain_timeout
        done, _ = await asyncio.wait({stream_task}, timeout=timeout)
        if not done:
            logger.debug("Log stream did not finish in time, cancelling")
            await _cancel(stream_task)
        elif not stream_task.cancelled() and stream_task.exception() is not None:
            # Raised while waiting for readiness after the job already finished
            logger.warning("Log stream ended with error", err=str(stream_task.exception()))

    async def _write_back(self, job: Job, spec: RunSpec, files: dict[str, dict[str, str]]) -> None:
        for mount in spec.volumes:
            if mount.read_only or mount.volume is None or not mount.volume.needs_capture:
                continue
            captured = files.get(mount.target)
            if not captured:
                continue
            try:
                await mount.volume.write_back(captured)
            except DrydockError as exc:
                logger.warning(
                    "Failed to write back captured files",
                    job=job.name,
                    mount=mount.target,
                    err=str(exc),
                )

    async def _cleanup(self, job: Job) -> None:
        try:
            await self.backend.cleanup(job.name)
        except Exception as exc:
            logger.warning("Job cleanup failed", job=job.name, err=str(exc))
        self._transition(job, "cleaned")

    def _transition(self, job: Job, state: JobState) -> None:
        logger.debug("Job state", job=job.name, prev=job.state, state=state)
        job.state = state

    # ------------------------------------------------------------------
    # Stay-up services
    # ------------------------------------------------------------------

    async def start_service(
        self,
        spec: RunSpec,
        context: ExecutionContext,
        *,
        port: int | None = None,
    ) -> ServiceHandle:
        """Start a long-lived container and return once it is running.

        The container is removed again if it fails to come up.
        """
        port = port or free_port()
        name = job_name(spec.image, context.run_id)
        env = _job_env(spec.env)
        env.update({"PORT": str(port), "ENDPOINT": f"http://localhost:{port}/mcp"})

        wrapped = wrap_command(spec.entrypoint, spec.command)
        submission = Submission(
            name=name,
            image=spec.image,
            run_id=context.run_id,
            component_ref=context.component_ref,
            command=wrapped.command,
            args=wrapped.args,
            env=env,
            mounts=spec.volumes,
            network=spec.network,
            timeout_seconds=None,
            platform=spec.platform,
            service_port=port,
        )

        logger.info("Starting service container", job=name, image=spec.image, port=port)
        try:
            await self.backend.submit(submission)
            container_id = await self._wait_for_service(name)
            address = await self.backend.service_address(container_id, port)
        except BaseException:
            await self._stop(name)
            raise

        logger.info("Service container running", job=name, address=address)
        return ServiceHandle(name=name, container_id=container_id, port=port, address=address)

    async def _wait_for_service(self, name: str) -> str:
        cfg = self.settings.runner
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.service_ready_timeout
        container_id: str | None = None

        while loop.time() < deadline:
            if container_id is None:
                container_id = await self.backend.find_container(name)
            if container_id is not None:
                state = await self.backend.container_state(container_id)
                if state == "running":
                    return container_id
                if state == "terminated":
                    logs = await self.backend.read_logs(container_id)
                    raise ContainerError(
                        f"Service container {name} exited during startup",
                        details={"job": name, "logs": logs[-cfg.log_tail_chars :]},
                    )
            await asyncio.sleep(cfg.container_poll_interval)

        raise ExecutionTimeoutError(
            f"Service container {name} did not start within {cfg.service_ready_timeout}s",
            cfg.service_ready_timeout,
            details={"job": name},
        )

    async def stop_service(self, handle: ServiceHandle) -> None:
        await self._stop(handle.name)
        logger.info("Service container stopped", job=handle.name)

    async def _stop(self, name: str) -> None:
        try:
            await self.backend.cleanup(name)
        except Exception as exc:
            logger.warning("Failed to stop service container", job=name, err=str(exc))


def _job_env(env: dict[str, str]) -> dict[str, str]:
    # Distroless images run as non-root and cannot write /root
    return {k: "/tmp" if k == "HOME" and v == "/root" else v for k, v in env.items()}


async def _cancel(task: asyncio.Task[Any]) -> None:
    if task.done():
        if not task.cancelled():
            task.exception()  # mark retrieved
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task
