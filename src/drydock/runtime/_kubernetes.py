"""Kubernetes Jobs backend.

Each run is a ``batch/v1`` Job with a single container named ``component``
and no retries (the workflow engine owns retry policy). Input is a
``<job>-input`` ConfigMap mounted read-only; output is an ``emptyDir`` that
only survives as the wrapped command's log trailer.

The official client is synchronous, so every API call runs in a worker
thread. Job bodies are plain dicts, which the client accepts directly.
"""

from __future__ import annotations

import asyncio
import codecs
import json
from collections.abc import AsyncIterator
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from drydock.config import Settings, get_settings
from drydock.errors import ContainerError
from drydock.logger import logger
from drydock.runtime._backend import MANAGED_BY, MANAGED_BY_LABEL, Submission
from drydock.runtime._names import input_resource_name
from drydock.runtime.protocol import INPUT_DIR, INPUT_FILENAME, OUTPUT_DIR
from drydock.types import ContainerState, JobStatus, VolumeMount

CONTAINER_NAME = "component"
GCSFUSE_DRIVER = "gcsfuse.csi.storage.gke.io"
_PUMP_JOIN_TIMEOUT = 5.0  # seconds to wait for the log reader thread after close

# Waiting reasons that will never resolve on their own
_FATAL_WAITING_REASONS = frozenset(
    {
        "ErrImagePull",
        "ImagePullBackOff",
        "InvalidImageName",
        "CreateContainerConfigError",
        "CreateContainerError",
    }
)


def load_kube_clients(settings: Settings | None = None) -> tuple[Any, Any]:
    """Load cluster credentials and return ``(CoreV1Api, BatchV1Api)``."""
    s = settings or get_settings()
    if s.kubernetes.in_cluster:
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
    else:
        config.load_kube_config()
    return client.CoreV1Api(), client.BatchV1Api()


class KubernetesBackend:
    name = "kubernetes"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        core_api: Any = None,
        batch_api: Any = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.namespace = self._settings.kubernetes.namespace
        if core_api is None or batch_api is None:
            loaded_core, loaded_batch = load_kube_clients(self._settings)
            core_api = core_api or loaded_core
            batch_api = batch_api or loaded_batch
        self.core = core_api
        self.batch = batch_api

    # --- Job body ---

    def build_job(self, sub: Submission) -> dict[str, Any]:
        k8s = self._settings.kubernetes
        volumes: list[dict[str, Any]] = []
        volume_mounts: list[dict[str, Any]] = []
        annotations: dict[str, str] = {}

        for i, mount in enumerate(sub.mounts):
            vol_name = f"vol-{i}"
            if mount.kind == "configmap" and mount.read_only:
                volumes.append({"name": vol_name, "configMap": {"name": mount.source}})
            elif mount.kind == "gcsfuse":
                bucket, _, prefix = mount.source.partition(":")
                volumes.append(
                    {
                        "name": vol_name,
                        "csi": {
                            "driver": GCSFUSE_DRIVER,
                            "readOnly": mount.read_only,
                            "volumeAttributes": {
                                "bucketName": bucket,
                                "mountOptions": f"only-dir={prefix}",
                            },
                        },
                    }
                )
                annotations["gke-gcsfuse/volumes"] = "true"
            else:
                if mount.kind == "bind":
                    logger.warning(
                        "Bind mounts are not supported on Kubernetes, using emptyDir",
                        job=sub.name,
                        source=mount.source,
                        target=mount.target,
                    )
                # Writable ConfigMap mounts are captured from logs and written back
                volumes.append({"name": vol_name, "emptyDir": {}})
            volume_mounts.append(
                {"name": vol_name, "mountPath": mount.target, "readOnly": mount.read_only}
            )

        container: dict[str, Any] = {
            "name": CONTAINER_NAME,
            "image": sub.image,
            "imagePullPolicy": k8s.image_pull_policy,
            "env": [{"name": k, "value": v} for k, v in sub.env.items()],
            "volumeMounts": volume_mounts,
            "resources": {
                "requests": {"cpu": k8s.cpu_request, "memory": k8s.memory_request},
                "limits": {"cpu": k8s.cpu_limit, "memory": k8s.memory_limit},
            },
        }
        if sub.command:
            container["command"] = sub.command
        if sub.args:
            container["args"] = sub.args
        if sub.service_port is not None:
            container["ports"] = [{"containerPort": sub.service_port}]

        pod_spec: dict[str, Any] = {
            "restartPolicy": "Never",
            "containers": [container],
            "volumes": volumes,
        }
        if k8s.image_pull_secret:
            pod_spec["imagePullSecrets"] = [{"name": k8s.image_pull_secret}]
        if sub.network == "host":
            pod_spec["hostNetwork"] = True
        if sub.platform:
            # "linux/arm64" → kubernetes.io/arch=arm64
            _, _, arch = sub.platform.partition("/")
            pod_spec["nodeSelector"] = {"kubernetes.io/arch": arch or sub.platform}

        labels = sub.labels
        template_meta: dict[str, Any] = {"labels": labels}
        if annotations:
            template_meta["annotations"] = annotations
        job_spec: dict[str, Any] = {
            "backoffLimit": 0,
            "ttlSecondsAfterFinished": k8s.ttl_seconds_after_finished,
            "template": {"metadata": template_meta, "spec": pod_spec},
        }
        if sub.timeout_seconds is not None:
            job_spec["activeDeadlineSeconds"] = sub.timeout_seconds

        return {
            "apiVersion": "batch/v1",
            "kind": "Job",
            "metadata": {"name": sub.name, "namespace": self.namespace, "labels": labels},
            "spec": job_spec,
        }

    # --- JobBackend ---

    async def create_input(self, job_name: str, params: dict[str, Any]) -> tuple[VolumeMount, ...]:
        cm_name = input_resource_name(job_name)
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": cm_name,
                "namespace": self.namespace,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY, "drydock.io/purpose": "job-input"},
            },
            "data": {INPUT_FILENAME: json.dumps(params)},
        }
        try:
            await asyncio.to_thread(
                self.core.create_namespaced_config_map, namespace=self.namespace, body=body
            )
        except ApiException as exc:
            raise ContainerError(
                f"Failed to create input ConfigMap {cm_name}: {exc.reason}",
                details={"job": job_name, "status": exc.status},
            ) from exc
        return (
            VolumeMount(source=cm_name, target=INPUT_DIR, read_only=True, kind="configmap"),
            VolumeMount(source="", target=OUTPUT_DIR, read_only=False, kind="emptydir"),
        )

    async def submit(self, submission: Submission) -> None:
        body = self.build_job(submission)
        try:
            await asyncio.to_thread(
                self.batch.create_namespaced_job, namespace=self.namespace, body=body
            )
        except ApiException as exc:
            raise ContainerError(
                f"Failed to create Job {submission.name}: {exc.reason}",
                details={"image": submission.image, "status": exc.status, "logs": exc.body or ""},
            ) from exc

    async def find_container(self, job_name: str) -> str | None:
        pods = await asyncio.to_thread(
            self.core.list_namespaced_pod,
            namespace=self.namespace,
            label_selector=f"job-name={job_name}",
        )
        if not pods.items:
            return None
        return pods.items[0].metadata.name

    async def container_state(self, container_id: str) -> ContainerState | None:
        try:
            pod = await asyncio.to_thread(
                self.core.read_namespaced_pod, name=container_id, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

        for cs in pod.status.container_statuses or []:
            if cs.name != CONTAINER_NAME:
                continue
            if cs.state.terminated is not None:
                return "terminated"
            if cs.state.running is not None:
                return "running"
            waiting = cs.state.waiting
            if waiting is not None and waiting.reason in _FATAL_WAITING_REASONS:
                raise ContainerError(
                    f"Container cannot start: {waiting.reason}",
                    details={"pod": container_id, "logs": waiting.message or ""},
                )
            return "waiting"

        if pod.status.phase in ("Succeeded", "Failed"):
            return "terminated"
        return "waiting"

    async def job_status(self, job_name: str) -> JobStatus:
        try:
            job = await asyncio.to_thread(
                self.batch.read_namespaced_job, name=job_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                logger.warning("Job disappeared while running", job=job_name)
                return "failed"
            raise

        status = job.status
        if status.succeeded:
            return "succeeded"
        if status.failed:
            return "failed"
        for cond in status.conditions or []:
            if cond.type == "Failed" and cond.status == "True":
                return "failed"
        return "running" if status.active else "pending"

    async def follow_logs(self, container_id: str) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        resp = await asyncio.to_thread(
            self.core.read_namespaced_pod_log,
            name=container_id,
            namespace=self.namespace,
            container=CONTAINER_NAME,
            follow=True,
            _preload_content=False,
        )

        def _push(item: str | None) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                pass  # loop already closed

        def _pump() -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            try:
                for chunk in resp.stream(8192):
                    text = decoder.decode(chunk)
                    if text:
                        _push(text)
                tail = decoder.decode(b"", final=True)
                if tail:
                    _push(tail)
            except Exception as exc:
                # Closing the response from the consumer side lands here too
                logger.debug("Pod log stream ended", pod=container_id, err=str(exc))
            finally:
                _push(None)

        pump = loop.run_in_executor(None, _pump)
        try:
            while (item := await queue.get()) is not None:
                yield item
        finally:
            # Closing the socket unblocks resp.stream in the pump thread
            resp.close()
            await asyncio.wait({pump}, timeout=_PUMP_JOIN_TIMEOUT)
            if not pump.done():
                logger.warning("Pod log reader thread still running", pod=container_id)

    async def read_logs(self, container_id: str) -> str:
        try:
            return await asyncio.to_thread(
                self.core.read_namespaced_pod_log,
                name=container_id,
                namespace=self.namespace,
                container=CONTAINER_NAME,
            )
        except ApiException as exc:
            logger.warning("Failed to read pod logs", pod=container_id, err=str(exc))
            return ""

    async def service_address(self, container_id: str, port: int) -> str:
        pod = await asyncio.to_thread(
            self.core.read_namespaced_pod, name=container_id, namespace=self.namespace
        )
        if not pod.status.pod_ip:
            raise ContainerError(f"Pod {container_id} has no IP yet", details={"pod": container_id})
        return f"http://{pod.status.pod_ip}:{port}"

    async def cleanup(self, job_name: str) -> None:
        try:
            await asyncio.to_thread(
                self.batch.delete_namespaced_job,
                name=job_name,
                namespace=self.namespace,
                propagation_policy="Background",
            )
        except ApiException as exc:
            if exc.status != 404:
                logger.warning("Failed to delete Job", job=job_name, err=str(exc))

        cm_name = input_resource_name(job_name)
        try:
            await asyncio.to_thread(
                self.core.delete_namespaced_config_map, name=cm_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status != 404:
                logger.warning("Failed to delete input ConfigMap", configmap=cm_name, err=str(exc))
