"""Group runtime — provision N sibling tool servers behind one credential contract.

For a group node in a workflow::

    credential ─► env (+ AWS files volume) ─► start siblings (bounded fan-out)
                                                     │
              endpoints ◄─ register ◄─ discover ◄─ one run token for all siblings

A provisioning failure aborts the whole group and reclaims what was already
started. Discovery and registration failures are contained per sibling.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from drydock.config import Settings, get_settings
from drydock.context import ExecutionContext
from drydock.errors import ConfigurationError, DrydockError
from drydock.groups.credentials import map_to_env, map_to_files
from drydock.groups.discovery import ToolDiscoveryClient
from drydock.groups.registry import ToolRegistryClient
from drydock.groups.templates import GroupTemplate, ServerDescriptor
from drydock.logger import logger
from drydock.runtime.runner import JobRunner
from drydock.types import RunSpec, ServerEndpoint, ServiceHandle, VolumeMount
from drydock.volumes import IsolatedVolume, create_isolated_volume

VolumeFactory = Callable[[str, str], IsolatedVolume]


@dataclass
class _Sibling:
    server: ServerDescriptor
    handle: ServiceHandle

    @property
    def endpoint(self) -> str:
        return f"{self.handle.address}/mcp"


@dataclass
class _GroupInstance:
    group_instance_id: str
    siblings: list[_Sibling] = field(default_factory=list)
    volume: IsolatedVolume | None = None


def server_env(group_env: Mapping[str, str], server: ServerDescriptor) -> dict[str, str]:
    """Per-sibling env: the group env plus the stdio proxy's command selection."""
    env = dict(group_env)
    env["MCP_COMMAND"] = server.command
    # An empty named-servers map makes the proxy fall through to MCP_COMMAND
    env["MCP_NAMED_SERVERS"] = "{}"
    if server.args:
        env["MCP_ARGS"] = json.dumps(list(server.args))
    return env


class GroupRuntime:
    def __init__(
        self,
        runner: JobRunner,
        *,
        discovery: ToolDiscoveryClient | None = None,
        registry: ToolRegistryClient | None = None,
        settings: Settings | None = None,
        volume_factory: VolumeFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.runner = runner
        self.discovery = discovery or ToolDiscoveryClient(self.settings)
        self.registry = registry or ToolRegistryClient(self.settings)
        self._volume_factory = volume_factory or self._default_volume
        self._groups: dict[str, _GroupInstance] = {}

    def _default_volume(self, tenant_id: str, run_id: str) -> IsolatedVolume:
        return create_isolated_volume(tenant_id, run_id, settings=self.settings)

    async def provision(
        self,
        credential: Mapping[str, Any],
        enabled_server_ids: list[str] | tuple[str, ...],
        template: GroupTemplate,
        context: ExecutionContext,
    ) -> list[ServerEndpoint]:
        group_id = context.component_ref
        if not credential:
            raise ConfigurationError(
                "Credentials are required for tool-server group execution",
                details={"group": template.slug},
            )
        servers = template.enabled_servers(enabled_server_ids)
        if not servers:
            logger.info("No enabled servers, nothing to provision", group=template.slug)
            return []

        env = map_to_env(credential, template.credential_mapping.env)
        logger.info(
            "Provisioning tool-server group",
            group=template.slug,
            group_instance=group_id,
            run_id=context.run_id,
            servers=[s.id for s in servers],
            env_keys=sorted(env),
        )

        if group_id in self._groups:
            logger.warning(
                "Group instance already provisioned, replacing it", group_instance=group_id
            )
            await self.teardown(group_id)

        instance = _GroupInstance(group_instance_id=group_id)
        try:
            mounts = await self._credential_mounts(instance, credential, template, context)
            await self._start_siblings(instance, servers, env, mounts, template, context)
        except BaseException:
            await self._reclaim(instance)
            raise
        self._groups[group_id] = instance

        endpoints = await self._register_siblings(instance, context)
        logger.info(
            "Tool-server group ready",
            group=template.slug,
            group_instance=group_id,
            endpoints=len(endpoints),
        )
        return endpoints

    async def _credential_mounts(
        self,
        instance: _GroupInstance,
        credential: Mapping[str, Any],
        template: GroupTemplate,
        context: ExecutionContext,
    ) -> tuple[VolumeMount, ...]:
        if not template.credential_mapping.aws_files:
            return ()
        files = map_to_files(credential)
        if files is None:
            return ()
        volume = self._volume_factory(context.tenant_id, context.run_id)
        instance.volume = volume
        await volume.initialize(files)
        return (volume.get_mount_config(self.settings.groups.credential_mount, read_only=True),)

    async def _start_siblings(
        self,
        instance: _GroupInstance,
        servers: list[ServerDescriptor],
        env: dict[str, str],
        mounts: tuple[VolumeMount, ...],
        template: GroupTemplate,
        context: ExecutionContext,
    ) -> None:
        sem = asyncio.Semaphore(self.settings.groups.max_concurrent_servers)

        async def start(server: ServerDescriptor) -> None:
            spec = RunSpec(
                image=template.default_image,
                env=server_env(env, server),
                volumes=mounts,
                network="bridge",
            )
            async with sem:
                logger.info("Starting tool server", server_id=server.id, command=server.command)
                handle = await self.runner.start_service(spec, context)
            instance.siblings.append(_Sibling(server=server, handle=handle))

        results = await asyncio.gather(*(start(s) for s in servers), return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        order = {s.id: i for i, s in enumerate(servers)}
        instance.siblings.sort(key=lambda s: order[s.server.id])

    async def _register_siblings(
        self, instance: _GroupInstance, context: ExecutionContext
    ) -> list[ServerEndpoint]:
        group_id = instance.group_instance_id
        node_ids = {s.server.id: f"{group_id}/{s.server.id}" for s in instance.siblings}
        try:
            token = await self.registry.issue_token(context.run_id, list(node_ids.values()))
        except DrydockError:
            await self.teardown(instance.group_instance_id)
            raise

        async def register(sibling: _Sibling) -> ServerEndpoint | None:
            tools = await self.discovery.discover(sibling.endpoint)
            try:
                await self.registry.register(
                    run_id=context.run_id,
                    node_id=node_ids[sibling.server.id],
                    server_name=sibling.server.name,
                    server_id=sibling.server.id,
                    endpoint=sibling.endpoint,
                    container_id=sibling.handle.container_id,
                    tools=tools,
                    token=token,
                )
            except DrydockError as exc:
                logger.error(
                    "Tool server registration failed, stopping it",
                    server_id=sibling.server.id,
                    err=str(exc),
                )
                await self.runner.stop_service(sibling.handle)
                instance.siblings.remove(sibling)
                return None
            return ServerEndpoint(
                endpoint=sibling.endpoint,
                container_id=sibling.handle.container_id,
                server_id=sibling.server.id,
            )

        results = await asyncio.gather(*(register(s) for s in list(instance.siblings)))
        return [r for r in results if r is not None]

    async def teardown(self, group_instance_id: str) -> None:
        instance = self._groups.pop(group_instance_id, None)
        if instance is None:
            return
        await self._reclaim(instance)
        logger.info("Tool-server group torn down", group_instance=group_instance_id)

    async def teardown_all(self) -> None:
        for group_id in list(self._groups):
            await self.teardown(group_id)

    async def _reclaim(self, instance: _GroupInstance) -> None:
        siblings, instance.siblings = instance.siblings, []
        await asyncio.gather(*(self.runner.stop_service(s.handle) for s in siblings))
        if instance.volume is not None:
            await instance.volume.cleanup()
            instance.volume = None
