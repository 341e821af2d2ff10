"""Tests for GroupRuntime provisioning and teardown against an in-memory backend."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeBackend, fast_runner_config, make_settings

from drydock.context import ExecutionContext
from drydock.errors import ConfigurationError, ContainerError, ServiceError
from drydock.groups.runtime import GroupRuntime, server_env
from drydock.groups.templates import CredentialMapping, GroupTemplate, ServerDescriptor
from drydock.runtime import JobRunner
from drydock.types import ToolDescriptor, VolumeMount

DEMO = GroupTemplate(
    slug="demo",
    name="Demo",
    credential_contract_name="core.credential.demo",
    default_image="ghcr.io/example/mcp-suite:1",
    credential_mapping=CredentialMapping(env={"API_KEY": "apiKey"}),
    servers=(
        ServerDescriptor(id="alpha", name="Alpha", command="alpha-mcp"),
        ServerDescriptor(id="beta", name="Beta", command="beta-mcp", args=("--verbose",)),
    ),
)

AWS_LIKE = DEMO.model_copy(
    update={
        "slug": "aws-like",
        "credential_mapping": CredentialMapping(
            env={"AWS_ACCESS_KEY_ID": "accessKeyId", "AWS_SECRET_ACCESS_KEY": "secretAccessKey"},
            aws_files=True,
        ),
    }
)
AWS_CREDENTIAL = {"accessKeyId": "AKIA", "secretAccessKey": "secret"}


def _context(group_id: str = "group-1") -> ExecutionContext:
    return ExecutionContext(run_id="run-1", component_ref=group_id)


def _volume() -> MagicMock:
    volume = MagicMock()
    volume.initialize = AsyncMock(return_value="vol-x")
    volume.cleanup = AsyncMock()
    volume.get_mount_config.return_value = VolumeMount(source="/vols/aws", target="/root/.aws")
    return volume


class _Harness:
    def __init__(self, backend: FakeBackend | None = None) -> None:
        self.backend = backend or FakeBackend()
        settings = make_settings(runner=fast_runner_config())
        self.discovery = MagicMock()
        self.discovery.discover = AsyncMock(return_value=[ToolDescriptor("lookup")])
        self.registry = MagicMock()
        self.registry.issue_token = AsyncMock(return_value="run-token")
        self.registry.register = AsyncMock()
        self.volumes: list[MagicMock] = []
        self.groups = GroupRuntime(
            JobRunner(self.backend, settings),
            discovery=self.discovery,
            registry=self.registry,
            settings=settings,
            volume_factory=self._make_volume,
        )

    def _make_volume(self, tenant_id, run_id):
        volume = _volume()
        self.volumes.append(volume)
        return volume


@pytest.fixture
def harness():
    return _Harness()


def test_server_env():
    env = server_env({"API_KEY": "k"}, DEMO.servers[1])
    assert env == {
        "API_KEY": "k",
        "MCP_COMMAND": "beta-mcp",
        "MCP_NAMED_SERVERS": "{}",
        "MCP_ARGS": json.dumps(["--verbose"]),
    }
    assert "MCP_ARGS" not in server_env({}, DEMO.servers[0])


# ---------------------------------------------------------------------------
# provision
# ---------------------------------------------------------------------------


class TestProvision:
    async def test_single_enabled_server(self, harness):
        endpoints = await harness.groups.provision({"apiKey": "k"}, ["beta"], DEMO, _context())

        [ep] = endpoints
        assert ep.server_id == "beta"
        assert ep.container_id == "ctr-1"
        assert ep.endpoint.startswith("http://127.0.0.1:")
        assert ep.endpoint.endswith("/mcp")

        [sub] = harness.backend.submissions
        assert sub.image == DEMO.default_image
        assert sub.network == "bridge"
        assert sub.env["API_KEY"] == "k"
        assert sub.env["MCP_COMMAND"] == "beta-mcp"
        assert sub.env["MCP_ARGS"] == '["--verbose"]'
        assert sub.timeout_seconds is None

        harness.registry.issue_token.assert_awaited_once_with("run-1", ["group-1/beta"])
        harness.discovery.discover.assert_awaited_once_with(ep.endpoint)
        kwargs = harness.registry.register.call_args.kwargs
        assert kwargs["node_id"] == "group-1/beta"
        assert kwargs["server_id"] == "beta"
        assert kwargs["server_name"] == "Beta"
        assert kwargs["token"] == "run-token"
        assert kwargs["tools"] == [ToolDescriptor("lookup")]
        assert harness.volumes == []

    async def test_endpoints_follow_template_order(self, harness):
        endpoints = await harness.groups.provision(
            {"apiKey": "k"}, ["beta", "alpha"], DEMO, _context()
        )
        assert [ep.server_id for ep in endpoints] == ["alpha", "beta"]
        token_nodes = harness.registry.issue_token.call_args.args[1]
        assert token_nodes == ["group-1/alpha", "group-1/beta"]

    async def test_zero_servers_provisions_nothing(self, harness):
        assert await harness.groups.provision({"apiKey": "k"}, [], DEMO, _context()) == []
        assert harness.backend.submissions == []
        assert harness.volumes == []
        harness.registry.issue_token.assert_not_awaited()

    async def test_credentials_required(self, harness):
        with pytest.raises(ConfigurationError, match="Credentials are required"):
            await harness.groups.provision({}, ["alpha"], DEMO, _context())
        assert harness.backend.submissions == []

    async def test_missing_credential_field(self, harness):
        with pytest.raises(ConfigurationError, match="apiKey"):
            await harness.groups.provision({"other": "x"}, ["alpha"], DEMO, _context())
        assert harness.backend.submissions == []

    async def test_aws_files_volume(self, harness):
        await harness.groups.provision(AWS_CREDENTIAL, ["alpha"], AWS_LIKE, _context())

        [volume] = harness.volumes
        files = volume.initialize.call_args.args[0]
        assert set(files) == {"credentials", "config"}
        volume.get_mount_config.assert_called_once_with("/root/.aws", read_only=True)
        [sub] = harness.backend.submissions
        assert [m.target for m in sub.mounts] == ["/root/.aws"]

    async def test_start_failure_reclaims_everything(self):
        harness = _Harness(FakeBackend(logs="boom", container_state="terminated"))

        with pytest.raises(ContainerError):
            await harness.groups.provision(
                AWS_CREDENTIAL, ["alpha", "beta"], AWS_LIKE, _context()
            )

        assert len(harness.backend.cleanups) == 2
        harness.volumes[0].cleanup.assert_awaited_once()
        harness.registry.issue_token.assert_not_awaited()

    async def test_token_failure_tears_group_down(self, harness):
        harness.registry.issue_token.side_effect = ServiceError("backend down", status=502)

        with pytest.raises(ServiceError):
            await harness.groups.provision({"apiKey": "k"}, ["alpha", "beta"], DEMO, _context())

        assert len(harness.backend.cleanups) == 2
        # Already gone; a later teardown is a no-op
        await harness.groups.teardown("group-1")
        assert len(harness.backend.cleanups) == 2

    async def test_registration_failure_is_contained(self, harness):
        async def register(**kwargs):
            if kwargs["server_id"] == "alpha":
                raise ServiceError("rejected", status=400)

        harness.registry.register.side_effect = register

        endpoints = await harness.groups.provision(
            {"apiKey": "k"}, ["alpha", "beta"], DEMO, _context()
        )

        assert [ep.server_id for ep in endpoints] == ["beta"]
        assert len(harness.backend.cleanups) == 1

    async def test_discovery_failure_registers_empty_tool_list(self, harness):
        harness.discovery.discover.return_value = []

        endpoints = await harness.groups.provision({"apiKey": "k"}, ["alpha"], DEMO, _context())

        assert len(endpoints) == 1
        assert harness.registry.register.call_args.kwargs["tools"] == []

    async def test_reprovision_replaces_previous_instance(self, harness):
        await harness.groups.provision({"apiKey": "k"}, ["alpha"], DEMO, _context())
        await harness.groups.provision({"apiKey": "k"}, ["alpha"], DEMO, _context())

        assert len(harness.backend.submissions) == 2
        assert len(harness.backend.cleanups) == 1


# ---------------------------------------------------------------------------
# teardown
# ---------------------------------------------------------------------------


class TestTeardown:
    async def test_teardown_stops_siblings_and_volume(self, harness):
        await harness.groups.provision(AWS_CREDENTIAL, ["alpha", "beta"], AWS_LIKE, _context())

        await harness.groups.teardown("group-1")

        names = sorted(s.name for s in harness.backend.submissions)
        assert sorted(harness.backend.cleanups) == names
        harness.volumes[0].cleanup.assert_awaited_once()

    async def test_teardown_unknown_group(self, harness):
        await harness.groups.teardown("nope")
        assert harness.backend.cleanups == []

    async def test_teardown_all(self, harness):
        await harness.groups.provision({"apiKey": "k"}, ["alpha"], DEMO, _context("g1"))
        await harness.groups.provision({"apiKey": "k"}, ["beta"], DEMO, _context("g2"))

        await harness.groups.teardown_all()

        assert len(harness.backend.cleanups) == 2
        await harness.groups.teardown_all()
        assert len(harness.backend.cleanups) == 2
