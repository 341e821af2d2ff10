"""Tests for MCP tool discovery with capped exponential backoff."""

from __future__ import annotations

import contextlib
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from conftest import make_settings

from drydock.config import DiscoveryConfig
from drydock.groups.discovery import ToolDiscoveryClient, backoff_delay
from drydock.types import ToolDescriptor

ENDPOINT = "http://10.0.0.5:41000/mcp"

NESTED_SCHEMA = {
    "type": "object",
    "properties": {
        "filter": {"anyOf": [{"type": "string"}, {"type": "null"}], "default": None},
        "limits": {"type": "object", "properties": {"max": {"type": "integer"}}},
    },
    "required": [],
}


def _tools_result(*tools):
    return SimpleNamespace(tools=list(tools))


def _tool(name, description=None, schema=None):
    return SimpleNamespace(name=name, description=description, inputSchema=schema or {})


class _Flaky:
    """Session factory that fails ``failures`` times, then serves ``result``."""

    def __init__(self, failures: int, result=None):
        self.failures = failures
        self.result = result or _tools_result()
        self.calls: list[str] = []
        self.closed = 0

    @contextlib.asynccontextmanager
    async def __call__(self, endpoint):
        self.calls.append(endpoint)
        try:
            if len(self.calls) <= self.failures:
                raise ConnectionRefusedError("connection refused")
            yield SimpleNamespace(list_tools=AsyncMock(return_value=self.result))
        finally:
            self.closed += 1


def _client(factory, *, max_attempts=4, base_delay=1.0, max_delay=5.0):
    sleeps: list[float] = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    settings = make_settings(
        discovery=DiscoveryConfig(
            max_attempts=max_attempts, base_delay=base_delay, max_delay=max_delay
        )
    )
    return ToolDiscoveryClient(settings, session_factory=factory, sleep=fake_sleep), sleeps


class TestBackoff:
    @pytest.mark.parametrize(
        ("attempt", "expected"), [(1, 1.0), (2, 2.0), (3, 4.0), (4, 5.0), (10, 5.0)]
    )
    def test_capped_exponential(self, attempt, expected):
        assert backoff_delay(attempt, 1.0, 5.0) == expected


class TestDiscover:
    async def test_first_attempt_succeeds(self):
        tool = _tool("lookup_events", "Query CloudTrail", NESTED_SCHEMA)
        factory = _Flaky(0, _tools_result(tool))
        client, sleeps = _client(factory)

        tools = await client.discover(ENDPOINT)

        assert tools == [ToolDescriptor("lookup_events", "Query CloudTrail", NESTED_SCHEMA)]
        assert sleeps == []
        assert factory.calls == [ENDPOINT]

    async def test_schema_passes_through_verbatim(self):
        factory = _Flaky(0, _tools_result(_tool("t", schema=NESTED_SCHEMA)))
        client, _ = _client(factory)

        [tool] = await client.discover(ENDPOINT)

        assert tool.to_dict()["inputSchema"] == NESTED_SCHEMA

    async def test_retries_until_server_is_up(self):
        factory = _Flaky(2, _tools_result(_tool("a"), _tool("b")))
        client, sleeps = _client(factory)

        tools = await client.discover(ENDPOINT)

        assert [t.name for t in tools] == ["a", "b"]
        assert sleeps == [1.0, 2.0]
        # A fresh session per attempt, each one closed
        assert len(factory.calls) == 3
        assert factory.closed == 3

    async def test_gives_up_with_empty_list(self):
        factory = _Flaky(failures=100)
        client, sleeps = _client(factory, max_attempts=5)

        assert await client.discover(ENDPOINT) == []
        assert len(factory.calls) == 5
        # No sleep after the final attempt
        assert sleeps == [1.0, 2.0, 4.0, 5.0]

    async def test_factory_that_raises_immediately(self):
        calls = []

        def broken(endpoint):
            calls.append(endpoint)
            raise OSError("no route to host")

        client, sleeps = _client(broken, max_attempts=3, base_delay=0.5)

        assert await client.discover(ENDPOINT) == []
        assert len(calls) == 3
        assert sleeps == [0.5, 1.0]

    async def test_list_tools_once_raises(self):
        client, _ = _client(_Flaky(failures=1))
        with pytest.raises(ConnectionRefusedError):
            await client.list_tools_once(ENDPOINT)
