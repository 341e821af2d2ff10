"""Tool discovery — MCP handshake against a freshly started tool server.

Servers take a while to boot, so discovery retries with capped exponential
backoff. Every attempt opens a fresh streamable-HTTP connection and closes
it on every outcome; sessions are never pooled or reused.

Discovery is deliberately soft: after the last attempt it logs an error and
returns an empty list instead of raising.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.types import Implementation

from drydock import __version__
from drydock.config import Settings, get_settings
from drydock.logger import logger
from drydock.types import ToolDescriptor

SessionFactory = Callable[[str], contextlib.AbstractAsyncContextManager[Any]]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay after failed *attempt* (1-based): ``min(base * 2**(attempt-1), cap)``."""
    return min(base * 2 ** (attempt - 1), cap)


class ToolDiscoveryClient:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: SessionFactory | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory or self._open_session
        self._sleep = sleep

    @contextlib.asynccontextmanager
    async def _open_session(self, endpoint: str) -> AsyncIterator[ClientSession]:
        client_info = Implementation(name=self._settings.discovery.client_name, version=__version__)
        async with streamablehttp_client(endpoint) as (read, write, _):
            async with ClientSession(read, write, client_info=client_info) as session:
                await session.initialize()
                yield session

    async def list_tools_once(self, endpoint: str) -> list[ToolDescriptor]:
        """One handshake + ``tools/list``. Raises on any failure."""
        async with self._session_factory(endpoint) as session:
            result = await session.list_tools()
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description,
                # Schemas pass through untouched
                input_schema=tool.inputSchema,
            )
            for tool in result.tools
        ]

    async def discover(self, endpoint: str) -> list[ToolDescriptor]:
        cfg = self._settings.discovery
        for attempt in range(1, cfg.max_attempts + 1):
            try:
                tools = await self.list_tools_once(endpoint)
                logger.info(
                    "Discovered tools", endpoint=endpoint, count=len(tools), attempt=attempt
                )
                return tools
            except Exception as exc:
                logger.debug(
                    "Tool discovery attempt failed",
                    endpoint=endpoint,
                    attempt=attempt,
                    err=str(exc),
                )
            if attempt < cfg.max_attempts:
                await self._sleep(backoff_delay(attempt, cfg.base_delay, cfg.max_delay))

        logger.error("Tool discovery gave up", endpoint=endpoint, attempts=cfg.max_attempts)
        return []
