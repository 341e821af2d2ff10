"""Tool registry client — internal backend endpoints for MCP registration.

Two calls, both authenticated with the shared ``x-internal-token`` header:

  POST <internal>/generate-token     {runId, allowedNodeIds} → {token}
  POST <internal>/tool-registration  {runId, nodeId, serverName, serverId, transport,
                                      endpoint, containerId, tools}

Once a run token has been issued it is also sent as ``Authorization: Bearer``.
Non-2xx responses and transport failures raise ServiceError.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import aiohttp

from drydock.config import Settings, get_settings
from drydock.errors import ServiceError
from drydock.logger import logger
from drydock.types import ToolDescriptor


class ToolRegistryClient:
    def __init__(self, settings: Settings | None = None, *, base_url: str | None = None) -> None:
        self._settings = settings or get_settings()
        self.base_url = (base_url or self._settings.internal_api_url).rstrip("/")

    def _headers(self, token: str | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        secret = self._settings.backend.internal_token
        if secret is not None:
            headers["x-internal-token"] = secret.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(self, path: str, payload: dict[str, Any], token: str | None = None) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        timeout = aiohttp.ClientTimeout(total=self._settings.backend.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload, headers=self._headers(token)) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        body = await resp.text()
                        raise ServiceError(f"POST {path} failed", status=resp.status, body=body)
                    try:
                        return await resp.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        return None  # 2xx but no JSON body
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise ServiceError(f"POST {path} failed: {exc}", details={"url": url}) from exc

    async def issue_token(self, run_id: str, node_ids: Sequence[str]) -> str:
        """Issue one run-scoped token covering every sibling node id."""
        payload = {"runId": run_id, "allowedNodeIds": list(node_ids)}
        data = await self._post("generate-token", payload)
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise ServiceError("Token response did not contain a token", details={"run_id": run_id})
        logger.debug("Issued internal token", run_id=run_id, nodes=len(node_ids))
        return token

    async def register(
        self,
        *,
        run_id: str,
        node_id: str,
        server_name: str,
        server_id: str,
        endpoint: str,
        container_id: str,
        tools: Sequence[ToolDescriptor],
        transport: str = "http",
        token: str | None = None,
    ) -> None:
        payload = {
            "runId": run_id,
            "nodeId": node_id,
            "serverName": server_name,
            "serverId": server_id,
            "transport": transport,
            "endpoint": endpoint,
            "containerId": container_id,
            "tools": [t.to_dict() for t in tools],
        }
        await self._post("tool-registration", payload, token)
        logger.info("Registered tool server", node_id=node_id, endpoint=endpoint, tools=len(tools))
