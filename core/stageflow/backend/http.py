"""
HTTP node backend.

Posts each node to the execution server's ``/api/execute-node`` endpoint:

    request   {type, payload, inputData, nodeId, runId, config, apiKeys}
    success   200 {"ok": true, "result": {...}}
    failure   4xx/5xx {"ok": false, "error": "...", "details": {...}}

No retries: a failed request fails the node.
"""

import logging
from typing import Any

import httpx

from stageflow.backend.protocol import NodeExecutionRequest
from stageflow.graph.errors import BackendError

logger = logging.getLogger(__name__)

EXECUTE_NODE_PATH = "/api/execute-node"


class HttpNodeBackend:
    """
    NodeBackend that talks to an execution server over HTTP.

    Example:
        async with HttpNodeBackend("http://localhost:3001", api_keys={"elevenlabs": "..."}) as b:
            result = await b.execute(request)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        api_keys: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_keys = dict(api_keys or {})
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "HttpNodeBackend":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def execute(self, request: NodeExecutionRequest) -> dict[str, Any]:
        body = request.to_wire()
        body["apiKeys"] = self.api_keys

        logger.debug(f"POST {EXECUTE_NODE_PATH} type={request.type} node={request.node_id}")
        try:
            response = await self._client.post(EXECUTE_NODE_PATH, json=body)
        except httpx.TimeoutException as e:
            raise BackendError(f"Node {request.node_id} timed out: {e}") from e
        except httpx.RequestError as e:
            raise BackendError(f"Network error executing {request.node_id}: {e}") from e

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            details = data.get("details") if isinstance(data, dict) else response.text
            raise BackendError(
                error or f"HTTP {response.status_code}",
                status_code=response.status_code,
                details=details,
            )

        if not isinstance(data, dict):
            raise BackendError(
                "Backend returned a non-JSON response", status_code=response.status_code
            )
        if data.get("ok") is False:
            raise BackendError(
                data.get("error") or "Node execution failed",
                status_code=response.status_code,
                details=data.get("details"),
            )

        result = data.get("result")
        if result is None:
            # Older backends wrap the result in "data".
            result = data.get("data", data)
        if not isinstance(result, dict):
            # Wrap scalar results so routing always sees a mapping.
            result = {"result": result}
        return result
