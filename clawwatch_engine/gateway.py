"""
Gateway RPC client — ``POST <gateway>/tools/invoke``.

Request:  {"tool": <name>, "args": {...}} with ``Authorization: Bearer <token>``
Response: {"ok": true, "result": ...} or {"ok": false, "error": ...}

Non-2xx responses, transport failures and ``ok: false`` bodies all raise
GatewayRPCError; callers log and move on to their next tick.
"""
import logging
import time
from typing import Any

import httpx

from clawwatch_engine.exceptions import GatewayRPCError
from clawwatch_engine.metrics import METRICS, CollectorMetrics

logger = logging.getLogger("clawwatch.engine.gateway")


class GatewayClient:
    """Thin async client for gateway tool invocation."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: float = 30.0,
        metrics: CollectorMetrics | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.metrics = metrics or METRICS
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def invoke(self, tool: str, args: dict[str, Any] | None = None) -> Any:
        """Invoke a gateway tool and return its ``result`` payload."""
        start = time.monotonic()
        status = "error"
        try:
            try:
                resp = await self._client.post("/tools/invoke", json={"tool": tool, "args": args or {}})
            except httpx.HTTPError as e:
                raise GatewayRPCError(f"{tool}: {type(e).__name__}: {e}") from e

            if not resp.is_success:
                raise GatewayRPCError(
                    f"{tool}: HTTP {resp.status_code}: {resp.text[:200]}",
                    status_code=resp.status_code,
                )

            try:
                data = resp.json()
            except ValueError as e:
                raise GatewayRPCError(f"{tool}: response is not JSON", status_code=resp.status_code) from e

            if not isinstance(data, dict) or not data.get("ok"):
                error = data.get("error") if isinstance(data, dict) else None
                raise GatewayRPCError(f"{tool}: {error or 'unknown error'}", status_code=resp.status_code)

            status = "success"
            return data.get("result")
        finally:
            self.metrics.rpc_duration.labels(tool=tool, status=status).observe(time.monotonic() - start)

    async def close(self) -> None:
        await self._client.aclose()
