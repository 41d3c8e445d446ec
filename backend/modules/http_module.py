"""HTTP module implementation.

Dispatches a module call to a remote module service:

    POST {base_url}/{operation}   body = params (JSON)

The service answers either with the dispatch envelope
``{"success": bool, "output"|"data": ..., "error": str}`` or with any
JSON document, which is taken as the output of a successful call.
"""

from typing import Any, Dict, Optional

import httpx
import structlog

from modules.base_module import BaseModule, ModuleCall, ModuleResponse

logger = structlog.get_logger(__name__)


class HttpModule(BaseModule):
    """Call operations on a module service over HTTP.

    Config:
        base_url: Root URL of the module service (required)
        headers: Extra headers sent with every call
        method: HTTP method used for operations (default: POST)
    """

    description = "Module service reachable over HTTP"

    def __init__(
        self,
        name: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        method: str = "POST",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.method = method.upper()
        self._transport = transport

    async def call(self, request: ModuleCall) -> ModuleResponse:
        url = f"{self.base_url}/{request.operation.lstrip('/')}"
        kwargs: Dict[str, Any] = {"method": self.method, "url": url, "headers": dict(self.headers)}
        if self.method in ("POST", "PUT", "PATCH"):
            kwargs["json"] = request.params
        else:
            kwargs["params"] = request.params
        if request.execution_id:
            kwargs["headers"]["X-Execution-ID"] = request.execution_id

        # The step executor owns the timeout, no client-side limit here
        async with httpx.AsyncClient(transport=self._transport, timeout=None) as client:
            response = await client.request(**kwargs)

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        if response.status_code >= 400:
            error = payload.get("error") if isinstance(payload, dict) else None
            return ModuleResponse(
                success=False,
                output=payload,
                error=error or f"HTTP {response.status_code}",
                metadata={"status_code": response.status_code},
            )

        if isinstance(payload, dict) and "success" in payload:
            return ModuleResponse(
                success=bool(payload["success"]),
                output=payload.get("output", payload.get("data")),
                error=payload.get("error"),
                metadata={"status_code": response.status_code},
            )

        return ModuleResponse(success=True, output=payload, metadata={"status_code": response.status_code})
