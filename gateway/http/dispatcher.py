from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request

from gateway.protocol import RequestType
from gateway.server import GatewayServer


def get_gateway_server(request: Request) -> GatewayServer:
    gateway_server = getattr(request.app.state, "gateway", None)
    if not gateway_server:
        raise HTTPException(status_code=503, detail="Gateway server not initialized")
    return gateway_server


def require_token(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    gateway_server = get_gateway_server(request)
    if gateway_server.token and authorization != f"Bearer {gateway_server.token}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def _http_status_from_error(error: str | None) -> int:
    msg = (error or "").lower()
    if "not found" in msg:
        return 404
    if "not authenticated" in msg or "unauthorized" in msg or "invalid token" in msg:
        return 401
    if "not initialized" in msg:
        return 503
    return 400


async def dispatch_gateway_method(
    gateway_server: GatewayServer,
    method: RequestType,
    params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    response = await gateway_server.handle_http_request(method, params or {})

    if not response.ok:
        raise HTTPException(
            status_code=_http_status_from_error(response.error),
            detail=response.error or "Gateway request failed",
        )
    return response.payload or {}
