"""HTTP control surface mirroring the session and pairing gateway methods."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from gateway.models import WireModel
from gateway.protocol import RequestType
from gateway.server import GatewayServer

from .dispatcher import dispatch_gateway_method, get_gateway_server, require_token

router = APIRouter(dependencies=[Depends(require_token)])


class PairingApproveBody(WireModel):
    channel: str
    user_id: str


@router.get("/sessions")
async def list_sessions(gateway_server: GatewayServer = Depends(get_gateway_server)):
    return await dispatch_gateway_method(gateway_server, RequestType.SESSIONS_LIST)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, gateway_server: GatewayServer = Depends(get_gateway_server)):
    payload = await dispatch_gateway_method(
        gateway_server, RequestType.SESSIONS_GET, {"sessionId": session_id}
    )
    return payload["session"]


@router.get("/pairing")
async def list_pairing(gateway_server: GatewayServer = Depends(get_gateway_server)):
    return await dispatch_gateway_method(gateway_server, RequestType.PAIRING_LIST)


@router.post("/pairing/approve")
async def approve_pairing(body: PairingApproveBody, gateway_server: GatewayServer = Depends(get_gateway_server)):
    response = await gateway_server.handle_http_request(RequestType.PAIRING_APPROVE, body.to_wire())
    return JSONResponse(status_code=200 if response.ok else 404, content={"ok": response.ok})
