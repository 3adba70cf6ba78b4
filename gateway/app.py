from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from loguru import logger

from channels import ChannelRegistry, DiscordChannel, FeishuChannel
from config import PincerConfig

from .agent_runner import AgentRunner
from .http.routes import router as control_router
from .protocol import SERVER_VERSION
from .server import GatewayServer
from .session_store import SessionStore


def build_channels(config: PincerConfig, sessions: SessionStore, agent_runner: AgentRunner) -> ChannelRegistry:
    registry = ChannelRegistry()
    discord_config = config.channels.discord
    if discord_config.enabled and discord_config.token:
        registry.register(DiscordChannel(discord_config, sessions, agent_runner))
    if config.channels.feishu.enabled:
        registry.register(FeishuChannel(config.channels.feishu, sessions, agent_runner))
    return registry


def create_app(
    config: PincerConfig,
    agent_runner: Optional[AgentRunner] = None,
    sessions: Optional[SessionStore] = None,
    channels: Optional[ChannelRegistry] = None,
) -> FastAPI:
    """Assemble the gateway: store, runner, router, channels and transport."""
    sessions = sessions or SessionStore(config.storage.data_dir)
    if agent_runner is None:
        from agent import build_agent_runner

        agent_runner = build_agent_runner(config, sessions)
    if channels is None:
        channels = build_channels(config, sessions, agent_runner)

    gateway_server = GatewayServer(sessions, agent_runner, token=config.gateway.token)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await gateway_server.start()
        await channels.start_all()
        try:
            yield
        finally:
            logger.info("Cleaning up resources...")
            await channels.stop_all()
            await gateway_server.stop()
            closer = getattr(agent_runner, "close", None)
            if closer is not None:
                await closer()

    app = FastAPI(
        title="Pincer Gateway",
        description="Personal-assistant gateway",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.gateway = gateway_server
    app.state.channels = channels

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": "error",
                "error": {"code": "http_error", "message": str(exc.detail)},
            },
        )

    async def gateway_websocket_endpoint(websocket: WebSocket):
        await websocket.accept()
        connection = await gateway_server.open_connection(websocket)
        try:
            await gateway_server.handle_connection(websocket, connection)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Gateway WebSocket error: {e}")

    app.add_api_websocket_route("/", gateway_websocket_endpoint)
    app.add_api_websocket_route("/ws", gateway_websocket_endpoint)

    @app.get("/health")
    async def health_check():
        response = await gateway_server.handle_http_request("health")
        payload = dict(response.payload or {})
        payload["channels"] = channels.get_status_all()
        return payload

    app.include_router(control_router, prefix="/api", tags=["control"])
    channels.mount_all(app)

    return app
