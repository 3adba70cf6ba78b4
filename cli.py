"""Pincer CLI.

Commands:
    pincer gateway                         - Run the gateway server
    pincer agent -m "text"                 - Run one agent turn over WebSocket
    pincer message send --to ID --message  - Append a message to a session
    pincer message sessions                - List sessions
    pincer pairing list                    - List pairing entries
    pincer pairing approve CHANNEL USER    - Approve a pending pairing
"""
from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp
import click
import websockets

from config import load_config
from utils.logger import setup_logger

DEFAULT_PORT = 18789


def _ws_url(port: int) -> str:
    return f"ws://127.0.0.1:{port}"


def _http_url(port: int, path: str) -> str:
    return f"http://127.0.0.1:{port}{path}"


def _auth_headers(token: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _format_ms(ms: Optional[int]) -> str:
    if not ms:
        return "N/A"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


class GatewayClient:
    """Minimal WebSocket client for the gateway protocol."""

    def __init__(self, port: int, token: Optional[str] = None):
        self.url = _ws_url(port)
        self.token = token
        self.websocket = None
        self._req_seq = 0

    def _next_id(self) -> str:
        self._req_seq += 1
        return f"req-{self._req_seq}"

    async def __aenter__(self) -> "GatewayClient":
        self.websocket = await websockets.connect(self.url)
        response = await self.request("connect", {"auth": {"token": self.token}} if self.token else {})
        if not response.get("ok"):
            await self.websocket.close()
            raise click.ClickException(f"Authentication failed: {response.get('error')}")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.websocket.close()

    async def send_request(self, method: str, params: Dict[str, Any]) -> str:
        request_id = self._next_id()
        await self.websocket.send(json.dumps({
            "type": "req",
            "id": request_id,
            "method": method,
            "params": params,
        }, ensure_ascii=False))
        return request_id

    async def recv(self) -> Dict[str, Any]:
        return json.loads(await self.websocket.recv())

    async def request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Send a request and wait for its response, skipping events."""
        request_id = await self.send_request(method, params)
        while True:
            frame = await self.recv()
            if frame.get("type") == "res" and frame.get("id") == request_id:
                return frame


async def _http_get(url: str, token: Optional[str]) -> Dict[str, Any]:
    async with aiohttp.ClientSession() as session:
        async with session.get(url, headers=_auth_headers(token)) as resp:
            if resp.status != 200:
                raise click.ClickException(f"HTTP {resp.status}: {await resp.text()}")
            return await resp.json()


async def _http_post(url: str, body: Dict[str, Any], token: Optional[str]) -> Dict[str, Any]:
    async with aiohttp.ClientSession() as session:
        async with session.post(url, json=body, headers=_auth_headers(token)) as resp:
            data = await resp.json(content_type=None)
            if resp.status not in (200, 404):
                raise click.ClickException(f"HTTP {resp.status}: {data}")
            return data


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """Pincer - personal AI assistant gateway."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
    elif ctx.invoked_subcommand != "gateway":
        setup_logger(level="WARNING", to_files=False)


# =============================================================================
# Server
# =============================================================================


@main.command()
@click.option("-p", "--port", type=int, default=None, help="Port to listen on")
@click.option("--bind", type=click.Choice(["loopback", "all"]), default=None, help="Bind address")
@click.option("--no-feishu", is_flag=True, help="Disable the Feishu channel")
@click.option("--no-discord", is_flag=True, help="Disable the Discord channel")
def gateway(port: Optional[int], bind: Optional[str], no_feishu: bool, no_discord: bool) -> None:
    """Start the gateway server."""
    import uvicorn

    from gateway.app import create_app

    config = load_config()
    if port:
        config.gateway.port = port
    if bind:
        config.gateway.bind = bind
    if no_feishu:
        config.channels.feishu.enabled = False
    if no_discord:
        config.channels.discord.enabled = False

    setup_logger(log_dir=config.system.log_dir, level=config.system.log_level)
    app = create_app(config)

    click.echo(f"Gateway ready on ws://{config.gateway.host}:{config.gateway.port} 🦞", err=True)
    if config.channels.feishu.enabled:
        click.echo("Feishu channel: enabled (webhook at /channels/feishu/webhook)", err=True)
    if config.channels.discord.enabled and config.channels.discord.token:
        click.echo("Discord channel: enabled", err=True)

    uvicorn.run(app, host=config.gateway.host, port=config.gateway.port, log_config=None)


# =============================================================================
# Agent
# =============================================================================


@main.command()
@click.option("-m", "--message", required=True, help="Message to send")
@click.option("-s", "--session", "session_id", default=None, help="Session ID to use")
@click.option("--port", type=int, default=DEFAULT_PORT, help="Gateway port")
@click.option("--token", default=None, help="Gateway auth token")
def agent(message: str, session_id: Optional[str], port: int, token: Optional[str]) -> None:
    """Send a message to the agent and stream the reply."""

    async def _run() -> int:
        async with GatewayClient(port, token) as client:
            params: Dict[str, Any] = {"message": message, "stream": True}
            if session_id:
                params["sessionId"] = session_id
            response = await client.request("agent", params)
            if not response.get("ok"):
                click.echo(f"[error] {response.get('error')}", err=True)
                return 1

            run_id = response["payload"]["runId"]
            while True:
                frame = await client.recv()
                if frame.get("type") != "event" or frame.get("event") != "agent":
                    continue
                ev = frame.get("payload") or {}
                if ev.get("runId") != run_id:
                    continue

                if ev.get("type") == "delta":
                    click.echo(ev.get("delta", ""), nl=False)
                elif ev.get("type") == "tool_call":
                    click.echo(f"\n[tool] {ev.get('toolName')}", err=True)
                elif ev.get("type") == "error":
                    click.echo(f"\n[error] {ev.get('error')}", err=True)
                    if ev.get("stopReason"):
                        return 1
                elif ev.get("type") == "done":
                    click.echo()
                    usage = ev.get("usage")
                    if usage:
                        click.echo(
                            f"[usage] {usage.get('inputTokens', 0)} input, "
                            f"{usage.get('outputTokens', 0)} output tokens",
                            err=True,
                        )
                    return 0 if ev.get("stopReason") != "error" else 1

    try:
        sys.exit(asyncio.run(_run()))
    except OSError as e:
        raise click.ClickException(f"Connection error: {e}")


# =============================================================================
# Messages
# =============================================================================


@main.group()
def message() -> None:
    """Message operations."""


@message.command("send")
@click.option("--to", "session_id", required=True, help="Session ID")
@click.option("--message", "text", required=True, help="Message text")
@click.option("--port", type=int, default=DEFAULT_PORT, help="Gateway port")
@click.option("--token", default=None, help="Gateway auth token")
def message_send(session_id: str, text: str, port: int, token: Optional[str]) -> None:
    """Append a raw message to a session (no agent run)."""

    async def _send() -> Dict[str, Any]:
        async with GatewayClient(port, token) as client:
            return await client.request("send", {"sessionId": session_id, "message": text})

    try:
        response = asyncio.run(_send())
    except OSError as e:
        raise click.ClickException(f"Connection error: {e}")

    if not response.get("ok"):
        raise click.ClickException(f"Failed: {response.get('error')}")
    click.echo(f"Message sent ({response['payload']['messageId']}).")


@message.command("sessions")
@click.option("--port", type=int, default=DEFAULT_PORT, help="Gateway port")
@click.option("--token", default=None, help="Gateway auth token")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def message_sessions(port: int, token: Optional[str], as_json: bool) -> None:
    """List all sessions."""
    data = asyncio.run(_http_get(_http_url(port, "/api/sessions"), token))
    sessions = data.get("sessions", [])
    if as_json:
        click.echo(json.dumps(sessions, indent=2, ensure_ascii=False))
        return
    if not sessions:
        click.echo("No sessions.")
        return
    for s in sessions:
        click.echo(
            f"{s['id'][:8]} | {s.get('name') or '(unnamed)'} | "
            f"{s.get('messageCount', 0)} msgs | {_format_ms(s.get('updatedAt'))}"
        )


# =============================================================================
# Pairing
# =============================================================================


@main.group()
def pairing() -> None:
    """Manage channel pairing."""


@pairing.command("list")
@click.option("--port", type=int, default=DEFAULT_PORT, help="Gateway port")
@click.option("--token", default=None, help="Gateway auth token")
def pairing_list(port: int, token: Optional[str]) -> None:
    """List pairing entries."""
    data = asyncio.run(_http_get(_http_url(port, "/api/pairing"), token))
    entries = data.get("entries", [])
    if not entries:
        click.echo("No pairing entries.")
        return
    for entry in entries:
        status = "approved" if entry.get("approved") else "pending"
        click.echo(
            f"{entry['channel']}:{entry['userId']} | {status} | "
            f"code {entry.get('pairingCode', '-')} | {_format_ms(entry.get('createdAt'))}"
        )


@pairing.command("approve")
@click.argument("channel")
@click.argument("user_id")
@click.option("--port", type=int, default=DEFAULT_PORT, help="Gateway port")
@click.option("--token", default=None, help="Gateway auth token")
def pairing_approve(channel: str, user_id: str, port: int, token: Optional[str]) -> None:
    """Approve a pending pairing request."""
    data = asyncio.run(_http_post(
        _http_url(port, "/api/pairing/approve"),
        {"channel": channel, "userId": user_id},
        token,
    ))
    if not data.get("ok"):
        raise click.ClickException(f"No pairing entry for {channel}:{user_id}")
    click.echo(f"Approved {channel}:{user_id}")


if __name__ == "__main__":
    main()
