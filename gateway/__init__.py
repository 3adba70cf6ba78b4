"""
Gateway: wire protocol, connection registry, session store and method router.
"""
from .agent_runner import AgentRunner, StubAgentRunner
from .connection import Connection, ConnectionManager
from .protocol import EventType, GatewayProtocol, RequestType
from .server import GatewayServer
from .session_store import SessionStore

__all__ = [
    'AgentRunner',
    'Connection',
    'ConnectionManager',
    'EventType',
    'GatewayProtocol',
    'GatewayServer',
    'RequestType',
    'SessionStore',
    'StubAgentRunner',
]
