"""HTTP gateway in front of the dispatcher."""

from relay_agent.gateway.http_server import GatewayHttpServer

__all__ = ["GatewayHttpServer"]
