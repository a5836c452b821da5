"""MCP (Model Context Protocol) stdio client and server manager."""

from gmn_agent.mcp.client import MCPClient
from gmn_agent.mcp.manager import MCPManager, MCPServerStatus

__all__ = [
    "MCPClient",
    "MCPManager",
    "MCPServerStatus",
]
