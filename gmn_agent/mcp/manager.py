"""Connection management for multiple named MCP servers."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

from gmn_agent.config import Config, MCPServerConfig, get_config
from gmn_agent.exceptions import ConfigurationError, GmnAgentError, MCPConnectionError
from gmn_agent.logging import get_logger
from gmn_agent.mcp.client import DEFAULT_PROTOCOL_VERSION, MCPClient

log = get_logger(__name__)


@dataclass
class MCPServerStatus:
    """Status of a configured MCP server."""

    name: str
    connected: bool = False
    command: str = ""
    tool_count: int = 0
    tools: list[str] = field(default_factory=list)
    error: str = ""


class MCPManager:
    """Connects, tracks and disconnects configured MCP servers."""

    def __init__(
        self,
        servers: dict[str, MCPServerConfig] | None = None,
        init_timeout: float = 30.0,
        client_name: str = "gmn-agent",
        client_version: str = "0.1.0",
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
        on_update: Callable[[list[MCPServerStatus]], None] | None = None,
    ):
        self._servers: dict[str, MCPServerConfig] = dict(servers or {})
        self._clients: dict[str, MCPClient] = {}
        self._errors: dict[str, str] = {}
        self.init_timeout = init_timeout
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.on_update = on_update

    @classmethod
    def from_config(cls, config: Config | None = None) -> "MCPManager":
        cfg = config or get_config()
        return cls(
            servers=cfg.mcp_servers,
            init_timeout=cfg.mcp.init_timeout,
            client_name=cfg.mcp.client_name,
            client_version=cfg.mcp.client_version,
            protocol_version=cfg.mcp.protocol_version,
        )

    def _notify_update(self) -> None:
        if not self.on_update:
            return
        try:
            self.on_update(self.list_servers())
        except Exception as e:
            log.warning("MCP status callback failed", error=str(e))

    def list_servers(self) -> list[MCPServerStatus]:
        """Return every configured server with its connection status."""
        statuses: list[MCPServerStatus] = []
        for name, server in self._servers.items():
            status = MCPServerStatus(name=name, command=server.command)
            client = self._clients.get(name)
            if client is not None:
                status.connected = True
                status.tool_count = len(client.tools)
                status.tools = [tool.name for tool in client.tools]
            status.error = self._errors.get(name, "")
            statuses.append(status)
        return statuses

    def clients(self) -> list[tuple[str, MCPClient]]:
        """Connected clients in connection order."""
        return list(self._clients.items())

    def get_client(self, name: str) -> MCPClient | None:
        return self._clients.get(name)

    async def connect_server(self, name: str) -> MCPClient:
        """Connect (or reconnect) one configured server."""
        server = self._servers.get(name)
        if server is None:
            raise ConfigurationError(f"MCP server {name!r} not found in config")

        existing = self._clients.pop(name, None)
        self._errors.pop(name, None)
        if existing is not None:
            await existing.close()

        if not server.command:
            message = "no command configured (only stdio servers are supported)"
            self._errors[name] = message
            raise ConfigurationError(f"MCP server {name!r} has {message}")

        try:
            client = await MCPClient.start(
                name,
                server.command,
                args=server.args,
                env=server.env,
                cwd=server.cwd or None,
                client_name=self.client_name,
                client_version=self.client_version,
                protocol_version=self.protocol_version,
            )
        except MCPConnectionError as e:
            self._errors[name] = str(e)
            self._notify_update()
            raise

        try:
            await asyncio.wait_for(client.initialize(), timeout=self.init_timeout)
        except (GmnAgentError, TimeoutError) as e:
            await client.close()
            reason = str(e) or f"initialize timed out after {self.init_timeout}s"
            self._errors[name] = reason
            self._notify_update()
            raise MCPConnectionError(name, f"failed to initialize: {reason}") from e

        self._clients[name] = client
        self._notify_update()
        return client

    async def disconnect_server(self, name: str) -> None:
        client = self._clients.pop(name, None)
        self._errors.pop(name, None)
        if client is None:
            return
        await client.close()
        log.info("Disconnected MCP server", server=name)
        self._notify_update()

    async def drop_client(self, name: str, reason: str) -> None:
        """Forget a client whose connection broke and record why."""
        client = self._clients.pop(name, None)
        if client is None:
            return
        self._errors[name] = reason
        log.warning("Dropping broken MCP connection", server=name, reason=reason)
        await client.close()
        self._notify_update()

    async def connect_all(self) -> dict[str, str]:
        """Connect every configured server; return errors by server name."""
        failures: dict[str, str] = {}
        for name in list(self._servers):
            try:
                await self.connect_server(name)
            except GmnAgentError as e:
                failures[name] = str(e)
                log.error("MCP server failed to connect", server=name, error=str(e))
        return failures

    async def disconnect_all(self) -> None:
        clients = list(self._clients.items())
        self._clients.clear()
        for name, client in clients:
            try:
                await client.close()
            except Exception as e:
                log.warning("Error closing MCP server", server=name, error=str(e))
        self._notify_update()

    async def remove_server(self, name: str) -> None:
        await self.disconnect_server(name)
        self._servers.pop(name, None)
        self._errors.pop(name, None)
        self._notify_update()
