"""Routes tool calls to the built-in registry or a connected MCP server."""

import re
from pathlib import Path
from typing import Any

from gmn_agent.exceptions import MCPConnectionError, ToolNotFoundError
from gmn_agent.llm import ToolDefinition
from gmn_agent.logging import get_logger
from gmn_agent.mcp.manager import MCPManager
from gmn_agent.tools.registry import ToolRegistry

log = get_logger(__name__)

MCP_NAME_SEPARATOR = "__"
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_]")


def sanitize(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_]`` with ``_``."""
    return _UNSAFE_NAME_CHARS.sub("_", name)


def server_prefix(server: str) -> str:
    """Export prefix for a server: sanitized name, trailing ``_`` trimmed, then ``__``."""
    return (sanitize(server).rstrip("_") or "_") + MCP_NAME_SEPARATOR


def export_name(server: str, tool: str) -> str:
    """Name under which an MCP tool is advertised to the model."""
    return server_prefix(server) + sanitize(tool)


def scrub_schema(schema: Any) -> Any:
    """Drop ``$``-prefixed keywords and ``additionalProperties`` recursively.

    Keys directly under ``properties`` are user property names and are kept
    even when they look like keywords.
    """
    if isinstance(schema, list):
        return [scrub_schema(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key.startswith("$") or key == "additionalProperties":
            continue
        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {prop: scrub_schema(sub) for prop, sub in value.items()}
        else:
            cleaned[key] = scrub_schema(value)
    return cleaned


class ToolRouter:
    """Single tool namespace over built-ins and MCP servers.

    Built-in names win. MCP tools are exported as ``<server>__<tool>`` with
    both halves sanitized; when two exports collide the first one (in
    connection order) owns the name.
    """

    def __init__(self, registry: ToolRegistry, mcp_manager: MCPManager | None = None):
        self.registry = registry
        self.mcp_manager = mcp_manager

    def _mcp_clients(self):
        if self.mcp_manager is None:
            return []
        return [(name, client) for name, client in self.mcp_manager.clients() if client.connected]

    def get_definitions(self) -> list[ToolDefinition]:
        """Built-in declarations followed by every connected server's catalog."""
        definitions = self.registry.get_definitions()
        seen = {definition.name for definition in definitions}
        for server, client in self._mcp_clients():
            for tool in client.tools:
                name = export_name(server, tool.name)
                if name in seen:
                    log.warning(
                        "Dropping colliding MCP tool name",
                        server=server,
                        tool=tool.name,
                        exported=name,
                    )
                    continue
                seen.add(name)
                definitions.append(ToolDefinition(
                    name=name,
                    description=tool.description,
                    parameters=scrub_schema(tool.parameters),
                ))
        return definitions

    def plan_mode_definitions(self) -> list[ToolDefinition]:
        """Declarations of the read-only built-ins; MCP tools are excluded."""
        return self.registry.get_plan_mode_definitions()

    def resolve(self, name: str) -> tuple[str, str] | None:
        """Map an exported MCP name back to ``(server, original tool name)``."""
        for server, client in self._mcp_clients():
            prefix = server_prefix(server)
            if not name.startswith(prefix):
                continue
            remainder = name[len(prefix):]
            for tool in client.tools:
                if sanitize(tool.name) == remainder:
                    return server, tool.name
        return None

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        work_dir: Path | str | None = None,
    ) -> str:
        """Run a tool and return the text handed back to the model.

        Raises:
            ToolNotFoundError when neither a built-in nor an MCP tool matches
            ToolExecutionError (or MCPToolError) when the tool itself fails
        """
        args = dict(arguments or {})
        if self.registry.has_tool(name):
            result = await self.registry.execute(name, args, work_dir=work_dir)
            return result.as_text()

        target = self.resolve(name)
        if target is None:
            raise ToolNotFoundError(name)

        server, tool_name = target
        client = self.mcp_manager.get_client(server)
        if client is None:
            raise ToolNotFoundError(name)

        log.info("Calling MCP tool", server=server, tool=tool_name)
        try:
            return await client.call_tool(tool_name, args)
        except MCPConnectionError as e:
            await self.mcp_manager.drop_client(server, str(e))
            raise
