"""MCP client speaking newline-delimited JSON-RPC 2.0 over a child's stdio."""

import asyncio
import json
import os
from typing import Any

from gmn_agent.exceptions import MCPConnectionError, MCPToolError, ProtocolError
from gmn_agent.llm import ToolDefinition
from gmn_agent.logging import get_logger

log = get_logger(__name__)

DEFAULT_PROTOCOL_VERSION = "2024-11-05"
_STREAM_LIMIT = 16 * 1024 * 1024
_CLOSE_GRACE_SECONDS = 5.0


def _consume_result(task: asyncio.Future) -> None:
    """Mark a shielded exchange's outcome as retrieved once nobody awaits it."""
    if not task.cancelled():
        task.exception()


class MCPClient:
    """One connection to an MCP server process.

    Calls are strictly sequential: each request is written and its response
    read while holding the client lock, so one connection never has two
    requests in flight.
    """

    def __init__(
        self,
        name: str,
        client_name: str = "gmn-agent",
        client_version: str = "0.1.0",
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
    ):
        self.name = name
        self.client_name = client_name
        self.client_version = client_version
        self.protocol_version = protocol_version
        self.server_name = ""
        self.server_version = ""
        self.tools: list[ToolDefinition] = []
        self._process: asyncio.subprocess.Process | None = None
        self._request_id = 0
        self._lock = asyncio.Lock()
        self._connected = False

    @classmethod
    async def start(
        cls,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        **kwargs: Any,
    ) -> "MCPClient":
        """Spawn the server process. stderr is inherited for diagnostics."""
        client = cls(name, **kwargs)
        try:
            client._process = await asyncio.create_subprocess_exec(
                command,
                *(args or []),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env={**os.environ, **(env or {})},
                cwd=cwd or None,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise MCPConnectionError(name, f"failed to start server: {e}") from e
        client._connected = True
        log.info("Started MCP server", server=name, command=command, pid=client._process.pid)
        return client

    @property
    def connected(self) -> bool:
        return self._connected and self._process is not None and self._process.returncode is None

    async def initialize(self) -> None:
        """Run the initialize handshake and cache the server's tool catalog."""
        result = await self._call(
            "initialize",
            {
                "protocolVersion": self.protocol_version,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": self.client_version},
            },
        )
        info = result.get("serverInfo") or {}
        if isinstance(info, dict):
            self.server_name = str(info.get("name") or "")
            self.server_version = str(info.get("version") or "")

        await self._notify("notifications/initialized")

        listing = await self._call("tools/list")
        tools: list[ToolDefinition] = []
        for entry in listing.get("tools") or []:
            if not isinstance(entry, dict) or not entry.get("name"):
                continue
            schema = entry.get("inputSchema")
            tools.append(ToolDefinition(
                name=str(entry["name"]),
                description=str(entry.get("description") or ""),
                parameters=schema if isinstance(schema, dict) else {"type": "object", "properties": {}},
            ))
        self.tools = tools
        log.info(
            "MCP server initialized",
            server=self.name,
            server_name=self.server_name,
            server_version=self.server_version,
            tool_count=len(tools),
        )

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> str:
        """Call a tool and return its concatenated text content."""
        result = await self._call(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            tool_name=name,
        )
        content = result.get("content")
        if content is None:
            content = []
        if not isinstance(content, list):
            raise MCPToolError(name, f"malformed result: content is {type(content).__name__}, not a list")
        blocks = [block for block in content if isinstance(block, dict)]
        if result.get("isError"):
            message = str(blocks[0].get("text") or "") if blocks else ""
            raise MCPToolError(name, message or "tool returned error")
        return "".join(str(block.get("text") or "") for block in blocks if block.get("type") == "text")

    async def close(self) -> int | None:
        """Close stdin and wait for the process to exit."""
        self._connected = False
        process = self._process
        if process is None:
            return None

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
            try:
                await process.stdin.wait_closed()
            except OSError:
                pass

        try:
            return await asyncio.wait_for(process.wait(), timeout=_CLOSE_GRACE_SECONDS)
        except TimeoutError:
            log.warning("MCP server did not exit, terminating", server=self.name)
        try:
            process.terminate()
            return await asyncio.wait_for(process.wait(), timeout=_CLOSE_GRACE_SECONDS)
        except ProcessLookupError:
            return process.returncode
        except TimeoutError:
            process.kill()
            return await process.wait()

    async def _call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        tool_name: str | None = None,
    ) -> dict[str, Any]:
        # The exchange keeps running if the caller is cancelled, so the next
        # request never reads this request's response.
        exchange = asyncio.ensure_future(self._exchange(method, params))
        exchange.add_done_callback(_consume_result)
        response = await asyncio.shield(exchange)

        error = response.get("error")
        if error is not None:
            if isinstance(error, dict):
                detail = f"RPC error {error.get('code')}: {error.get('message')}"
            else:
                detail = f"RPC error: {error}"
            if tool_name is not None:
                raise MCPToolError(tool_name, detail)
            raise ProtocolError(f"MCP {method} failed on '{self.name}': {detail}")

        result = response.get("result")
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise ProtocolError(f"MCP {method} on '{self.name}' returned a non-object result")
        return result

    async def _exchange(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        async with self._lock:
            self._request_id += 1
            request_id = self._request_id
            request: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params is not None:
                request["params"] = params
            await self._write(request)

            while True:
                message = await self._read_message()
                if "method" in message or "id" not in message:
                    log.debug("Skipping MCP server message", server=self.name, method=message.get("method"))
                    continue
                if message.get("id") != request_id:
                    log.debug(
                        "Skipping unexpected MCP response",
                        server=self.name,
                        expected=request_id,
                        received=message.get("id"),
                    )
                    continue
                return message

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        notification: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            notification["params"] = params
        async with self._lock:
            await self._write(notification)

    async def _write(self, message: dict[str, Any]) -> None:
        if not self.connected or self._process.stdin is None:
            raise MCPConnectionError(self.name, "not connected")
        try:
            self._process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
            await self._process.stdin.drain()
        except OSError as e:
            self._connected = False
            raise MCPConnectionError(self.name, f"failed to write request: {e}") from e

    async def _read_message(self) -> dict[str, Any]:
        if self._process is None or self._process.stdout is None:
            raise MCPConnectionError(self.name, "not connected")
        try:
            raw = await self._process.stdout.readline()
        except (OSError, ValueError) as e:
            self._connected = False
            raise MCPConnectionError(self.name, f"failed to read response: {e}") from e

        if not raw:
            self._connected = False
            raise MCPConnectionError(self.name, "EOF while reading response")

        try:
            message = json.loads(raw)
        except ValueError as e:
            self._connected = False
            raise MCPConnectionError(self.name, f"failed to parse response: {e}") from e
        if not isinstance(message, dict):
            self._connected = False
            raise MCPConnectionError(self.name, "response is not a JSON object")
        return message
