"""Custom exceptions for gmn-agent."""


class GmnAgentError(Exception):
    """Base exception for gmn-agent."""

    pass


class ConfigurationError(GmnAgentError):
    """Configuration-related errors."""

    pass


class TransportError(GmnAgentError):
    """Generation API failure (network, HTTP status, retries exhausted)."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitError(TransportError):
    """HTTP 429 from the generation API, resolved by retrying."""

    def __init__(self, retry_delay: float, body: str = ""):
        super().__init__(f"Rate limited, retry in {retry_delay}s", status_code=429, body=body)
        self.retry_delay = retry_delay


class AuthError(GmnAgentError):
    """Credential lookup or refresh failed."""

    pass


class ProtocolError(GmnAgentError):
    """Malformed JSON-RPC or stream payload."""

    pass


class MCPConnectionError(ProtocolError):
    """MCP server pipe closed or produced an unreadable line."""

    def __init__(self, server: str, message: str):
        super().__init__(f"MCP server '{server}': {message}")
        self.server = server


class ToolError(GmnAgentError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in the registry or on any connected MCP server."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class MCPToolError(ToolExecutionError):
    """MCP server reported an error for a tools/call request."""

    pass


class PlanModeViolation(ToolError):
    """Tool call rejected because plan mode only allows read-only tools."""

    def __init__(self, tool_name: str):
        super().__init__(
            f'tool "{tool_name}" is not allowed in Plan Mode. Only read-only tools are available.'
        )
        self.tool_name = tool_name


class ChatError(GmnAgentError):
    """Conversation engine errors."""

    pass


class ConversationBusyError(ChatError):
    """A turn is already running for this conversation."""

    def __init__(self):
        super().__init__("A response is already being generated")


class SessionError(GmnAgentError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
