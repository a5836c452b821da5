"""gmn-agent - a tool-using Gemini agent core with MCP server support."""

__version__ = "0.1.0"
