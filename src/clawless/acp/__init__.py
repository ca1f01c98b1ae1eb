"""Agent Client Protocol plumbing: framing, MCP descriptors and process sessions."""

from clawless.acp.mcp import HttpMcpServer, McpServerDescriptor, StdioMcpServer, resolve_mcp_servers
from clawless.acp.protocol import PROTOCOL_VERSION, AcpConnection
from clawless.acp.session import ProcessSession, SessionState, StderrTail

__all__ = [
    "PROTOCOL_VERSION",
    "AcpConnection",
    "HttpMcpServer",
    "McpServerDescriptor",
    "ProcessSession",
    "SessionState",
    "StderrTail",
    "StdioMcpServer",
    "resolve_mcp_servers",
]
