"""Tool-execution servers and tool resolution."""

from chatpilot.tools.registry import (
    DEFAULT_TOOL_DESCRIPTION,
    MISSING_TOOL_DESCRIPTION,
    ServerToolRegistry,
    ToolRegistry,
    enrich_tool_calls,
    resolve_tools,
)
from chatpilot.tools.servers import (
    ToolServerClient,
    ToolServerConnection,
    ToolServerPool,
    ToolServerResult,
    get_result_interpreter,
)

__all__ = [
    "DEFAULT_TOOL_DESCRIPTION",
    "MISSING_TOOL_DESCRIPTION",
    "ServerToolRegistry",
    "ToolRegistry",
    "ToolServerClient",
    "ToolServerConnection",
    "ToolServerPool",
    "ToolServerResult",
    "enrich_tool_calls",
    "get_result_interpreter",
    "resolve_tools",
]
