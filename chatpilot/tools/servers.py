"""Tool-execution server connections and result interpretation.

Servers differ in how they report outcomes. Each server declares a result
convention and its raw payloads are normalized by the matching interpreter:

- ``standard``: payload is ``{"success": bool, "data": ..., "error": ...}``;
  anything else is a failure.
- ``lenient``: empty/null payloads count as success; explicit failure markers
  (``success: false``, ``isError``/``is_error``, a bare ``error`` key) fail.
- ``mcp``: payloads shaped like MCP ``tools/call`` results.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable

from pydantic import BaseModel, model_validator

from chatpilot.config import ToolServerConfig
from chatpilot.logging import get_logger

log = get_logger(__name__)


class ToolServerResult(BaseModel):
    """Normalized outcome of one tool call."""

    success: bool = True
    data: Any = None
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolServerResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = str(self.data).strip() if self.data not in (None, "") else ""
            self.error = fallback or "Tool execution failed"
        return self


# ---------------------------------------------------------------------------
# Result interpreters
# ---------------------------------------------------------------------------


def _is_empty(payload: Any) -> bool:
    return payload is None or payload == "" or payload == {} or payload == []


def interpret_standard(payload: Any) -> ToolServerResult:
    if not isinstance(payload, dict) or "success" not in payload:
        return ToolServerResult(success=False, data=payload, error="Malformed tool server response")
    if payload["success"]:
        return ToolServerResult(success=True, data=payload.get("data"))
    return ToolServerResult(success=False, data=payload.get("data"), error=payload.get("error"))


def interpret_lenient(payload: Any) -> ToolServerResult:
    if _is_empty(payload):
        return ToolServerResult(success=True, data=None)
    if isinstance(payload, dict):
        if payload.get("success") is False:
            return ToolServerResult(success=False, data=payload.get("data"), error=payload.get("error"))
        if payload.get("isError") or payload.get("is_error"):
            return ToolServerResult(success=False, data=payload, error=_error_text(payload))
        if "success" in payload:
            return ToolServerResult(success=True, data=payload.get("data"))
        if payload.get("error") and len(payload) == 1:
            return ToolServerResult(success=False, error=str(payload["error"]))
    return ToolServerResult(success=True, data=payload)


def interpret_mcp(payload: Any) -> ToolServerResult:
    if _is_empty(payload):
        return ToolServerResult(success=True, data=None)
    if not isinstance(payload, dict):
        return ToolServerResult(success=True, data=payload)
    if payload.get("is_error") or payload.get("isError"):
        return ToolServerResult(success=False, data=payload.get("content"), error=_error_text(payload))
    if payload.get("structured_content") is not None:
        return ToolServerResult(success=True, data=payload["structured_content"])
    if payload.get("text"):
        return ToolServerResult(success=True, data=payload["text"])
    return ToolServerResult(success=True, data=payload.get("content") or None)


def _error_text(payload: dict[str, Any]) -> str:
    text = payload.get("text") or payload.get("error")
    if text:
        return str(text)
    for item in payload.get("content") or []:
        if isinstance(item, dict) and item.get("text"):
            return str(item["text"])
    return "Tool execution failed"


RESULT_INTERPRETERS: dict[str, Callable[[Any], ToolServerResult]] = {
    "standard": interpret_standard,
    "lenient": interpret_lenient,
    "mcp": interpret_mcp,
}


def get_result_interpreter(convention: str) -> Callable[[Any], ToolServerResult]:
    return RESULT_INTERPRETERS.get(convention, interpret_lenient)


# ---------------------------------------------------------------------------
# Clients and pool
# ---------------------------------------------------------------------------


class ToolServerClient(ABC):
    """Transport to tool-execution servers."""

    @abstractmethod
    async def list_tools(self, server: ToolServerConfig) -> list[dict[str, Any]]:
        """Return raw tool entries (name, description, inputSchema) offered by a server."""
        pass

    @abstractmethod
    async def call_tool(
        self,
        server: ToolServerConfig,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> Any:
        """Invoke a tool and return the server's raw payload."""
        pass


class ToolServerConnection:
    """A configured server bound to its client and result interpreter."""

    def __init__(self, config: ToolServerConfig, client: ToolServerClient):
        self.config = config
        self.client = client
        self._interpret = get_result_interpreter(config.result_convention)

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.display_name

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> ToolServerResult:
        """Call a tool; transport exceptions propagate to the caller."""
        payload = await self.client.call_tool(self.config, tool_name, arguments)
        return self._interpret(payload)


class ToolServerPool:
    """Read-only lookup of enabled tool-execution servers."""

    def __init__(self, servers: list[ToolServerConfig], client: ToolServerClient):
        self.client = client
        self._servers: dict[str, ToolServerConfig] = {}
        for server in servers:
            if not server.enabled:
                continue
            if server.id in self._servers:
                log.warning("Duplicate tool server id ignored", server_id=server.id)
                continue
            self._servers[server.id] = server

    @classmethod
    def from_config(cls, config: Any, client: ToolServerClient | None = None) -> "ToolServerPool":
        if client is None:
            from chatpilot.tools.mcp import MCPToolServerClient
            client = MCPToolServerClient()
        return cls(list(config.tool_servers), client)

    def server_ids(self) -> list[str]:
        return list(self._servers)

    def get_config(self, server_id: str | None) -> ToolServerConfig | None:
        if not server_id:
            return None
        return self._servers.get(server_id)

    def get(self, server_id: str | None) -> ToolServerConnection | None:
        config = self.get_config(server_id)
        if config is None:
            return None
        return ToolServerConnection(config, self.client)
