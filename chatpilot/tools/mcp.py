"""MCP tool-execution servers over stdio or streamable HTTP."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from chatpilot.config import ToolServerConfig
from chatpilot.exceptions import ToolExecutionError, ToolServerNotFoundError
from chatpilot.logging import get_logger
from chatpilot.tools.servers import ToolServerClient

log = get_logger(__name__)


def _build_stdio_params(server: ToolServerConfig) -> StdioServerParameters:
    env = dict(os.environ)
    env.update({str(k): str(v) for k, v in (server.env or {}).items()})
    cwd = (server.cwd or "").strip()
    return StdioServerParameters(
        command=server.command,
        args=[str(a) for a in (server.args or [])],
        env=env,
        cwd=cwd or None,
    )


def _build_http_headers(server: ToolServerConfig) -> dict[str, str]:
    headers = {}
    for k, v in (server.headers or {}).items():
        key = str(k or "").strip()
        if not key:
            continue
        headers[key] = str(v or "")
    return headers


def _server_timeout(server: ToolServerConfig) -> int:
    return max(1, int(server.timeout_seconds or 30))


@asynccontextmanager
async def _open_streams(server: ToolServerConfig):
    timeout = _server_timeout(server)

    if server.transport == "http":
        url = (server.url or "").strip()
        if not url:
            raise ToolServerNotFoundError(server.id)
        async with streamablehttp_client(
            url=url,
            headers=_build_http_headers(server) or None,
            timeout=timeout,
            sse_read_timeout=max(timeout, 300),
        ) as (read, write, _):
            yield read, write
        return

    if not (server.command or "").strip():
        raise ToolServerNotFoundError(server.id)
    async with stdio_client(_build_stdio_params(server)) as (read, write):
        yield read, write


def _tool_to_dict(tool: Any) -> dict[str, Any]:
    raw = tool.model_dump(mode="json", exclude_none=True) if hasattr(tool, "model_dump") else dict(tool)
    return {
        "name": raw.get("name", ""),
        "description": raw.get("description", ""),
        "inputSchema": raw.get("inputSchema"),
    }


def _content_item_to_dict(item: Any) -> dict[str, Any]:
    if hasattr(item, "model_dump"):
        return item.model_dump(mode="json", exclude_none=True)
    if isinstance(item, dict):
        return item
    return {"type": "unknown", "value": str(item)}


def _extract_text(item: Any) -> str:
    text = getattr(item, "text", None)
    if isinstance(text, str):
        return text
    if isinstance(item, dict) and isinstance(item.get("text"), str):
        return str(item["text"])
    return ""


class MCPToolServerClient(ToolServerClient):
    """Opens a fresh MCP session per request."""

    async def list_tools(self, server: ToolServerConfig) -> list[dict[str, Any]]:
        timeout = _server_timeout(server)
        async with _open_streams(server) as (read, write):
            async with ClientSession(read, write) as session:
                await asyncio.wait_for(session.initialize(), timeout=timeout)
                result = await asyncio.wait_for(session.list_tools(), timeout=timeout)
        tools = [_tool_to_dict(t) for t in result.tools]
        log.debug("Listed MCP tools", server=server.display_name, count=len(tools))
        return tools

    async def call_tool(
        self,
        server: ToolServerConfig,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> dict[str, Any]:
        if not (tool_name or "").strip():
            raise ToolExecutionError(tool_name, "tool name is required")

        timeout = _server_timeout(server)
        async with _open_streams(server) as (read, write):
            async with ClientSession(read, write) as session:
                await asyncio.wait_for(session.initialize(), timeout=timeout)
                result = await asyncio.wait_for(
                    session.call_tool(name=tool_name, arguments=arguments or {}),
                    timeout=timeout,
                )

        content = [_content_item_to_dict(item) for item in (result.content or [])]
        text = "\n".join(t for t in (_extract_text(item) for item in (result.content or [])) if t).strip()
        payload: dict[str, Any] = {
            "server": server.display_name,
            "tool": tool_name,
            "is_error": bool(getattr(result, "isError", False)),
            "content": content,
        }
        if text:
            payload["text"] = text
        structured = getattr(result, "structuredContent", None)
        if structured is not None:
            payload["structured_content"] = structured
        return payload
