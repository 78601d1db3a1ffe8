"""Tool registry and the resolver that turns selected servers into model tools."""

import json
from abc import ABC, abstractmethod
from typing import Any

from chatpilot.llm import ProposedToolCall
from chatpilot.logging import get_logger
from chatpilot.models import ToolCall, ToolDescriptor
from chatpilot.tools.servers import ToolServerPool

log = get_logger(__name__)

DEFAULT_TOOL_DESCRIPTION = "No description available."
MISSING_TOOL_DESCRIPTION = "Description not found."


class ToolRegistry(ABC):
    """Source of per-server tool entries."""

    @abstractmethod
    async def get_server_tools(self, server_id: str) -> list[dict[str, Any]]:
        """Return raw tool entries for a server (possibly malformed)."""
        pass


class ServerToolRegistry(ToolRegistry):
    """Tools declared in server config, discovered from the server otherwise.

    Discovery results are cached per server id for the registry's lifetime.
    """

    def __init__(self, pool: ToolServerPool):
        self.pool = pool
        self._cache: dict[str, list[dict[str, Any]]] = {}

    async def get_server_tools(self, server_id: str) -> list[dict[str, Any]]:
        config = self.pool.get_config(server_id)
        if config is None:
            log.warning("Tool server not configured", server_id=server_id)
            return []
        if config.tools:
            return list(config.tools)
        if server_id not in self._cache:
            self._cache[server_id] = await self.pool.client.list_tools(config)
        return list(self._cache[server_id])

    def invalidate(self, server_id: str | None = None) -> None:
        if server_id is None:
            self._cache.clear()
        else:
            self._cache.pop(server_id, None)


def _entry_schema(entry: dict[str, Any]) -> Any:
    for key in ("inputSchema", "input_schema", "parameters"):
        if entry.get(key) is not None:
            return entry[key]
    return None


async def resolve_tools(server_ids: list[str], registry: ToolRegistry) -> list[ToolDescriptor]:
    """Collect tool descriptors for the selected servers.

    Malformed entries (no name or no parameter schema) are skipped. When two
    servers expose the same tool name, the first one seen is kept.
    """
    resolved: list[ToolDescriptor] = []
    seen: set[str] = set()

    for server_id in server_ids:
        try:
            entries = await registry.get_server_tools(server_id)
        except Exception as e:
            log.warning("Tool listing failed", server_id=server_id, error=str(e))
            continue

        for entry in entries or []:
            if not isinstance(entry, dict):
                log.warning("Skipping malformed tool entry", server_id=server_id)
                continue
            name = str(entry.get("name") or "").strip()
            schema = _entry_schema(entry)
            if not name or not isinstance(schema, dict):
                log.warning("Skipping malformed tool entry", server_id=server_id, tool=name or None)
                continue
            if name in seen:
                log.debug("Duplicate tool name ignored", server_id=server_id, tool=name)
                continue
            seen.add(name)
            resolved.append(ToolDescriptor(
                name=name,
                description=str(entry.get("description") or "").strip() or DEFAULT_TOOL_DESCRIPTION,
                parameters=schema,
                server_id=server_id,
            ))

    return resolved


def enrich_tool_calls(proposals: list[ProposedToolCall], tools: list[ToolDescriptor]) -> list[ToolCall]:
    """Turn model-proposed calls into pending direct tool calls.

    Each call is bound to the server that offered the tool and carries its
    description. JSON-string arguments are decoded when they hold an object
    and kept as sent otherwise, so execution reports the bad input.
    """
    by_name = {tool.name: tool for tool in tools}
    calls: list[ToolCall] = []
    for proposal in proposals:
        arguments = proposal.arguments
        if isinstance(arguments, str):
            try:
                decoded = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                log.warning("Unparseable tool call arguments", tool=proposal.name, error=str(e))
                decoded = None
            if isinstance(decoded, dict):
                arguments = decoded

        tool = by_name.get(proposal.name)
        if tool is None:
            log.warning("Model proposed an unknown tool", tool=proposal.name)
        calls.append(ToolCall(
            id=proposal.id,
            function_name=proposal.name,
            arguments=arguments,
            server_id=tool.server_id if tool else None,
            description=tool.description if tool else MISSING_TOOL_DESCRIPTION,
        ))
    return calls
