"""Chat data model: messages, tool calls and per-invocation mode context."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from chatpilot.exceptions import InvalidToolArgumentsError


def utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------------


class MessageStatus(str, Enum):
    """Chat message lifecycle states."""

    PENDING = "pending"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolCallStatus(str, Enum):
    """Tool call lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTING = "executing"
    EXECUTED = "executed"
    ERROR = "error"


TERMINAL_TOOL_CALL_STATUSES = {
    ToolCallStatus.EXECUTED.value,
    ToolCallStatus.ERROR.value,
}


class ToolCallOrigin(str, Enum):
    """Where a tool call was proposed and where its outcome must be reported."""

    DIRECT = "direct"
    DELEGATED = "delegated"


class Mode(str, Enum):
    """Response generation strategies."""

    ASK = "ask"
    QUERY = "query"
    AGENT = "agent"


# ---------------------------------------------------------------------------
# Participants and context
# ---------------------------------------------------------------------------


@dataclass
class Participant:
    """A user or assistant identity as shown on messages."""

    id: str
    username: str
    display_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "username": self.username, "display_name": self.display_name}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Participant | None:
        if not data:
            return None
        return cls(
            id=str(data.get("id", "")),
            username=str(data.get("username", "")),
            display_name=str(data.get("display_name", "") or ""),
        )


@dataclass
class AvatarPersona:
    """Active avatar persona; replaces the assistant's display identity."""

    name: str
    model_id: str = ""

    def as_participant(self) -> Participant:
        return Participant(id=self.name.lower(), username=self.name, display_name=self.name)


@dataclass
class FileContext:
    """File currently open for editing alongside the conversation."""

    name: str
    extension: str
    content: str = ""

    @property
    def is_rich_document(self) -> bool:
        return self.extension.lower().lstrip(".") == "docx"


@dataclass
class SwarmLimits:
    """Resource limits passed through to the task orchestrator."""

    max_iterations: int = 20
    max_parallel_agents: int = 10
    max_swarm_size: int = 5
    max_active_swarms: int = 3
    max_conversation_length: int = 50

    def to_dict(self) -> dict[str, int]:
        return {
            "max_iterations": self.max_iterations,
            "max_parallel_agents": self.max_parallel_agents,
            "max_swarm_size": self.max_swarm_size,
            "max_active_swarms": self.max_active_swarms,
            "max_conversation_length": self.max_conversation_length,
        }


@dataclass
class ModeContext:
    """Per-invocation inputs that decide mode and prompt variant."""

    section: str = "workspace:chat"
    mode: Mode | None = None
    workspace_id: str | None = None
    kb_ids: list[str] = field(default_factory=list)
    tool_server_ids: list[str] = field(default_factory=list)
    limits: SwarmLimits | None = None
    avatar: AvatarPersona | None = None
    file_context: FileContext | None = None

    @property
    def is_copilot(self) -> bool:
        return self.section == "local:copilot"

    @property
    def is_avatar(self) -> bool:
        return self.section == "workspace:avatar" and self.avatar is not None


@dataclass
class ApprovalPolicy:
    """Per-server auto-approval switches."""

    auto_approve: dict[str, bool] = field(default_factory=dict)

    def is_auto_approved(self, server_id: str | None) -> bool:
        if not server_id:
            return False
        return bool(self.auto_approve.get(server_id, False))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass
class ToolDescriptor:
    """Tool offered to the model."""

    name: str
    description: str
    parameters: dict[str, Any]
    server_id: str = ""

    def to_function_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolCall:
    """A proposed tool invocation attached to an assistant message."""

    id: str
    function_name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)
    server_id: str | None = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: Any = None
    execution_seconds: int | None = None
    description: str = ""
    origin: ToolCallOrigin = ToolCallOrigin.DIRECT
    approval_id: str | None = None
    thread_id: str | None = None

    @classmethod
    def delegated(
        cls,
        approval_id: str,
        thread_id: str,
        function_name: str,
        arguments: dict[str, Any] | str | None = None,
        server_id: str | None = None,
        description: str = "",
    ) -> ToolCall:
        """Build a tool call proposed by the task orchestrator."""
        return cls(
            id=f"delegated-{approval_id}",
            function_name=function_name,
            arguments=arguments if arguments is not None else {},
            server_id=server_id,
            description=description,
            origin=ToolCallOrigin.DELEGATED,
            approval_id=approval_id,
            thread_id=thread_id,
        )

    @property
    def key(self) -> tuple[str, str]:
        return (ToolCallOrigin(self.origin).value, self.id)

    @property
    def is_delegated(self) -> bool:
        return self.origin == ToolCallOrigin.DELEGATED

    @property
    def is_terminal(self) -> bool:
        return ToolCallStatus(self.status).value in TERMINAL_TOOL_CALL_STATUSES

    def parsed_arguments(self) -> dict[str, Any]:
        """Return arguments as a dict.

        Raises:
            InvalidToolArgumentsError: string arguments are not a JSON object
        """
        if isinstance(self.arguments, dict):
            return self.arguments
        raw = (self.arguments or "").strip()
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidToolArgumentsError(self.function_name, str(e))
        if not isinstance(value, dict):
            raise InvalidToolArgumentsError(self.function_name, "arguments must decode to a JSON object")
        return value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "function_name": self.function_name,
            "arguments": self.arguments,
            "server_id": self.server_id,
            "status": ToolCallStatus(self.status).value,
            "result": self.result,
            "execution_seconds": self.execution_seconds,
            "description": self.description,
            "origin": ToolCallOrigin(self.origin).value,
            "approval_id": self.approval_id,
            "thread_id": self.thread_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(
            id=data["id"],
            function_name=data.get("function_name", ""),
            arguments=data.get("arguments") or {},
            server_id=data.get("server_id"),
            status=ToolCallStatus(data.get("status", "pending")),
            result=data.get("result"),
            execution_seconds=data.get("execution_seconds"),
            description=data.get("description", ""),
            origin=ToolCallOrigin(data.get("origin", "direct")),
            approval_id=data.get("approval_id"),
            thread_id=data.get("thread_id"),
        )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A chat message."""

    id: str
    chat_id: str
    sender: str
    text: str = ""
    sender_object: Participant | None = None
    status: MessageStatus = MessageStatus.PENDING
    tool_calls: list[ToolCall] = field(default_factory=list)
    reactions: list[dict[str, Any]] = field(default_factory=list)
    reply_to: str | None = None
    workspace_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    sent_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def placeholder(
        cls,
        chat_id: str,
        sender: Participant,
        workspace_id: str | None = None,
    ) -> Message:
        """Empty pending assistant message written before generation starts."""
        return cls(
            id=new_id(),
            chat_id=chat_id,
            sender=sender.id,
            sender_object=sender,
            workspace_id=workspace_id,
        )

    @property
    def sender_name(self) -> str:
        if self.sender_object and self.sender_object.username:
            return self.sender_object.username
        return self.sender

    def find_tool_call(self, tool_call_id: str) -> ToolCall | None:
        for call in self.tool_calls:
            if call.id == tool_call_id:
                return call
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "sender": self.sender,
            "sender_object": self.sender_object.to_dict() if self.sender_object else None,
            "text": self.text,
            "status": MessageStatus(self.status).value,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "reactions": self.reactions,
            "reply_to": self.reply_to,
            "workspace_id": self.workspace_id,
            "created_at": self.created_at,
            "sent_at": self.sent_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=data["id"],
            chat_id=data["chat_id"],
            sender=data.get("sender", ""),
            sender_object=Participant.from_dict(data.get("sender_object")),
            text=data.get("text", "") or "",
            status=MessageStatus(data.get("status", "pending")),
            tool_calls=[ToolCall.from_dict(c) for c in data.get("tool_calls") or []],
            reactions=list(data.get("reactions") or []),
            reply_to=data.get("reply_to"),
            workspace_id=data.get("workspace_id"),
            created_at=data.get("created_at") or utcnow_iso(),
            sent_at=data.get("sent_at") or utcnow_iso(),
        )
