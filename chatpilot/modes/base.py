"""Shared types for response strategies."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from chatpilot.models import Message, Mode, ModeContext, Participant, ToolCall


@dataclass
class StrategyRequest:
    """Everything a strategy needs to answer one user message."""

    chat_id: str
    user_text: str
    context: ModeContext
    user: Participant
    assistant: Participant
    system_prompt: str
    model: str
    provider: str
    history: list[Message] = field(default_factory=list)
    # Sender ids treated as the assistant when replaying history.
    assistant_ids: set[str] = field(default_factory=set)

    def is_assistant(self, message: Message) -> bool:
        return message.sender in self.assistant_ids or message.sender == self.assistant.id


@dataclass
class ResponseOutcome:
    """Result of one orchestrated response."""

    success: bool
    mode: Mode
    message_id: str | None = None
    text: str | None = None
    error: str | None = None
    aborted: bool = False
    awaiting_human: bool = False
    thread_id: str | None = None
    # Direct tool calls the completion proposed on the response message.
    tool_calls: list[ToolCall] = field(default_factory=list)


class ModeStrategy(ABC):
    """One way of producing an assistant response."""

    mode: Mode

    @abstractmethod
    async def run(self, request: StrategyRequest) -> ResponseOutcome:
        """Produce the response. Remote failures are reported in the outcome, never raised."""
        pass
