"""Follow-up summaries of finished tool calls."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from chatpilot.llm import ChatMessage, CompletionOptions, CompletionService
from chatpilot.logging import get_logger
from chatpilot.models import Message, MessageStatus, Participant, ToolCall, ToolCallStatus
from chatpilot.store import ChatStore

log = get_logger(__name__)

SUMMARY_FAILED_TEXT = "Error summarizing tool results. Please try again."

_URL_RE = re.compile(r"https?://[^\s\"'<>\\)\]}]+")


@dataclass
class SummaryContext:
    """Who and which model a message's tool summary is produced for."""

    user: Participant
    assistant: Participant
    model: str
    provider: str = ""

    @classmethod
    def for_message(cls, message: Message, model: str, provider: str = "") -> SummaryContext:
        """Context rebuilt from a stored message when the originating request is gone."""
        assistant = message.sender_object or Participant(id=message.sender, username=message.sender)
        return cls(user=Participant(id="", username=""), assistant=assistant, model=model, provider=provider)


def _has_payload(value: Any) -> bool:
    return value not in (None, "", {}, [])


def _dump(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def is_ready_for_summary(message: Message) -> bool:
    """Every call finished and at least one produced something to summarize."""
    calls = message.tool_calls
    if not calls:
        return False
    if not all(call.is_terminal for call in calls):
        return False
    return any(_has_payload(call.result) for call in calls)


def format_tool_results(calls: list[ToolCall]) -> str:
    blocks = []
    for call in calls:
        time_info = f" (completed in {call.execution_seconds}s)" if call.execution_seconds else ""
        status = "Successfully executed" if ToolCallStatus(call.status) == ToolCallStatus.EXECUTED else "Failed to execute"
        blocks.append(
            f"Tool: {call.function_name}{time_info}\n"
            f"Status: {status}\n"
            f"Result: {_dump(call.result)}"
        )
    return "\n---\n".join(blocks)


def extract_references(calls: list[ToolCall]) -> list[str]:
    """URLs mentioned in successful tool results, first occurrence order."""
    seen: list[str] = []
    for call in calls:
        if ToolCallStatus(call.status) != ToolCallStatus.EXECUTED or not _has_payload(call.result):
            continue
        text = call.result if isinstance(call.result, str) else _dump(call.result)
        for url in _URL_RE.findall(text):
            url = url.rstrip(".,;:")
            if url not in seen:
                seen.append(url)
    return seen


class ResultSummarizer:
    """Produces one summary message per tool-bearing message."""

    def __init__(self, store: ChatStore, completion: CompletionService):
        self.store = store
        self.completion = completion
        self._contexts: dict[str, SummaryContext] = {}
        self._summarized: set[str] = set()

    def track(self, message_id: str, context: SummaryContext) -> None:
        self._contexts[message_id] = context

    def has_summarized(self, message_id: str) -> bool:
        return message_id in self._summarized

    async def on_tool_call_changed(self, message: Message, call: ToolCall) -> None:
        """State-machine listener: re-evaluate the owning message."""
        context = self._contexts.get(message.id)
        if context is None:
            return
        # Concurrent executions may hold different copies; the store has every call's state.
        stored = await self.store.get_message(message.id)
        await self.maybe_summarize(stored or message, context)

    async def maybe_summarize(self, message: Message, context: SummaryContext) -> Message | None:
        if message.id in self._summarized or not is_ready_for_summary(message):
            return None
        self._summarized.add(message.id)
        self._contexts.pop(message.id, None)
        return await self._summarize(message, context)

    async def _summarize(self, message: Message, context: SummaryContext) -> Message:
        system_prompt = (
            f"Your name is {context.assistant.username or 'Assistant'} and you are summarizing "
            f"tool execution results for {context.user.username or 'the user'}.\n"
            "\n"
            "You have just executed some tools and need to provide a clear, concise summary of what was accomplished.\n"
            "Focus on the key results and insights from the tool executions.\n"
            "Be helpful and explain what the results mean in practical terms.\n"
            "Keep your response conversational and user-friendly."
        )
        user_prompt = (
            "Please summarize the following tool execution results:\n\n"
            f"{format_tool_results(message.tool_calls)}\n\n"
            "Provide a clear, helpful summary of what was accomplished."
        )

        summary = Message.placeholder(message.chat_id, context.assistant, workspace_id=message.workspace_id)
        summary.reply_to = message.id
        await self.store.append_message(summary)

        try:
            text = await self.completion.stream_chat_completion(
                [ChatMessage("system", system_prompt), ChatMessage("user", user_prompt)],
                CompletionOptions(
                    model=context.model,
                    stream_id=f"stream-{summary.id}",
                    provider=context.provider,
                    message_id=summary.id,
                ),
            )
        except Exception as e:
            log.error("Tool result summary failed", message_id=message.id, error=str(e))
            summary.text = SUMMARY_FAILED_TEXT
            summary.status = MessageStatus.FAILED
            await self.store.update_message(summary)
            return summary

        references = extract_references(message.tool_calls)
        if references:
            text = f"{text}\n\nReferences:\n" + "\n".join(f"- {url}" for url in references)
        summary.text = text
        summary.status = MessageStatus.COMPLETED
        await self.store.update_message(summary)
        log.info("Tool results summarized", message_id=message.id, summary_id=summary.id)
        return summary
