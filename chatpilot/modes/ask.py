"""Ask mode: direct conversational answer streamed from the chat model.

When the context selects tool servers, their tools are offered to the model
and any function calls it proposes are stored on the response message as
pending direct tool calls.
"""

from chatpilot.exceptions import StreamAbortedError
from chatpilot.llm import ChatMessage, CompletionOptions, CompletionService
from chatpilot.logging import get_logger
from chatpilot.models import Message, MessageStatus, Mode, ToolCall, utcnow_iso
from chatpilot.modes.base import ModeStrategy, ResponseOutcome, StrategyRequest
from chatpilot.store import ChatStore
from chatpilot.tools.registry import ToolRegistry, enrich_tool_calls, resolve_tools

log = get_logger(__name__)

ASK_FAILED_TEXT = "Error generating response. Please try again."
ASK_STOPPED_TEXT = "Response stopped."
DEFAULT_HISTORY_WINDOW = 10


def build_ask_messages(request: StrategyRequest, history_window: int = DEFAULT_HISTORY_WINDOW) -> list[ChatMessage]:
    """System prompt, timestamped transcript, then the new user message."""
    messages = [ChatMessage("system", request.system_prompt)]
    recent = request.history[-history_window:] if history_window > 0 else []
    for item in recent:
        if request.is_assistant(item):
            messages.append(ChatMessage("assistant", item.text))
        else:
            messages.append(ChatMessage("user", f"[{item.created_at}] {item.sender_name}: {item.text}"))
    messages.append(ChatMessage("user", f"[{utcnow_iso()}] {request.user.username}: {request.user_text}"))
    return messages


class AskStrategy(ModeStrategy):
    mode = Mode.ASK

    def __init__(
        self,
        store: ChatStore,
        completion: CompletionService,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        tool_registry: ToolRegistry | None = None,
    ):
        self.store = store
        self.completion = completion
        self.history_window = history_window
        self.tool_registry = tool_registry

    async def _complete(
        self,
        request: StrategyRequest,
        messages: list[ChatMessage],
        options: CompletionOptions,
        placeholder: Message,
    ) -> tuple[str, list[ToolCall]]:
        tools = []
        if self.tool_registry is not None and request.context.tool_server_ids:
            tools = await resolve_tools(request.context.tool_server_ids, self.tool_registry)

        if not tools:
            async def _on_chunk(text: str) -> None:
                placeholder.text = text

            text = await self.completion.stream_chat_completion(messages, options, on_chunk=_on_chunk)
            return text, []

        result = await self.completion.complete_with_tools(
            messages,
            options,
            [tool.to_function_schema() for tool in tools],
        )
        calls = enrich_tool_calls(result.tool_calls, tools)
        if calls:
            log.info("Model proposed tool calls", message_id=placeholder.id, tools=[c.function_name for c in calls])
        return result.text, calls

    async def run(self, request: StrategyRequest) -> ResponseOutcome:
        messages = build_ask_messages(request, self.history_window)

        placeholder = Message.placeholder(
            request.chat_id,
            request.assistant,
            workspace_id=request.context.workspace_id,
        )
        await self.store.append_message(placeholder)

        options = CompletionOptions(
            model=request.model,
            stream_id=f"stream-{placeholder.id}",
            provider=request.provider,
            message_id=placeholder.id,
        )

        try:
            text, calls = await self._complete(request, messages, options, placeholder)
        except StreamAbortedError as e:
            placeholder.text = e.partial or ASK_STOPPED_TEXT
            placeholder.status = MessageStatus.COMPLETED
            await self.store.update_message(placeholder)
            log.info("Ask response stopped", message_id=placeholder.id)
            return ResponseOutcome(
                success=True,
                mode=self.mode,
                message_id=placeholder.id,
                text=placeholder.text,
                aborted=True,
            )
        except Exception as e:
            log.error("Ask response failed", message_id=placeholder.id, error=str(e))
            placeholder.text = ASK_FAILED_TEXT
            placeholder.status = MessageStatus.FAILED
            await self.store.update_message(placeholder)
            return ResponseOutcome(
                success=False,
                mode=self.mode,
                message_id=placeholder.id,
                text=ASK_FAILED_TEXT,
                error=str(e),
            )

        placeholder.text = text
        placeholder.tool_calls = calls
        placeholder.status = MessageStatus.COMPLETED
        await self.store.update_message(placeholder)
        return ResponseOutcome(
            success=True,
            mode=self.mode,
            message_id=placeholder.id,
            text=text,
            tool_calls=list(calls),
        )
