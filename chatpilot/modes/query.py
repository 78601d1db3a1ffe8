"""Query mode: answers grounded in the selected knowledge bases."""

from chatpilot.config import QueryConfig
from chatpilot.exceptions import StreamAbortedError
from chatpilot.llm import ChatMessage, CompletionOptions, CompletionService
from chatpilot.logging import get_logger
from chatpilot.models import Message, MessageStatus, Mode
from chatpilot.modes.base import ModeStrategy, ResponseOutcome, StrategyRequest
from chatpilot.store import ChatStore

log = get_logger(__name__)

QUERY_EMPTY_TEXT = "No response received from knowledge base."
QUERY_STOPPED_TEXT = "Knowledge Base query stopped."


def query_failed_text(assistant_name: str) -> str:
    return f"Sorry, I (Agent: {assistant_name}) encountered an error with the Knowledge Base query."


class QueryStrategy(ModeStrategy):
    mode = Mode.QUERY

    def __init__(
        self,
        store: ChatStore,
        retrieval: CompletionService,
        settings: QueryConfig | None = None,
        history_window: int = 10,
    ):
        self.store = store
        self.retrieval = retrieval
        self.settings = settings or QueryConfig()
        self.history_window = history_window

    def build_messages(self, request: StrategyRequest) -> list[ChatMessage]:
        messages = [ChatMessage("system", request.system_prompt)]
        recent = request.history[-self.history_window:] if self.history_window > 0 else []
        for item in recent:
            role = "assistant" if request.is_assistant(item) else "user"
            messages.append(ChatMessage(role, item.text))
        messages.append(ChatMessage("user", request.user_text))
        return messages

    def build_options(self, request: StrategyRequest, stream_id: str, message_id: str) -> CompletionOptions:
        provider = self.settings.provider or request.provider
        kb_ids: list[str] = []
        if provider in self.settings.kb_aware_providers and request.context.kb_ids:
            kb_ids = list(request.context.kb_ids)
        return CompletionOptions(
            model=self.settings.query_engine_model or request.model,
            stream_id=stream_id,
            provider=provider,
            message_id=message_id,
            kb_ids=kb_ids,
            workspace_id=request.context.workspace_id,
            top_k=self.settings.top_k,
            preferred_language=self.settings.preferred_language,
        )

    async def run(self, request: StrategyRequest) -> ResponseOutcome:
        messages = self.build_messages(request)

        placeholder = Message.placeholder(
            request.chat_id,
            request.assistant,
            workspace_id=request.context.workspace_id,
        )
        await self.store.append_message(placeholder)
        options = self.build_options(request, f"stream-{placeholder.id}", placeholder.id)

        async def _on_chunk(text: str) -> None:
            placeholder.text = text

        try:
            text = await self.retrieval.stream_chat_completion(messages, options, on_chunk=_on_chunk)
        except StreamAbortedError:
            placeholder.text = QUERY_STOPPED_TEXT
            placeholder.status = MessageStatus.COMPLETED
            await self.store.update_message(placeholder)
            log.info("Knowledge base query stopped", message_id=placeholder.id)
            return ResponseOutcome(
                success=True,
                mode=self.mode,
                message_id=placeholder.id,
                text=QUERY_STOPPED_TEXT,
                aborted=True,
            )
        except Exception as e:
            log.error("Knowledge base query failed", message_id=placeholder.id, error=str(e))
            placeholder.text = query_failed_text(request.assistant.username)
            placeholder.status = MessageStatus.FAILED
            await self.store.update_message(placeholder)
            return ResponseOutcome(
                success=False,
                mode=self.mode,
                message_id=placeholder.id,
                text=placeholder.text,
                error=str(e),
            )

        placeholder.text = text if (text or "").strip() else QUERY_EMPTY_TEXT
        placeholder.status = MessageStatus.COMPLETED
        await self.store.update_message(placeholder)
        return ResponseOutcome(success=True, mode=self.mode, message_id=placeholder.id, text=placeholder.text)
