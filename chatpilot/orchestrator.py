"""Response-mode orchestrator.

Turns one user message into an assistant response by picking a strategy
(ask, query or agent), assembling its system prompt and running it. It also
exposes the operator actions on proposed tool calls: approve, deny, reset,
automatic approval and execution, plus stream and agent-task aborts.
"""

from __future__ import annotations

import asyncio
from typing import Any

from chatpilot.config import Config, get_config, set_config
from chatpilot.delegation import (
    HumanInTheLoopRegistry,
    InteractionCleanupScheduler,
    InteractionRequest,
    ResumeResult,
    TaskOrchestrator,
)
from chatpilot.exceptions import ConfigurationError, MessageNotFoundError
from chatpilot.executor import ToolExecutor
from chatpilot.llm import CompletionService
from chatpilot.logging import get_logger
from chatpilot.models import (
    Message,
    MessageStatus,
    Mode,
    ModeContext,
    Participant,
    ToolCall,
    ToolCallStatus,
)
from chatpilot.modes import (
    AgentStrategy,
    AskStrategy,
    ModeStrategy,
    QueryStrategy,
    ResponseOutcome,
    StrategyRequest,
)
from chatpilot.modes.agent import AGENT_FAILED_TEXT, post_pending_approvals
from chatpilot.prompts import PromptAssembler
from chatpilot.store import ChatStore
from chatpilot.summarizer import ResultSummarizer, SummaryContext
from chatpilot.tool_calls import ToolCallStateMachine
from chatpilot.tools.registry import ServerToolRegistry, ToolRegistry
from chatpilot.tools.servers import ToolServerPool

log = get_logger(__name__)

_QUERY_SECTION_SUFFIXES = {"knowledge", "kb", "query"}
_AGENT_SECTION_SUFFIXES = {"agent"}


def select_mode(context: ModeContext) -> Mode:
    """Pick the response strategy for a context. Copilot sessions always use ask."""
    if context.is_copilot:
        return Mode.ASK
    if context.mode is not None:
        return Mode(context.mode)
    suffix = context.section.rsplit(":", 1)[-1].strip().lower()
    if suffix in _QUERY_SECTION_SUFFIXES:
        return Mode.QUERY
    if suffix in _AGENT_SECTION_SUFFIXES:
        return Mode.AGENT
    return Mode.ASK


class ResponseOrchestrator:
    """Entry point for generating responses and handling tool-call actions."""

    def __init__(
        self,
        store: ChatStore,
        completion: CompletionService,
        *,
        retrieval: CompletionService | None = None,
        task_orchestrator: TaskOrchestrator | None = None,
        tool_servers: ToolServerPool | None = None,
        tool_registry: ToolRegistry | None = None,
        prompts: PromptAssembler | None = None,
        config: Config | None = None,
    ):
        self.config = config or get_config()
        self.store = store
        self.completion = completion
        self.retrieval = retrieval or completion
        self.task_orchestrator = task_orchestrator
        self.tool_servers = tool_servers or ToolServerPool.from_config(self.config)
        self.tool_registry = tool_registry or ServerToolRegistry(self.tool_servers)
        self.prompts = prompts or PromptAssembler.from_config(self.config)

        self.interactions = HumanInTheLoopRegistry()
        self.cleanup = InteractionCleanupScheduler(self.interactions)

        self.state_machine = ToolCallStateMachine(
            store,
            approval_policy=self.config.approval_policy(),
            task_orchestrator=task_orchestrator,
        )
        self.executor = ToolExecutor(self.state_machine, self.tool_servers, store)
        self.summarizer = ResultSummarizer(store, completion)
        self.state_machine.add_listener(self._resolve_interaction)
        self.state_machine.add_listener(self.summarizer.on_tool_call_changed)
        self.state_machine.add_resume_listener(self._on_workflow_resumed)

        window = self.config.agent.history_window
        self.strategies: dict[Mode, ModeStrategy] = {
            Mode.ASK: AskStrategy(store, completion, history_window=window, tool_registry=self.tool_registry),
            Mode.QUERY: QueryStrategy(store, self.retrieval, self.config.query, history_window=window),
        }
        self.agent: AgentStrategy | None = None
        if task_orchestrator is not None:
            self.agent = AgentStrategy(
                store,
                task_orchestrator,
                self.tool_registry,
                self.interactions,
                self.cleanup,
                self.config.agent,
            )
            self.strategies[Mode.AGENT] = self.agent

        self._summary_contexts: dict[str, SummaryContext] = {}
        self._paused_threads: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _validate(self, mode: Mode, context: ModeContext, model: str, provider: str) -> None:
        if not model or not provider:
            if mode == Mode.AGENT:
                raise ConfigurationError("No model or provider selected for Agent Task.")
            raise ConfigurationError("No model or provider selected.")
        if mode == Mode.QUERY and not context.workspace_id:
            raise ConfigurationError("Query mode requires a workspace.")
        if mode == Mode.AGENT and self.agent is None:
            raise ConfigurationError("Agent mode requires a task orchestrator.")
        if mode not in self.strategies:
            raise ConfigurationError(f"Unsupported AI mode: {mode.value}")

    async def respond(
        self,
        chat_id: str,
        user_text: str,
        context: ModeContext,
        *,
        user: Participant,
        assistant: Participant,
        history: list[Message] | None = None,
        model: str | None = None,
        provider: str | None = None,
    ) -> ResponseOutcome:
        """Generate the assistant response for one user message.

        Raises:
            ConfigurationError: before anything is written, when the model,
                provider or (for query mode) workspace is missing.
        """
        mode = select_mode(context)
        model = model if model is not None else self.config.model.model
        provider = provider if provider is not None else self.config.model.provider
        self._validate(mode, context, model, provider)

        avatar = context.avatar if context.is_avatar else None
        speaker = avatar.as_participant() if avatar else assistant
        file_context = context.file_context if context.is_copilot else None

        if history is None:
            history = await self.store.get_messages(chat_id, limit=self.config.agent.history_window)

        system_prompt = self.prompts.build(
            mode,
            user,
            assistant,
            avatar=avatar,
            kb_ids=context.kb_ids,
            query_engine=self.config.query.query_engine,
            embedding_model=self.config.query.embedding_model,
            file_context=file_context,
        )

        request = StrategyRequest(
            chat_id=chat_id,
            user_text=user_text,
            context=context,
            user=user,
            assistant=speaker,
            system_prompt=system_prompt,
            model=model,
            provider=provider,
            history=history,
            assistant_ids={assistant.id, speaker.id},
        )
        self._summary_contexts[chat_id] = SummaryContext(
            user=user,
            assistant=speaker,
            model=model,
            provider=provider,
        )

        log.info("Generating response", chat_id=chat_id, mode=mode.value, section=context.section)
        strategy = self.strategies[mode]
        try:
            outcome = await strategy.run(request)
        except Exception as e:
            log.error("Response strategy raised", chat_id=chat_id, mode=mode.value, error=str(e))
            outcome = ResponseOutcome(success=False, mode=mode, error=str(e))

        if outcome.awaiting_human and outcome.thread_id:
            self._paused_threads[chat_id] = outcome.thread_id
        if outcome.tool_calls and outcome.message_id:
            try:
                message = await self._load(outcome.message_id)
                outcome.tool_calls = message.tool_calls
                await self.process_tool_calls(message)
            except Exception as e:
                log.error("Processing proposed tool calls failed", message_id=outcome.message_id, error=str(e))
        return outcome

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def _load(self, message_id: str) -> Message:
        message = await self.store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    def _track_for_summary(self, message: Message) -> None:
        if not any(not call.is_delegated for call in message.tool_calls):
            return
        if self.summarizer.has_summarized(message.id):
            return
        context = self._summary_contexts.get(message.chat_id)
        if context is None:
            context = SummaryContext.for_message(message, self.config.model.model, self.config.model.provider)
        self.summarizer.track(message.id, context)

    async def attach_tool_calls(self, message_id: str, tool_calls: list[ToolCall]) -> Message:
        """Attach proposed tool calls to an existing message and process them."""
        message = await self._load(message_id)
        for call in tool_calls:
            if message.find_tool_call(call.id) is None:
                message.tool_calls.append(call)
        await self.store.update_message(message)
        await self.process_tool_calls(message)
        return message

    async def process_tool_calls(self, message: Message) -> list[ToolCall]:
        """Auto-approve eligible calls and execute the ones just approved."""
        self._track_for_summary(message)
        approved = await self.state_machine.auto_approve(message)
        if approved:
            await asyncio.gather(*(self.executor.execute(message, call.id) for call in approved))
        return approved

    async def approve_tool_call(self, message_id: str, tool_call_id: str) -> ToolCall:
        """User approval: approve then execute."""
        message = await self._load(message_id)
        self._track_for_summary(message)
        if await self.state_machine.approve(message, tool_call_id):
            await self.executor.execute(message, tool_call_id)
        return self.state_machine.get_tool_call(message, tool_call_id)

    async def execute_tool_call(self, message_id: str, tool_call_id: str) -> ToolCall:
        """Run an already approved call (e.g. after a reconnect)."""
        message = await self._load(message_id)
        self._track_for_summary(message)
        return await self.executor.execute(message, tool_call_id)

    async def deny_tool_call(self, message_id: str, tool_call_id: str) -> ToolCall:
        message = await self._load(message_id)
        await self.state_machine.deny(message, tool_call_id)
        return self.state_machine.get_tool_call(message, tool_call_id)

    async def reset_tool_call(self, message_id: str, tool_call_id: str) -> ToolCall:
        """Return a call to pending; auto-approval is re-evaluated right away."""
        message = await self._load(message_id)
        if await self.state_machine.reset(message, tool_call_id):
            await self.process_tool_calls(message)
        return self.state_machine.get_tool_call(message, tool_call_id)

    async def get_tool_call_logs(self, tool_call_id: str) -> list[str]:
        return await self.store.get_tool_call_logs(tool_call_id)

    async def _resolve_interaction(self, message: Message, call: ToolCall) -> None:
        """Answer the pending approval interaction once a delegated call is decided."""
        if not call.is_delegated or not call.approval_id:
            return
        status = ToolCallStatus(call.status)
        if status in (ToolCallStatus.APPROVED, ToolCallStatus.DENIED):
            self.interactions.resolve_approval(call.approval_id, approved=status == ToolCallStatus.APPROVED)

    async def _on_workflow_resumed(self, message: Message, call: ToolCall, resume: ResumeResult) -> None:
        chat_id = message.chat_id
        thread_id = call.thread_id or self._paused_threads.get(chat_id, "")
        assistant = message.sender_object or Participant(id=message.sender, username=message.sender)

        if resume.requires_human_interaction:
            if resume.pending_approvals:
                follow_up = await post_pending_approvals(
                    self.store,
                    self.interactions,
                    chat_id,
                    thread_id,
                    assistant,
                    resume.pending_approvals,
                    workspace_id=message.workspace_id,
                )
                log.info("Workflow paused again", thread_id=thread_id, message_id=follow_up.id)
            return

        final = Message.placeholder(chat_id, assistant, workspace_id=message.workspace_id)
        if resume.success and resume.completed:
            final.text = resume.result or ""
            final.status = MessageStatus.COMPLETED
        elif not resume.success:
            final.text = resume.error or AGENT_FAILED_TEXT
            final.status = MessageStatus.FAILED
        else:
            return
        await self.store.append_message(final)
        log.info("Workflow finished", thread_id=thread_id, status=final.status.value)

        if thread_id:
            self.interactions.clear(thread_id)
            if self.agent is not None:
                self.agent.finish(chat_id, thread_id)
        if self._paused_threads.get(chat_id) == thread_id:
            self._paused_threads.pop(chat_id, None)

    # ------------------------------------------------------------------
    # Aborts and inspection
    # ------------------------------------------------------------------

    def abort(self, message_id: str) -> bool:
        """Stop the stream that is filling a message."""
        stream_id = f"stream-{message_id}"
        stopped = self.completion.abort(stream_id)
        if self.retrieval is not self.completion:
            stopped = self.retrieval.abort(stream_id) or stopped
        return stopped

    async def abort_agent_task(self, chat_id: str) -> bool:
        """Cancel the chat's delegated task and clear its pending interactions now."""
        self._paused_threads.pop(chat_id, None)
        if self.agent is None:
            return False
        return await self.agent.abort(chat_id)

    def paused_thread(self, chat_id: str) -> str | None:
        return self._paused_threads.get(chat_id)

    def pending_interactions(self, chat_id: str) -> list[InteractionRequest]:
        thread_id = self._paused_threads.get(chat_id)
        if not thread_id:
            return []
        return self.interactions.pending(thread_id)

    async def close(self) -> None:
        await self.cleanup.shutdown()


def create_orchestrator(
    store: ChatStore | None = None,
    task_orchestrator: TaskOrchestrator | None = None,
    config: Config | None = None,
    **overrides: Any,
) -> ResponseOrchestrator:
    """Build an orchestrator from configuration and the global providers."""
    from chatpilot.llm import get_provider, get_retrieval_provider
    from chatpilot.logging import configure_logging
    from chatpilot.store import create_store

    if config is not None:
        set_config(config)
    config = get_config()
    configure_logging()
    return ResponseOrchestrator(
        store or create_store(config),
        overrides.pop("completion", None) or get_provider(),
        retrieval=overrides.pop("retrieval", None) or get_retrieval_provider(),
        task_orchestrator=task_orchestrator,
        config=config,
        **overrides,
    )
