"""Agent mode: the request is delegated to the external task orchestrator."""

import time

from chatpilot.config import AgentConfig
from chatpilot.delegation import (
    CancellationToken,
    HumanInTheLoopRegistry,
    InteractionCleanupScheduler,
    KnowledgeBaseOptions,
    PendingToolApproval,
    TaskOptions,
    TaskOrchestrator,
    TaskRequest,
)
from chatpilot.logging import get_logger
from chatpilot.models import Message, MessageStatus, Mode, Participant, ToolCall
from chatpilot.modes.base import ModeStrategy, ResponseOutcome, StrategyRequest
from chatpilot.store import ChatStore
from chatpilot.tools.registry import ToolRegistry, resolve_tools

log = get_logger(__name__)

AGENT_FAILED_TEXT = "Agent task execution failed without specific error."


def new_thread_id(chat_id: str) -> str:
    return f"agent_mode_{chat_id}_{int(time.time() * 1000)}"


def build_task_description(request: StrategyRequest, history_window: int) -> str:
    recent = request.history[-history_window:] if history_window > 0 else []
    context = "\n".join(f"{item.sender_name}: {item.text}" for item in recent)
    description = f"Context: {context}\n\nCurrent request: {request.user_text}"
    kb_ids = request.context.kb_ids
    if kb_ids:
        description += (
            f"\n\nNote: You have access to Knowledge Base(s): [{', '.join(kb_ids)}]. "
            "Consider using them if they contain relevant information for this request."
        )
    return description


async def post_pending_approvals(
    store: ChatStore,
    registry: HumanInTheLoopRegistry,
    chat_id: str,
    thread_id: str,
    assistant: Participant,
    approvals: list[PendingToolApproval],
    workspace_id: str | None = None,
) -> Message:
    """Append an assistant message carrying the workflow's delegated tool calls."""
    message = Message.placeholder(chat_id, assistant, workspace_id=workspace_id)
    for approval in approvals:
        registry.request(
            thread_id,
            type="tool_approval",
            title=approval.tool_name,
            description=approval.description,
            data={"approval_id": approval.approval_id, "server_id": approval.server_id},
        )
        message.tool_calls.append(ToolCall.delegated(
            approval_id=approval.approval_id,
            thread_id=thread_id,
            function_name=approval.tool_name,
            arguments=approval.arguments,
            server_id=approval.server_id,
            description=approval.description,
        ))
    message.status = MessageStatus.COMPLETED
    await store.append_message(message)
    return message


class AgentStrategy(ModeStrategy):
    mode = Mode.AGENT

    def __init__(
        self,
        store: ChatStore,
        task_orchestrator: TaskOrchestrator,
        tool_registry: ToolRegistry,
        interactions: HumanInTheLoopRegistry,
        cleanup: InteractionCleanupScheduler,
        settings: AgentConfig | None = None,
    ):
        self.store = store
        self.task_orchestrator = task_orchestrator
        self.tool_registry = tool_registry
        self.interactions = interactions
        self.cleanup = cleanup
        self.settings = settings or AgentConfig()
        self._active: dict[str, CancellationToken] = {}

    def active_token(self, chat_id: str) -> CancellationToken | None:
        return self._active.get(chat_id)

    async def abort(self, chat_id: str) -> bool:
        token = self._active.pop(chat_id, None)
        if token is None:
            return False
        self.cleanup.cancel(token.thread_id)
        return await token.cancel()

    def finish(self, chat_id: str, thread_id: str) -> None:
        """Forget the paused task once its workflow has completed."""
        token = self._active.get(chat_id)
        if token is not None and token.thread_id == thread_id:
            self._active.pop(chat_id, None)

    async def _append_result(self, request: StrategyRequest, text: str, status: MessageStatus) -> Message:
        message = Message.placeholder(
            request.chat_id,
            request.assistant,
            workspace_id=request.context.workspace_id,
        )
        message.text = text
        message.status = status
        await self.store.append_message(message)
        return message

    async def run(self, request: StrategyRequest) -> ResponseOutcome:
        ctx = request.context
        thread_id = new_thread_id(request.chat_id)
        token = CancellationToken(thread_id, self.task_orchestrator, self.interactions)
        self._active[request.chat_id] = token
        awaiting_human = False

        try:
            tools = await resolve_tools(ctx.tool_server_ids, self.tool_registry)
            limits = ctx.limits or self.settings.limits.to_limits()
            knowledge_bases = None
            if ctx.kb_ids:
                knowledge_bases = KnowledgeBaseOptions(
                    enabled=True,
                    selected_kb_ids=list(ctx.kb_ids),
                    workspace_id=ctx.workspace_id,
                )
            task = TaskRequest(
                task_description=build_task_description(request, self.settings.history_window),
                options=TaskOptions(
                    model=request.model,
                    provider=request.provider,
                    temperature=self.settings.temperature,
                    tools=[tool.to_function_schema() for tool in tools],
                    system_prompt=request.system_prompt,
                    thread_id=thread_id,
                    human_in_the_loop=self.settings.human_in_the_loop,
                    limits=limits.to_dict(),
                    knowledge_bases=knowledge_bases,
                ),
            )
            log.info("Delegating agent task", chat_id=request.chat_id, thread_id=thread_id, tools=len(tools))

            result = await self.task_orchestrator.execute_task(task)
            token.task_id = result.task_id

            if token.cancelled:
                return ResponseOutcome(success=True, mode=self.mode, aborted=True, thread_id=thread_id)

            if result.requires_human_interaction:
                awaiting_human = True
                message_id = None
                if result.pending_approvals:
                    message = await post_pending_approvals(
                        self.store,
                        self.interactions,
                        request.chat_id,
                        thread_id,
                        request.assistant,
                        result.pending_approvals,
                        workspace_id=ctx.workspace_id,
                    )
                    message_id = message.id
                log.info("Agent task awaiting human input", thread_id=thread_id)
                return ResponseOutcome(
                    success=True,
                    mode=self.mode,
                    message_id=message_id,
                    awaiting_human=True,
                    thread_id=thread_id,
                )

            if result.success:
                message = await self._append_result(request, result.result or "", MessageStatus.COMPLETED)
                return ResponseOutcome(
                    success=True,
                    mode=self.mode,
                    message_id=message.id,
                    text=message.text,
                    thread_id=thread_id,
                )

            error = result.error or AGENT_FAILED_TEXT
            log.warning("Agent task failed", thread_id=thread_id, error=error)
            message = await self._append_result(request, error, MessageStatus.FAILED)
            return ResponseOutcome(
                success=False,
                mode=self.mode,
                message_id=message.id,
                text=error,
                error=error,
                thread_id=thread_id,
            )

        except Exception as e:
            log.error("Agent task raised", thread_id=thread_id, error=str(e))
            self.interactions.clear(thread_id)
            error = str(e) or AGENT_FAILED_TEXT
            message = await self._append_result(request, error, MessageStatus.FAILED)
            return ResponseOutcome(
                success=False,
                mode=self.mode,
                message_id=message.id,
                text=error,
                error=error,
                thread_id=thread_id,
            )

        finally:
            self.cleanup.schedule(thread_id, self.settings.cleanup_delay_seconds)
            if not awaiting_human:
                self.finish(request.chat_id, thread_id)
