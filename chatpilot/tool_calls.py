"""Tool-call lifecycle state machine.

Lifecycle::

    pending --approve--> approved --begin--> executing --complete--> executed
       |                    |                    \\--fail------> error
       \\--deny--> denied    |
                            v
    approved / denied / executed / error --reset--> pending

Any other requested change is rejected without side effects. Two guard sets
keyed by ``(origin, id)`` prevent a tool call from being executed twice at
once and from being auto-approved more than once.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from chatpilot.delegation import (
    HumanInteractionResponse,
    ResumeResult,
    TaskOrchestrator,
    ToolExecutionOutcome,
)
from chatpilot.exceptions import InvalidTransitionError, ToolCallNotFoundError
from chatpilot.logging import get_logger
from chatpilot.models import ApprovalPolicy, Message, ToolCall, ToolCallStatus, utcnow_iso
from chatpilot.store import ChatStore, DelegatedExecution

log = get_logger(__name__)

PENDING = ToolCallStatus.PENDING
APPROVED = ToolCallStatus.APPROVED
DENIED = ToolCallStatus.DENIED
EXECUTING = ToolCallStatus.EXECUTING
EXECUTED = ToolCallStatus.EXECUTED
ERROR = ToolCallStatus.ERROR

_TRANSITIONS: dict[ToolCallStatus, set[ToolCallStatus]] = {
    PENDING: {APPROVED, DENIED},
    APPROVED: {EXECUTING, PENDING},
    DENIED: {PENDING},
    EXECUTING: {EXECUTED, ERROR},
    EXECUTED: {PENDING},
    ERROR: {PENDING},
}

_UNSET: Any = object()

ToolCallListener = Callable[[Message, ToolCall], Awaitable[None]]
ResumeListener = Callable[[Message, ToolCall, ResumeResult], Awaitable[None]]


def can_transition(current: ToolCallStatus | str, target: ToolCallStatus | str) -> bool:
    return ToolCallStatus(target) in _TRANSITIONS[ToolCallStatus(current)]


class ToolCallStateMachine:
    """Applies lifecycle transitions to tool calls attached to messages."""

    def __init__(
        self,
        store: ChatStore,
        approval_policy: ApprovalPolicy | None = None,
        task_orchestrator: TaskOrchestrator | None = None,
    ):
        self.store = store
        self.approval_policy = approval_policy or ApprovalPolicy()
        self.task_orchestrator = task_orchestrator
        self._executing: set[tuple[str, str]] = set()
        self._auto_approved: set[tuple[str, str]] = set()
        self._listeners: list[ToolCallListener] = []
        self._resume_listeners: list[ResumeListener] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ToolCallListener) -> None:
        """Register a callback awaited after every applied transition."""
        self._listeners.append(listener)

    def add_resume_listener(self, listener: ResumeListener) -> None:
        """Register a callback awaited with each delegated workflow resume result."""
        self._resume_listeners.append(listener)

    async def _notify(self, message: Message, call: ToolCall) -> None:
        for listener in list(self._listeners):
            try:
                await listener(message, call)
            except Exception as e:
                log.error("Tool call listener failed", tool_call_id=call.id, error=str(e))

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def is_executing(self, call: ToolCall) -> bool:
        return call.key in self._executing

    def is_auto_approved(self, call: ToolCall) -> bool:
        return call.key in self._auto_approved

    @staticmethod
    def get_tool_call(message: Message, tool_call_id: str) -> ToolCall:
        call = message.find_tool_call(tool_call_id)
        if call is None:
            raise ToolCallNotFoundError(message.id, tool_call_id)
        return call

    # ------------------------------------------------------------------
    # Core transition
    # ------------------------------------------------------------------

    async def transition(
        self,
        message: Message,
        call: ToolCall,
        target: ToolCallStatus,
        *,
        result: Any = _UNSET,
        seconds: int | None = None,
        strict: bool = False,
    ) -> bool:
        """Apply one transition; returns False (or raises when strict) if it is not allowed."""
        current = ToolCallStatus(call.status)
        target = ToolCallStatus(target)
        if not can_transition(current, target):
            log.warning(
                "Rejected tool call transition",
                tool_call_id=call.id,
                current=current.value,
                requested=target.value,
            )
            if strict:
                raise InvalidTransitionError(call.id, current.value, target.value)
            return False

        call.status = target
        if target == PENDING:
            call.result = None
            call.execution_seconds = None
        elif target in (EXECUTED, ERROR):
            call.result = None if result is _UNSET else result
            call.execution_seconds = seconds

        await self.store.update_tool_call(message.id, call)
        if call.is_delegated:
            record = DelegatedExecution.from_tool_call(message.id, call)
            if target == APPROVED:
                record.approved_at = utcnow_iso()
            else:
                previous = await self.store.get_delegated_execution(record.approval_id)
                if previous is not None:
                    record.approved_at = previous.approved_at
            await self.store.save_delegated_execution(record)

        log.debug(
            "Tool call transition",
            tool_call_id=call.id,
            origin=call.key[0],
            status=target.value,
        )
        await self._notify(message, call)
        return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def approve(self, message: Message, tool_call_id: str) -> bool:
        call = self.get_tool_call(message, tool_call_id)
        return await self.transition(message, call, APPROVED)

    async def deny(self, message: Message, tool_call_id: str) -> bool:
        """Deny a pending call; delegated denials are reported to the task orchestrator."""
        call = self.get_tool_call(message, tool_call_id)
        applied = await self.transition(message, call, DENIED)
        if applied and call.is_delegated:
            await self.report_delegated(message, call, approved=False)
        return applied

    async def auto_approve(self, message: Message) -> list[ToolCall]:
        """Approve pending calls whose server is auto-approved, once per call."""
        approved: list[ToolCall] = []
        for call in list(message.tool_calls):
            if ToolCallStatus(call.status) != PENDING or not call.server_id:
                continue
            if call.key in self._auto_approved:
                continue
            if not self.approval_policy.is_auto_approved(call.server_id):
                continue
            self._auto_approved.add(call.key)
            if await self.transition(message, call, APPROVED):
                log.info("Auto-approved tool call", tool_call_id=call.id, server_id=call.server_id)
                approved.append(call)
        return approved

    async def begin_execution(self, message: Message, tool_call_id: str) -> bool:
        """Move an approved call to executing unless it is already in flight."""
        call = self.get_tool_call(message, tool_call_id)
        if call.key in self._executing:
            log.debug("Tool call already executing", tool_call_id=call.id)
            return False
        if ToolCallStatus(call.status) != APPROVED:
            log.warning("Tool call not approved", tool_call_id=call.id, status=ToolCallStatus(call.status).value)
            return False
        self._executing.add(call.key)
        try:
            applied = await self.transition(message, call, EXECUTING)
        except Exception:
            self._executing.discard(call.key)
            raise
        if not applied:
            self._executing.discard(call.key)
        return applied

    async def complete(
        self,
        message: Message,
        tool_call_id: str,
        result: Any,
        seconds: int | None = None,
    ) -> bool:
        call = self.get_tool_call(message, tool_call_id)
        try:
            return await self.transition(message, call, EXECUTED, result=result, seconds=seconds)
        finally:
            self._executing.discard(call.key)

    async def fail(
        self,
        message: Message,
        tool_call_id: str,
        error: str,
        seconds: int | None = None,
    ) -> bool:
        call = self.get_tool_call(message, tool_call_id)
        try:
            return await self.transition(message, call, ERROR, result=error, seconds=seconds)
        finally:
            self._executing.discard(call.key)

    async def reset(self, message: Message, tool_call_id: str) -> bool:
        """Return a call to pending so it can be re-evaluated (including auto-approval)."""
        call = self.get_tool_call(message, tool_call_id)
        applied = await self.transition(message, call, PENDING)
        if applied:
            self._auto_approved.discard(call.key)
        return applied

    # ------------------------------------------------------------------
    # Delegated workflow reporting
    # ------------------------------------------------------------------

    async def report_delegated(
        self,
        message: Message,
        call: ToolCall,
        approved: bool,
        outcome: ToolExecutionOutcome | None = None,
    ) -> ResumeResult | None:
        """Send the human decision (and execution outcome) back to the task orchestrator."""
        if self.task_orchestrator is None or not call.approval_id:
            log.warning("No task orchestrator for delegated tool call", tool_call_id=call.id)
            return None

        response = HumanInteractionResponse(
            id=call.approval_id,
            approved=approved,
            tool_execution_result=outcome,
        )
        try:
            resume = await self.task_orchestrator.respond_to_approval(call.approval_id, response)
        except Exception as e:
            log.error("Workflow resume failed", approval_id=call.approval_id, error=str(e))
            resume = ResumeResult(success=False, error=str(e))

        for listener in list(self._resume_listeners):
            try:
                await listener(message, call, resume)
            except Exception as e:
                log.error("Resume listener failed", approval_id=call.approval_id, error=str(e))
        return resume
