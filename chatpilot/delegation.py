"""Delegated task execution: orchestrator interface and human-in-the-loop bookkeeping.

Agent-mode requests are handed to an external task orchestrator. When the
orchestrator needs a human decision (usually a tool approval) it registers an
interaction under the task's thread id and pauses. Entries are cleared
explicitly on abort, or by a delayed cleanup as a fallback.
"""

from __future__ import annotations

import asyncio
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from chatpilot.exceptions import DelegationError
from chatpilot.logging import get_logger
from chatpilot.models import utcnow_iso

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class KnowledgeBaseOptions(BaseModel):
    enabled: bool = True
    selected_kb_ids: list[str] = Field(default_factory=list)
    workspace_id: str | None = None


class TaskOptions(BaseModel):
    """Options for one delegated task."""

    model: str
    provider: str
    temperature: float = 0.7
    tools: list[dict[str, Any]] = Field(default_factory=list)
    system_prompt: str = ""
    thread_id: str
    human_in_the_loop: bool = True
    limits: dict[str, int] = Field(default_factory=dict)
    knowledge_bases: KnowledgeBaseOptions | None = None


class TaskRequest(BaseModel):
    task_description: str
    options: TaskOptions


class PendingToolApproval(BaseModel):
    """A tool call the paused workflow wants a human to approve."""

    approval_id: str
    tool_name: str
    arguments: dict[str, Any] | str = Field(default_factory=dict)
    server_id: str | None = None
    description: str = ""


class TaskResult(BaseModel):
    """Outcome of ``execute_task``."""

    success: bool
    result: str | None = None
    error: str | None = None
    requires_human_interaction: bool = False
    pending_approvals: list[PendingToolApproval] = Field(default_factory=list)
    task_id: str | None = None


class ToolExecutionOutcome(BaseModel):
    """Result of a locally executed delegated tool call, reported back on resume."""

    success: bool
    result: Any = None
    error: str | None = None
    tool_name: str
    server_id: str | None = None


class HumanInteractionResponse(BaseModel):
    id: str
    approved: bool
    tool_execution_result: ToolExecutionOutcome | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class ResumeResult(BaseModel):
    """Outcome of resuming a paused workflow."""

    success: bool
    completed: bool = False
    result: str | None = None
    error: str | None = None
    requires_human_interaction: bool = False
    pending_approvals: list[PendingToolApproval] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator interface
# ---------------------------------------------------------------------------


class TaskOrchestrator(ABC):
    """External multi-agent task execution service."""

    @abstractmethod
    async def execute_task(self, request: TaskRequest) -> TaskResult:
        pass

    @abstractmethod
    async def respond_to_approval(
        self,
        approval_id: str,
        response: HumanInteractionResponse,
    ) -> ResumeResult:
        pass

    @abstractmethod
    async def abort_task(self, task_id: str) -> bool:
        pass


class HTTPTaskOrchestrator(TaskOrchestrator):
    """Task orchestrator reached over HTTP JSON endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 600.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(f"{self.base_url}{path}", json=body, headers=self._headers())
        except httpx.HTTPError as e:
            raise DelegationError(f"Task orchestrator unreachable: {e}")
        if not response.is_success:
            raise DelegationError(f"Task orchestrator error {response.status_code}: {response.text}")
        return response.json() if response.content else {}

    async def execute_task(self, request: TaskRequest) -> TaskResult:
        data = await self._post("/tasks", request.model_dump(mode="json"))
        return TaskResult.model_validate(data)

    async def respond_to_approval(
        self,
        approval_id: str,
        response: HumanInteractionResponse,
    ) -> ResumeResult:
        data = await self._post(f"/approvals/{approval_id}", response.model_dump(mode="json"))
        return ResumeResult.model_validate(data)

    async def abort_task(self, task_id: str) -> bool:
        data = await self._post(f"/tasks/{task_id}/abort", {})
        return bool(data.get("success", True))

    async def close(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# Human-in-the-loop registry
# ---------------------------------------------------------------------------


InteractionType = Literal["approval", "edit", "input", "tool_approval"]


@dataclass
class InteractionRequest:
    """A pending request for a human decision."""

    id: str
    thread_id: str
    type: str
    title: str = ""
    description: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)


class HumanInTheLoopRegistry:
    """Pending human interactions keyed by interaction id, grouped by thread id."""

    def __init__(self):
        self._pending: dict[str, InteractionRequest] = {}
        self._waiters: dict[str, asyncio.Future[HumanInteractionResponse]] = {}

    def request(
        self,
        thread_id: str,
        type: InteractionType = "tool_approval",
        title: str = "",
        description: str = "",
        data: dict[str, Any] | None = None,
    ) -> InteractionRequest:
        interaction_id = f"{type}_{int(time.time() * 1000)}_{random.randrange(16**9):09x}"
        interaction = InteractionRequest(
            id=interaction_id,
            thread_id=thread_id,
            type=type,
            title=title,
            description=description,
            data=dict(data or {}),
        )
        self._pending[interaction_id] = interaction
        log.info("Human interaction requested", interaction_id=interaction_id, thread_id=thread_id, type=type)
        return interaction

    async def wait(
        self,
        interaction_id: str,
        timeout: float | None = None,
    ) -> HumanInteractionResponse:
        """Wait for a response. Raises KeyError for unknown ids and TimeoutError on timeout."""
        if interaction_id not in self._pending:
            raise KeyError(interaction_id)
        future = self._waiters.get(interaction_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._waiters[interaction_id] = future
        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)

    def respond(self, response: HumanInteractionResponse) -> bool:
        """Resolve a pending interaction. Returns False when it is unknown or already cleared."""
        interaction = self._pending.pop(response.id, None)
        if interaction is None:
            log.warning("Response for unknown interaction", interaction_id=response.id)
            return False
        future = self._waiters.pop(response.id, None)
        if future is not None and not future.done():
            future.set_result(response)
        log.info("Human interaction answered", interaction_id=response.id, approved=response.approved)
        return True

    def find_by_approval(self, approval_id: str) -> InteractionRequest | None:
        for item in self._pending.values():
            if item.data.get("approval_id") == approval_id:
                return item
        return None

    def resolve_approval(self, approval_id: str, approved: bool) -> bool:
        """Answer the tool-approval interaction linked to a workflow approval id."""
        interaction = self.find_by_approval(approval_id)
        if interaction is None:
            return False
        return self.respond(HumanInteractionResponse(id=interaction.id, approved=approved))

    def pending(self, thread_id: str | None = None) -> list[InteractionRequest]:
        return [
            item for item in self._pending.values()
            if thread_id is None or item.thread_id == thread_id
        ]

    def clear(self, thread_id: str) -> int:
        """Drop every pending interaction of a thread; waiters are cancelled."""
        ids = [item.id for item in self._pending.values() if item.thread_id == thread_id]
        for interaction_id in ids:
            self._pending.pop(interaction_id, None)
            future = self._waiters.pop(interaction_id, None)
            if future is not None and not future.done():
                future.cancel()
        if ids:
            log.info("Cleared human interactions", thread_id=thread_id, count=len(ids))
        return len(ids)


# ---------------------------------------------------------------------------
# Cleanup and cancellation
# ---------------------------------------------------------------------------


class InteractionCleanupScheduler:
    """Clears a thread's pending interactions after a delay."""

    def __init__(self, registry: HumanInTheLoopRegistry):
        self.registry = registry
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def schedule(self, thread_id: str, delay_seconds: float) -> asyncio.Task[None]:
        previous = self._tasks.pop(thread_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(self._run(thread_id, delay_seconds))
        self._tasks[thread_id] = task
        return task

    async def _run(self, thread_id: str, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(max(0.0, delay_seconds))
            self.registry.clear(thread_id)
        finally:
            if self._tasks.get(thread_id) is asyncio.current_task():
                self._tasks.pop(thread_id, None)

    def is_scheduled(self, thread_id: str) -> bool:
        task = self._tasks.get(thread_id)
        return task is not None and not task.done()

    def cancel(self, thread_id: str) -> None:
        task = self._tasks.pop(thread_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class CancellationToken:
    """Handle for aborting one delegated agent task."""

    def __init__(self, thread_id: str, task_orchestrator: TaskOrchestrator, registry: HumanInTheLoopRegistry):
        self.thread_id = thread_id
        self.task_id: str | None = None
        self._orchestrator = task_orchestrator
        self._registry = registry
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def cancel(self) -> bool:
        """Abort the task and clear its interactions immediately. Idempotent."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._registry.clear(self.thread_id)
        try:
            return await self._orchestrator.abort_task(self.task_id or self.thread_id)
        except Exception as e:
            log.warning("Agent task abort failed", thread_id=self.thread_id, error=str(e))
            return False
