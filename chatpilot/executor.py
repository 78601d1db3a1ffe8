"""Runs approved tool calls on their tool-execution servers."""

import json
import time
from typing import Any

from chatpilot.delegation import ToolExecutionOutcome
from chatpilot.exceptions import InvalidToolArgumentsError
from chatpilot.logging import get_logger, tool_call_context
from chatpilot.models import Message, ToolCall
from chatpilot.store import ChatStore
from chatpilot.tool_calls import ToolCallStateMachine
from chatpilot.tools.servers import ToolServerPool, ToolServerResult

log = get_logger(__name__)


def _dump(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class ToolExecutor:
    """Executes approved tool calls and records their outcome.

    Every step is written to the per-call log so failures can be inspected
    later. Delegated calls additionally report the outcome to the task
    orchestrator, which resumes the paused workflow.
    """

    def __init__(
        self,
        state_machine: ToolCallStateMachine,
        servers: ToolServerPool,
        store: ChatStore | None = None,
    ):
        self.state_machine = state_machine
        self.servers = servers
        self.store = store or state_machine.store

    async def _log(self, call: ToolCall, line: str) -> None:
        try:
            await self.store.append_tool_call_log(call.id, line)
        except Exception as e:
            log.warning("Failed to write tool call log", tool_call_id=call.id, error=str(e))

    async def execute(self, message: Message, tool_call_id: str) -> ToolCall:
        """Execute one approved tool call; returns the call in its resulting state."""
        sm = self.state_machine
        call = sm.get_tool_call(message, tool_call_id)
        if sm.is_executing(call):
            log.debug("Skipping duplicate execution", tool_call_id=call.id)
            return call
        with tool_call_context(message.id, call.id, call.key[0], call.server_id):
            return await self._run(message, call)

    async def _run(self, message: Message, call: ToolCall) -> ToolCall:
        sm = self.state_machine
        connection = self.servers.get(call.server_id)
        if connection is None:
            if not call.server_id:
                diagnostic = f"No tool server specified for tool {call.function_name}"
            else:
                diagnostic = f"Could not find tool server configuration for {call.server_id}"
            if await sm.begin_execution(message, call.id):
                await self._log(call, f"Error: {diagnostic}")
                await sm.fail(message, call.id, diagnostic, seconds=0)
                await self._report(message, call, ToolServerResult(success=False, error=diagnostic))
            return call

        if not await sm.begin_execution(message, call.id):
            return call

        await self._log(call, f"Starting execution of tool {call.function_name} on server {connection.name}")
        started = time.monotonic()

        try:
            arguments = call.parsed_arguments()
        except InvalidToolArgumentsError as e:
            outcome = ToolServerResult(success=False, error=str(e))
        else:
            try:
                outcome = await connection.call(call.function_name, arguments)
            except Exception as e:
                log.error("Tool execution raised", tool=call.function_name, server_id=connection.id, error=str(e))
                outcome = ToolServerResult(success=False, error=str(e) or type(e).__name__)

        seconds = int(time.monotonic() - started)

        if outcome.success:
            await sm.complete(message, call.id, outcome.data, seconds=seconds)
            await self._log(
                call,
                f"Tool execution completed successfully in {seconds}s. Result: {_dump(outcome.data)}",
            )
            log.info("Tool executed", tool=call.function_name, server_id=connection.id, seconds=seconds)
        else:
            await sm.fail(message, call.id, outcome.error or "Tool execution failed", seconds=seconds)
            await self._log(call, f"Tool execution failed: {outcome.error}")
            log.warning("Tool execution failed", tool=call.function_name, server_id=connection.id, error=outcome.error)

        await self._report(message, call, outcome)
        return call

    async def _report(self, message: Message, call: ToolCall, outcome: ToolServerResult) -> None:
        if not call.is_delegated:
            return
        await self.state_machine.report_delegated(
            message,
            call,
            approved=True,
            outcome=ToolExecutionOutcome(
                success=outcome.success,
                result=outcome.data if outcome.success else None,
                error=None if outcome.success else outcome.error,
                tool_name=call.function_name,
                server_id=call.server_id,
            ),
        )
