import asyncio

import pytest

from chatpilot.config import ToolServerConfig
from chatpilot.delegation import ResumeResult, TaskOrchestrator, TaskResult
from chatpilot.executor import ToolExecutor
from chatpilot.models import Message, Participant, ToolCall, ToolCallStatus
from chatpilot.store import InMemoryChatStore
from chatpilot.tool_calls import ToolCallStateMachine
from chatpilot.tools.servers import ToolServerClient, ToolServerPool

ASSISTANT = Participant(id="a1", username="pilot")


class ScriptedClient(ToolServerClient):
    def __init__(self, payload=None, error: Exception | None = None, delay: float = 0.0):
        self.payload = payload
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str, dict]] = []

    async def list_tools(self, server):
        return []

    async def call_tool(self, server, tool_name, arguments):
        self.calls.append((server.id, tool_name, arguments))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.payload


class RecordingOrchestrator(TaskOrchestrator):
    def __init__(self):
        self.responses = []

    async def execute_task(self, request):
        return TaskResult(success=True)

    async def respond_to_approval(self, approval_id, response):
        self.responses.append(response)
        return ResumeResult(success=True, completed=True, result="workflow done")

    async def abort_task(self, task_id):
        return True


async def _setup(client, *calls, convention="lenient", orchestrator=None):
    store = InMemoryChatStore()
    pool = ToolServerPool([ToolServerConfig(id="files", result_convention=convention)], client)
    sm = ToolCallStateMachine(store, task_orchestrator=orchestrator)
    executor = ToolExecutor(sm, pool)
    message = Message.placeholder("chat-1", ASSISTANT)
    message.tool_calls = list(calls)
    await store.append_message(message)
    for call in calls:
        await sm.approve(message, call.id)
    return store, sm, executor, message


@pytest.mark.asyncio
async def test_successful_execution_records_result_and_logs():
    client = ScriptedClient(payload={"rows": 2})
    call = ToolCall(id="c1", function_name="query", arguments='{"table": "users"}', server_id="files")
    store, sm, executor, message = await _setup(client, call)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.EXECUTED
    assert result.result == {"rows": 2}
    assert result.execution_seconds == 0
    assert client.calls == [("files", "query", {"table": "users"})]
    logs = await store.get_tool_call_logs("c1")
    assert logs[0] == "Starting execution of tool query on server files"
    assert logs[1].startswith("Tool execution completed successfully in 0s. Result: ")
    assert '"rows": 2' in logs[1]


@pytest.mark.asyncio
async def test_empty_payload_counts_as_success_for_lenient_servers():
    call = ToolCall(id="c1", function_name="touch", server_id="files")
    _, _, executor, message = await _setup(ScriptedClient(payload=None), call)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.EXECUTED
    assert result.result is None


@pytest.mark.asyncio
async def test_failure_payload_marks_error():
    call = ToolCall(id="c1", function_name="query", server_id="files")
    store, _, executor, message = await _setup(
        ScriptedClient(payload={"success": False, "error": "permission denied"}),
        call,
        convention="standard",
    )

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.ERROR
    assert result.result == "permission denied"
    logs = await store.get_tool_call_logs("c1")
    assert logs[-1] == "Tool execution failed: permission denied"


@pytest.mark.asyncio
async def test_raised_exception_marks_error():
    call = ToolCall(id="c1", function_name="query", server_id="files")
    _, _, executor, message = await _setup(ScriptedClient(error=ConnectionError("server gone")), call)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.ERROR
    assert result.result == "server gone"


@pytest.mark.asyncio
async def test_invalid_json_arguments_mark_error_without_calling_server():
    client = ScriptedClient(payload="ok")
    call = ToolCall(id="c1", function_name="query", arguments="{not json", server_id="files")
    _, _, executor, message = await _setup(client, call)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.ERROR
    assert result.result.startswith("Invalid arguments for tool 'query'")
    assert client.calls == []


@pytest.mark.asyncio
async def test_missing_server_goes_to_error_with_diagnostic():
    call = ToolCall(id="c1", function_name="query", server_id="unknown")
    store, _, executor, message = await _setup(ScriptedClient(), call)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.ERROR
    assert result.result == "Could not find tool server configuration for unknown"
    assert (await store.get_tool_call_logs("c1")) == [
        "Error: Could not find tool server configuration for unknown"
    ]


@pytest.mark.asyncio
async def test_call_without_server_goes_to_error():
    call = ToolCall(id="c1", function_name="query", server_id=None)
    _, _, executor, message = await _setup(ScriptedClient(), call)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.ERROR
    assert "No tool server specified" in result.result


@pytest.mark.asyncio
async def test_concurrent_execute_runs_tool_once():
    client = ScriptedClient(payload="done", delay=0.05)
    call = ToolCall(id="c1", function_name="slow", server_id="files")
    _, _, executor, message = await _setup(client, call)

    await asyncio.gather(executor.execute(message, "c1"), executor.execute(message, "c1"))

    assert len(client.calls) == 1
    assert message.tool_calls[0].status == ToolCallStatus.EXECUTED


@pytest.mark.asyncio
async def test_unapproved_call_is_not_executed():
    client = ScriptedClient(payload="done")
    store = InMemoryChatStore()
    pool = ToolServerPool([ToolServerConfig(id="files")], client)
    executor = ToolExecutor(ToolCallStateMachine(store), pool)
    message = Message.placeholder("chat-1", ASSISTANT)
    message.tool_calls = [ToolCall(id="c1", function_name="x", server_id="files")]
    await store.append_message(message)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.PENDING
    assert client.calls == []


@pytest.mark.asyncio
async def test_unapproved_call_on_missing_server_leaves_log_empty():
    store = InMemoryChatStore()
    pool = ToolServerPool([ToolServerConfig(id="files")], ScriptedClient())
    executor = ToolExecutor(ToolCallStateMachine(store), pool)
    message = Message.placeholder("chat-1", ASSISTANT)
    message.tool_calls = [ToolCall(id="c1", function_name="x", server_id="unknown")]
    await store.append_message(message)

    result = await executor.execute(message, "c1")

    assert result.status == ToolCallStatus.PENDING
    assert result.result is None
    assert await store.get_tool_call_logs("c1") == []


@pytest.mark.asyncio
async def test_delegated_execution_reports_outcome_to_orchestrator():
    orchestrator = RecordingOrchestrator()
    call = ToolCall.delegated("ap-1", "thread-1", "query", {"q": 1}, server_id="files")
    _, sm, executor, message = await _setup(ScriptedClient(payload="42"), call, orchestrator=orchestrator)
    resumes = []

    async def _on_resume(msg, tool_call, resume):
        resumes.append(resume)

    sm.add_resume_listener(_on_resume)

    result = await executor.execute(message, call.id)

    assert result.status == ToolCallStatus.EXECUTED
    assert len(orchestrator.responses) == 1
    response = orchestrator.responses[0]
    assert response.id == "ap-1"
    assert response.approved is True
    assert response.tool_execution_result.success is True
    assert response.tool_execution_result.result == "42"
    assert response.tool_execution_result.tool_name == "query"
    assert response.tool_execution_result.server_id == "files"
    assert resumes[0].completed is True
