import pytest

from chatpilot.exceptions import LLMAPIError, StreamAbortedError
from chatpilot.llm import CompletionService, ProposedToolCall, ToolCallingResult
from chatpilot.models import Message, MessageStatus, Mode, ModeContext, Participant, ToolCallStatus
from chatpilot.modes.ask import (
    ASK_FAILED_TEXT,
    ASK_STOPPED_TEXT,
    AskStrategy,
    build_ask_messages,
)
from chatpilot.modes.base import StrategyRequest
from chatpilot.store import InMemoryChatStore
from chatpilot.tools.registry import ToolRegistry

USER = Participant(id="u1", username="alice")
ASSISTANT = Participant(id="a1", username="pilot")


class ScriptedCompletion(CompletionService):
    def __init__(self, chunks=None, error: Exception | None = None):
        super().__init__()
        self.chunks = chunks or []
        self.error = error
        self.seen = []

    async def stream_chat_completion(self, messages, options, on_chunk=None):
        self.seen.append((messages, options))
        text = ""
        for chunk in self.chunks:
            text += chunk
            if on_chunk is not None:
                await on_chunk(text)
        if self.error is not None:
            raise self.error
        return text


class ToolCallingCompletion(ScriptedCompletion):
    def __init__(self, result: ToolCallingResult):
        super().__init__()
        self.result = result
        self.offered = []

    async def complete_with_tools(self, messages, options, tools):
        self.offered.append((options, tools))
        return self.result


class DummyRegistry(ToolRegistry):
    async def get_server_tools(self, server_id):
        if server_id == "web":
            return [{"name": "search", "description": "Search the web", "inputSchema": {"type": "object"}}]
        return []


def _history():
    question = Message(id="m1", chat_id="chat-1", sender="u1", text="Hi", sender_object=USER, created_at="2024-05-01T10:00:00Z")
    answer = Message(id="m2", chat_id="chat-1", sender="a1", text="Hello!", sender_object=ASSISTANT)
    return [question, answer]


def _request(**kwargs):
    values = dict(
        chat_id="chat-1",
        user_text="What is 2+2?",
        context=ModeContext(workspace_id="ws-1"),
        user=USER,
        assistant=ASSISTANT,
        system_prompt="You are pilot.",
        model="llama3.2",
        provider="ollama",
        history=_history(),
    )
    values.update(kwargs)
    return StrategyRequest(**values)


def test_transcript_prefixes_user_turns_with_time_and_name():
    messages = build_ask_messages(_request())

    assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[0].content == "You are pilot."
    assert messages[1].content == "[2024-05-01T10:00:00Z] alice: Hi"
    assert messages[2].content == "Hello!"
    assert messages[3].content.endswith("] alice: What is 2+2?")
    assert messages[3].content.startswith("[")


def test_transcript_respects_history_window():
    history = [
        Message(id=f"m{i}", chat_id="chat-1", sender="u1", text=f"line {i}", sender_object=USER)
        for i in range(6)
    ]

    messages = build_ask_messages(_request(history=history), history_window=2)

    assert len(messages) == 4
    assert messages[1].content.endswith("alice: line 4")


def test_avatar_ids_count_as_assistant_turns():
    history = [Message(id="m1", chat_id="chat-1", sender="nova", text="I am Nova")]

    messages = build_ask_messages(_request(history=history, assistant_ids={"nova"}))

    assert messages[1].role == "assistant"
    assert messages[1].content == "I am Nova"


@pytest.mark.asyncio
async def test_ask_streams_into_placeholder_and_completes():
    store = InMemoryChatStore()
    completion = ScriptedCompletion(chunks=["2+2 ", "is 4."])
    strategy = AskStrategy(store, completion)

    outcome = await strategy.run(_request())

    assert outcome.success is True
    assert outcome.mode == Mode.ASK
    assert outcome.text == "2+2 is 4."
    stored = await store.get_message(outcome.message_id)
    assert stored.text == "2+2 is 4."
    assert stored.status == MessageStatus.COMPLETED
    assert stored.sender == "a1"
    assert stored.workspace_id == "ws-1"
    _, options = completion.seen[0]
    assert options.stream_id == f"stream-{outcome.message_id}"
    assert options.model == "llama3.2"


@pytest.mark.asyncio
async def test_ask_failure_marks_message_failed():
    store = InMemoryChatStore()
    strategy = AskStrategy(store, ScriptedCompletion(error=LLMAPIError("boom", status_code=502)))

    outcome = await strategy.run(_request())

    assert outcome.success is False
    assert outcome.error == "boom"
    stored = await store.get_message(outcome.message_id)
    assert stored.text == ASK_FAILED_TEXT
    assert stored.status == MessageStatus.FAILED


@pytest.mark.asyncio
async def test_ask_abort_keeps_partial_text():
    store = InMemoryChatStore()
    strategy = AskStrategy(store, ScriptedCompletion(error=StreamAbortedError("s1", partial="Half an ans")))

    outcome = await strategy.run(_request())

    assert outcome.aborted is True
    stored = await store.get_message(outcome.message_id)
    assert stored.text == "Half an ans"
    assert stored.status == MessageStatus.COMPLETED


@pytest.mark.asyncio
async def test_ask_abort_before_any_text_uses_stopped_text():
    store = InMemoryChatStore()
    strategy = AskStrategy(store, ScriptedCompletion(error=StreamAbortedError("s1")))

    outcome = await strategy.run(_request())

    assert (await store.get_message(outcome.message_id)).text == ASK_STOPPED_TEXT


@pytest.mark.asyncio
async def test_proposed_tool_calls_are_stored_on_the_response():
    store = InMemoryChatStore()
    completion = ToolCallingCompletion(ToolCallingResult(
        text="Let me look that up.",
        tool_calls=[ProposedToolCall(id="call_1", name="search", arguments='{"q": "2+2"}')],
    ))
    strategy = AskStrategy(store, completion, tool_registry=DummyRegistry())

    outcome = await strategy.run(_request(context=ModeContext(workspace_id="ws-1", tool_server_ids=["web"])))

    options, tools = completion.offered[0]
    assert options.stream_id == f"stream-{outcome.message_id}"
    assert [t["function"]["name"] for t in tools] == ["search"]
    assert completion.seen == []
    stored = await store.get_message(outcome.message_id)
    assert stored.text == "Let me look that up."
    assert stored.status == MessageStatus.COMPLETED
    call = stored.tool_calls[0]
    assert (call.id, call.server_id, call.description) == ("call_1", "web", "Search the web")
    assert call.arguments == {"q": "2+2"}
    assert call.status == ToolCallStatus.PENDING
    assert [c.id for c in outcome.tool_calls] == ["call_1"]


@pytest.mark.asyncio
async def test_servers_without_tools_fall_back_to_streaming():
    store = InMemoryChatStore()
    completion = ScriptedCompletion(chunks=["plain answer"])
    strategy = AskStrategy(store, completion, tool_registry=DummyRegistry())

    outcome = await strategy.run(_request(context=ModeContext(workspace_id="ws-1", tool_server_ids=["empty"])))

    assert outcome.text == "plain answer"
    assert outcome.tool_calls == []
    assert len(completion.seen) == 1
