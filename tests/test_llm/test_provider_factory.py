import asyncio
import json

import httpx
import pytest

from chatpilot.exceptions import LLMAPIError, LLMError, StreamAbortedError
from chatpilot.llm import (
    ChatMessage,
    CompletionOptions,
    KnowledgeBaseProvider,
    OllamaProvider,
    create_provider,
)


def _ndjson(*chunks: dict) -> bytes:
    return "\n".join(json.dumps(chunk) for chunk in chunks).encode()


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class StalledStream(httpx.AsyncByteStream):
    """Sends one chunk, then never sends anything again."""

    def __init__(self, first: bytes):
        self.first = first
        self.closed = False

    async def __aiter__(self):
        yield self.first
        await asyncio.Event().wait()

    async def aclose(self):
        self.closed = True


def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434",
    )
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_supports_kb_aware_provider():
    provider = create_provider(
        provider="lightrag",
        base_url="http://kb.local/",
        kb_aware_providers=["lightrag", "onlysaid-kb"],
    )
    assert isinstance(provider, KnowledgeBaseProvider)
    assert provider.base_url == "http://kb.local"


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        create_provider(provider="cohere", model="command-r")


@pytest.mark.asyncio
async def test_ollama_streams_chunks_and_returns_full_text():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, content=_ndjson(
            {"message": {"content": "Hel"}},
            {"message": {"content": "lo"}},
            {"done": True},
        ))

    provider = OllamaProvider(model="llama3.2", client=_client(handler))
    seen = []

    async def on_chunk(text: str) -> None:
        seen.append(text)

    text = await provider.stream_chat_completion(
        [ChatMessage("user", "hi")],
        CompletionOptions(model="qwen2.5", stream_id="stream-1", temperature=0.1),
        on_chunk=on_chunk,
    )
    await provider.close()

    assert text == "Hello"
    assert seen == ["Hel", "Hello"]
    assert bodies[0]["model"] == "qwen2.5"
    assert bodies[0]["options"]["temperature"] == 0.1
    assert bodies[0]["messages"] == [{"role": "user", "content": "hi"}]
    assert not provider.is_streaming("stream-1")


@pytest.mark.asyncio
async def test_ollama_abort_raises_with_partial_text():
    content = _ndjson(
        {"message": {"content": "one "}},
        {"message": {"content": "two "}},
        {"message": {"content": "three"}},
    )
    provider = OllamaProvider(client=_client(lambda request: httpx.Response(200, content=content)))

    async def on_chunk(text: str) -> None:
        provider.abort("stream-2")

    with pytest.raises(StreamAbortedError) as exc:
        await provider.stream_chat_completion(
            [ChatMessage("user", "count")],
            CompletionOptions(model="llama3.2", stream_id="stream-2"),
            on_chunk=on_chunk,
        )

    assert exc.value.partial == "one "
    assert provider.abort("stream-2") is False


@pytest.mark.asyncio
async def test_ollama_error_status_raises_api_error():
    provider = OllamaProvider(client=_client(lambda request: httpx.Response(404, text="model not found")))

    with pytest.raises(LLMAPIError) as exc:
        await provider.stream_chat_completion(
            [ChatMessage("user", "hi")],
            CompletionOptions(model="missing", stream_id="stream-3"),
        )

    assert exc.value.status_code == 404
    assert "model not found" in str(exc.value)


@pytest.mark.asyncio
async def test_kb_provider_sends_selection_and_reads_chunks():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.url.path == "/api/v1/query"
        return httpx.Response(200, content=_ndjson({"content": "Twenty "}, {"content": "days."}, {"done": True}))

    provider = KnowledgeBaseProvider(base_url="http://kb.local", client=_client(handler))

    text = await provider.stream_chat_completion(
        [ChatMessage("system", "sys"), ChatMessage("user", "leave policy?")],
        CompletionOptions(model="m", stream_id="s", kb_ids=["kb-1"], top_k=3, workspace_id="ws-1"),
    )
    await provider.close()

    assert text == "Twenty days."
    assert bodies[0]["query"] == "leave policy?"
    assert bodies[0]["kb_ids"] == ["kb-1"]
    assert bodies[0]["top_k"] == 3
    assert bodies[0]["workspace_id"] == "ws-1"


@pytest.mark.asyncio
async def test_kb_provider_surfaces_error_chunks():
    provider = KnowledgeBaseProvider(
        client=_client(lambda request: httpx.Response(200, content=_ndjson({"error": "index missing"})))
    )

    with pytest.raises(LLMError, match="index missing"):
        await provider.stream_chat_completion(
            [ChatMessage("user", "q")],
            CompletionOptions(model="m", stream_id="s"),
        )


@pytest.mark.asyncio
async def test_abort_stops_a_stalled_stream():
    stream = StalledStream(b'{"message": {"content": "partial"}}\n')
    provider = OllamaProvider(client=_client(lambda request: httpx.Response(200, stream=stream)))

    async def on_chunk(text: str) -> None:
        asyncio.get_running_loop().call_later(0.01, provider.abort, "stream-4")

    with pytest.raises(StreamAbortedError) as exc:
        await asyncio.wait_for(
            provider.stream_chat_completion(
                [ChatMessage("user", "hi")],
                CompletionOptions(model="llama3.2", stream_id="stream-4"),
                on_chunk=on_chunk,
            ),
            timeout=2,
        )

    assert exc.value.partial == "partial"
    assert stream.closed is True
    assert not provider.is_streaming("stream-4")


@pytest.mark.asyncio
async def test_ollama_tool_completion_returns_proposed_calls():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"function": {"name": "read_file", "arguments": {"path": "a.txt"}}},
                    {"id": "call_9", "function": {"name": "search", "arguments": '{"q": "x"}'}},
                    {"function": {"arguments": {}}},
                ],
            },
            "done": True,
        })

    provider = OllamaProvider(client=_client(handler))
    tools = [{"type": "function", "function": {"name": "read_file", "description": "Read", "parameters": {}}}]

    result = await provider.complete_with_tools(
        [ChatMessage("user", "read a.txt")],
        CompletionOptions(model="qwen2.5", stream_id="stream-5"),
        tools,
    )
    await provider.close()

    assert bodies[0]["stream"] is False
    assert bodies[0]["tools"] == tools
    assert result.text == ""
    assert [c.name for c in result.tool_calls] == ["read_file", "search"]
    assert result.tool_calls[0].id.startswith("call_")
    assert result.tool_calls[0].arguments == {"path": "a.txt"}
    assert result.tool_calls[1].id == "call_9"
    assert result.tool_calls[1].arguments == '{"q": "x"}'
    assert not provider.is_streaming("stream-5")


@pytest.mark.asyncio
async def test_services_without_function_calling_answer_with_text():
    provider = KnowledgeBaseProvider(
        client=_client(lambda request: httpx.Response(200, content=_ndjson({"content": "plain"}, {"done": True})))
    )

    result = await provider.complete_with_tools(
        [ChatMessage("user", "q")],
        CompletionOptions(model="m", stream_id="s"),
        [{"type": "function", "function": {"name": "x"}}],
    )

    assert result.text == "plain"
    assert result.tool_calls == []
