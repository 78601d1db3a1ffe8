"""Streaming completion services: chat models (Ollama) and knowledge-base retrieval."""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from chatpilot.exceptions import LLMAPIError, LLMError, StreamAbortedError
from chatpilot.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"
KB_SERVICE_BASE_URL = "http://127.0.0.1:8000"

ChunkCallback = Callable[[str], Awaitable[None]]


@dataclass
class ChatMessage:
    """A role-tagged message sent to a completion service."""

    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class CompletionOptions:
    """Per-call options for a streaming completion."""

    model: str
    stream_id: str
    provider: str = ""
    message_id: str | None = None
    temperature: float | None = None
    kb_ids: list[str] = field(default_factory=list)
    workspace_id: str | None = None
    top_k: int | None = None
    preferred_language: str | None = None


@dataclass
class ProposedToolCall:
    """A function call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)


@dataclass
class ToolCallingResult:
    """Reply text plus any function calls the model proposed."""

    text: str
    tool_calls: list[ProposedToolCall] = field(default_factory=list)


_ABORTED: Any = object()


async def _first_or_abort(awaitable: Awaitable[Any], aborted: asyncio.Event) -> Any:
    """Result of ``awaitable``, or ``_ABORTED`` when the abort event fires first."""
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(aborted.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if aborted.is_set():
        await asyncio.gather(task, return_exceptions=True)
        return _ABORTED
    return task.result()


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await anext(lines)
    except StopAsyncIteration:
        return None


class CompletionService(ABC):
    """Streaming completion service with abort by stream id."""

    def __init__(self) -> None:
        self._abort_events: dict[str, asyncio.Event] = {}

    @abstractmethod
    async def stream_chat_completion(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Stream a completion and return the full text.

        Raises:
            StreamAbortedError: when ``abort(options.stream_id)`` was called mid-stream.
            LLMError: on any other failure.
        """
        pass

    async def complete_with_tools(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
        tools: list[dict[str, Any]],
    ) -> ToolCallingResult:
        """Complete with function tools offered to the model.

        Services without function calling answer with text only.
        """
        text = await self.stream_chat_completion(messages, options)
        return ToolCallingResult(text=text)

    def abort(self, stream_id: str) -> bool:
        """Request abort of an in-flight stream. Returns False if no such stream."""
        event = self._abort_events.get(stream_id)
        if event is None:
            return False
        event.set()
        log.info("Stream abort requested", stream_id=stream_id)
        return True

    def is_streaming(self, stream_id: str) -> bool:
        return stream_id in self._abort_events

    def _open_stream(self, stream_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self._abort_events[stream_id] = event
        return event

    def _close_stream(self, stream_id: str) -> None:
        self._abort_events.pop(stream_id, None)


class OllamaProvider(CompletionService):
    """Direct Ollama chat API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Default Ollama model name, used when options carry none
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured HTTP client
        """
        super().__init__()
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=120.0, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(self, messages: list[ChatMessage], options: CompletionOptions) -> dict[str, Any]:
        temperature = options.temperature if options.temperature is not None else self.temperature
        return {
            "model": options.model or self.model,
            "messages": [m.to_dict() for m in messages],
            "stream": True,
            "options": {
                "num_ctx": 65536,
                "temperature": temperature,
                "num_predict": self.max_tokens,
            },
        }

    async def stream_chat_completion(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, options)
        aborted = self._open_stream(options.stream_id)
        accumulated = ""

        try:
            log.debug("Calling Ollama", model=body["model"], stream_id=options.stream_id, msg_count=len(messages))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                lines = response.aiter_lines()
                while True:
                    line = await _first_or_abort(_next_line(lines), aborted)
                    if line is _ABORTED:
                        raise StreamAbortedError(options.stream_id, accumulated)
                    if line is None:
                        break
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    content = chunk.get("message", {}).get("content")
                    if content:
                        accumulated += content
                        if on_chunk is not None:
                            await on_chunk(accumulated)
                    if chunk.get("done"):
                        break

            if aborted.is_set():
                raise StreamAbortedError(options.stream_id, accumulated)
            return accumulated

        except (StreamAbortedError, LLMError):
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")
        finally:
            self._close_stream(options.stream_id)

    async def complete_with_tools(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
        tools: list[dict[str, Any]],
    ) -> ToolCallingResult:
        """Single non-streaming chat call that may answer with tool calls."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, options)
        body["stream"] = False
        if tools:
            body["tools"] = tools
        aborted = self._open_stream(options.stream_id)

        try:
            log.debug("Calling Ollama with tools", model=body["model"], stream_id=options.stream_id, tools=len(tools))
            response = await _first_or_abort(
                self.client.post(url, json=body, headers=self._headers()),
                aborted,
            )
            if response is _ABORTED:
                raise StreamAbortedError(options.stream_id, "")
            if not response.is_success:
                raise LLMAPIError(
                    f"Ollama API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            try:
                data = response.json()
            except json.JSONDecodeError as e:
                raise LLMAPIError(f"Invalid JSON from Ollama: {e}")

            message = data.get("message") or {}
            proposed = []
            for entry in message.get("tool_calls") or []:
                function = entry.get("function") or {}
                name = str(function.get("name") or "").strip()
                if not name:
                    log.warning("Ignoring tool call without a name", stream_id=options.stream_id)
                    continue
                proposed.append(ProposedToolCall(
                    id=str(entry.get("id") or f"call_{uuid.uuid4().hex[:12]}"),
                    name=name,
                    arguments=function.get("arguments") or {},
                ))
            return ToolCallingResult(text=message.get("content") or "", tool_calls=proposed)

        except (StreamAbortedError, LLMError):
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama request error: {e}")
        finally:
            self._close_stream(options.stream_id)

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


class KnowledgeBaseProvider(CompletionService):
    """Retrieval-augmented answers from a knowledge-base query service.

    The service receives the conversation plus the selected knowledge bases and
    streams newline-delimited JSON chunks (``{"content": ...}``), finishing with
    ``{"done": true}``.
    """

    def __init__(
        self,
        base_url: str = KB_SERVICE_BASE_URL,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=300.0, follow_redirects=True)

    def _build_body(self, messages: list[ChatMessage], options: CompletionOptions) -> dict[str, Any]:
        history = [m.to_dict() for m in messages]
        query = next((m.content for m in reversed(messages) if m.role == "user"), "")
        body: dict[str, Any] = {
            "query": query,
            "conversation_history": history,
            "model": options.model,
            "provider": options.provider,
            "workspace_id": options.workspace_id,
            "top_k": options.top_k,
            "preferred_language": options.preferred_language,
            "stream": True,
        }
        if options.kb_ids:
            body["kb_ids"] = list(options.kb_ids)
        return body

    async def stream_chat_completion(
        self,
        messages: list[ChatMessage],
        options: CompletionOptions,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        url = f"{self.base_url}/api/v1/query"
        body = self._build_body(messages, options)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        aborted = self._open_stream(options.stream_id)
        accumulated = ""

        try:
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Knowledge base query error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                lines = response.aiter_lines()
                while True:
                    line = await _first_or_abort(_next_line(lines), aborted)
                    if line is _ABORTED:
                        raise StreamAbortedError(options.stream_id, accumulated)
                    if line is None:
                        break
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        chunk = {"content": line}
                    if chunk.get("error"):
                        raise LLMError(f"Knowledge base query failed: {chunk['error']}")
                    content = chunk.get("content") or chunk.get("response")
                    if content:
                        accumulated += content
                        if on_chunk is not None:
                            await on_chunk(accumulated)
                    if chunk.get("done"):
                        break

            if aborted.is_set():
                raise StreamAbortedError(options.stream_id, accumulated)
            return accumulated

        except (StreamAbortedError, LLMError):
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Knowledge base streaming error: {e}")
        finally:
            self._close_stream(options.stream_id)

    async def close(self):
        await self.client.aclose()


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    kb_aware_providers: list[str] | None = None,
) -> CompletionService:
    """Create a completion service.

    Args:
        provider: Provider name (``ollama`` or a knowledge-base provider)
        model: Default model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        kb_aware_providers: Provider names served by the knowledge-base service

    Returns:
        Configured CompletionService instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key,
        )
    if provider in (kb_aware_providers or []):
        return KnowledgeBaseProvider(base_url=base_url or KB_SERVICE_BASE_URL, api_key=api_key)
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or configure manually.")


# Global provider instances
_provider: CompletionService | None = None
_retrieval_provider: CompletionService | None = None


def get_provider() -> CompletionService:
    """Get the global chat completion service."""
    global _provider
    if _provider is None:
        from chatpilot.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
        )
    return _provider


def set_provider(provider: CompletionService) -> None:
    """Set the global chat completion service."""
    global _provider
    _provider = provider


def get_retrieval_provider() -> CompletionService:
    """Get the global knowledge-base completion service."""
    global _retrieval_provider
    if _retrieval_provider is None:
        from chatpilot.config import get_config
        cfg = get_config()
        _retrieval_provider = create_provider(
            provider=cfg.query.provider,
            base_url=cfg.query.base_url or None,
            kb_aware_providers=cfg.query.kb_aware_providers,
        )
    return _retrieval_provider


def set_retrieval_provider(provider: CompletionService) -> None:
    """Set the global knowledge-base completion service."""
    global _retrieval_provider
    _retrieval_provider = provider
