"""Custom exceptions for chatpilot."""


class ChatPilotError(Exception):
    """Base exception for chatpilot."""

    pass


class ConfigurationError(ChatPilotError):
    """Configuration-related errors (raised before any message is written)."""

    pass


class LLMError(ChatPilotError):
    """Completion service errors."""

    pass


class LLMAPIError(LLMError):
    """Completion API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StreamAbortedError(LLMError):
    """A streaming completion was aborted by the user."""

    def __init__(self, stream_id: str, partial: str = ""):
        super().__init__(f"Stream aborted: {stream_id}")
        self.stream_id = stream_id
        self.partial = partial


class ToolError(ChatPilotError):
    """Tool server errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed on its server."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolServerNotFoundError(ToolError):
    """No tool-execution server is configured under the given id."""

    def __init__(self, server_id: str | None):
        super().__init__(f"Tool server not found: {server_id}")
        self.server_id = server_id


class InvalidToolArgumentsError(ToolError):
    """Tool call arguments could not be decoded."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class ToolCallError(ChatPilotError):
    """Tool-call lifecycle errors."""

    pass


class ToolCallNotFoundError(ToolCallError):
    """Tool call is not attached to the message."""

    def __init__(self, message_id: str, tool_call_id: str):
        super().__init__(f"Tool call {tool_call_id} not found on message {message_id}")
        self.message_id = message_id
        self.tool_call_id = tool_call_id


class InvalidTransitionError(ToolCallError):
    """Requested tool-call status change is not an edge of the lifecycle graph."""

    def __init__(self, tool_call_id: str, current: str, requested: str):
        super().__init__(
            f"Tool call {tool_call_id}: cannot move from '{current}' to '{requested}'"
        )
        self.tool_call_id = tool_call_id
        self.current = current
        self.requested = requested


class DelegationError(ChatPilotError):
    """Task orchestrator errors."""

    pass


class StoreError(ChatPilotError):
    """Message store errors."""

    pass


class MessageNotFoundError(StoreError):
    """Message not found in the store."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id
