"""Message store: chat messages, tool calls, delegated executions and tool-call logs."""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite

from chatpilot.exceptions import MessageNotFoundError
from chatpilot.logging import get_logger
from chatpilot.models import Message, ToolCall, utcnow_iso

log = get_logger(__name__)


@dataclass
class DelegatedExecution:
    """Persistent record of a tool call proposed by the task orchestrator."""

    approval_id: str
    tool_call_id: str
    thread_id: str | None = None
    message_id: str | None = None
    function_name: str = ""
    server_id: str | None = None
    status: str = "pending"
    result: Any = None
    error: str | None = None
    execution_seconds: int | None = None
    approved_at: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_tool_call(cls, message_id: str, call: ToolCall) -> "DelegatedExecution":
        status = call.status.value if hasattr(call.status, "value") else str(call.status)
        return cls(
            approval_id=call.approval_id or call.id,
            tool_call_id=call.id,
            thread_id=call.thread_id,
            message_id=message_id,
            function_name=call.function_name,
            server_id=call.server_id,
            status=status,
            result=call.result if status == "executed" else None,
            error=str(call.result) if status == "error" and call.result is not None else None,
            execution_seconds=call.execution_seconds,
        )


class ChatStore(ABC):
    """Persistence boundary for messages and tool-call state."""

    def __init__(self):
        # Serializes read-modify-write of a message's tool calls.
        self._tool_call_lock = asyncio.Lock()

    @abstractmethod
    async def append_message(self, message: Message) -> None:
        pass

    @abstractmethod
    async def update_message(self, message: Message) -> None:
        """Persist the current state of an existing message."""
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> Message | None:
        pass

    @abstractmethod
    async def get_messages(self, chat_id: str, limit: int | None = None) -> list[Message]:
        """Return messages of a chat in creation order (the last ``limit`` when given)."""
        pass

    @abstractmethod
    async def save_delegated_execution(self, record: DelegatedExecution) -> None:
        pass

    @abstractmethod
    async def get_delegated_execution(self, approval_id: str) -> DelegatedExecution | None:
        pass

    @abstractmethod
    async def append_tool_call_log(self, tool_call_id: str, line: str) -> None:
        pass

    @abstractmethod
    async def get_tool_call_logs(self, tool_call_id: str) -> list[str]:
        pass

    async def update_tool_call(self, message_id: str, tool_call: ToolCall) -> None:
        """Replace one tool call on a stored message."""
        async with self._tool_call_lock:
            message = await self.get_message(message_id)
            if message is None:
                raise MessageNotFoundError(message_id)
            replaced = False
            for index, existing in enumerate(message.tool_calls):
                if existing.id == tool_call.id:
                    message.tool_calls[index] = copy.deepcopy(tool_call)
                    replaced = True
                    break
            if not replaced:
                message.tool_calls.append(copy.deepcopy(tool_call))
            await self.update_message(message)

    async def close(self) -> None:
        return None


class InMemoryChatStore(ChatStore):
    """Process-local store; stored messages are snapshots of what was written."""

    def __init__(self):
        super().__init__()
        self._messages: dict[str, Message] = {}
        self._order: list[str] = []
        self._delegated: dict[str, DelegatedExecution] = {}
        self._logs: dict[str, list[str]] = {}

    async def append_message(self, message: Message) -> None:
        if message.id not in self._messages:
            self._order.append(message.id)
        self._messages[message.id] = copy.deepcopy(message)

    async def update_message(self, message: Message) -> None:
        if message.id not in self._messages:
            raise MessageNotFoundError(message.id)
        self._messages[message.id] = copy.deepcopy(message)

    async def get_message(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        return copy.deepcopy(message) if message else None

    async def get_messages(self, chat_id: str, limit: int | None = None) -> list[Message]:
        items = [
            copy.deepcopy(self._messages[mid])
            for mid in self._order
            if self._messages[mid].chat_id == chat_id
        ]
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    async def save_delegated_execution(self, record: DelegatedExecution) -> None:
        record.updated_at = utcnow_iso()
        self._delegated[record.approval_id] = copy.deepcopy(record)

    async def get_delegated_execution(self, approval_id: str) -> DelegatedExecution | None:
        record = self._delegated.get(approval_id)
        return copy.deepcopy(record) if record else None

    async def append_tool_call_log(self, tool_call_id: str, line: str) -> None:
        self._logs.setdefault(tool_call_id, []).append(line)

    async def get_tool_call_logs(self, tool_call_id: str) -> list[str]:
        return list(self._logs.get(tool_call_id, []))


class SQLiteChatStore(ChatStore):
    """Chat store backed by SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        super().__init__()
        if db_path is None:
            from chatpilot.config import get_config
            self.db_path = Path(get_config().store.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    seq INTEGER NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_chat_seq ON messages(chat_id, seq)"
            )
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS delegated_tool_executions (
                    approval_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS tool_call_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tool_call_id TEXT NOT NULL,
                    line TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_tool_call_logs_call ON tool_call_logs(tool_call_id, id)"
            )
            await self._db.commit()

    async def append_message(self, message: Message) -> None:
        await self._ensure_db()
        async with self._db.execute("SELECT COALESCE(MAX(seq), 0) FROM messages") as cursor:
            row = await cursor.fetchone()
        seq = int(row[0]) + 1
        await self._db.execute(
            """
            INSERT OR REPLACE INTO messages (id, chat_id, data, created_at, seq)
            VALUES (?, ?, ?, ?, ?)
            """,
            (message.id, message.chat_id, json.dumps(message.to_dict()), message.created_at, seq),
        )
        await self._db.commit()

    async def update_message(self, message: Message) -> None:
        await self._ensure_db()
        cursor = await self._db.execute(
            "UPDATE messages SET data = ? WHERE id = ?",
            (json.dumps(message.to_dict()), message.id),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise MessageNotFoundError(message.id)

    async def get_message(self, message_id: str) -> Message | None:
        await self._ensure_db()
        async with self._db.execute(
            "SELECT data FROM messages WHERE id = ?",
            (message_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return Message.from_dict(json.loads(row[0]))

    async def get_messages(self, chat_id: str, limit: int | None = None) -> list[Message]:
        await self._ensure_db()
        if limit is None:
            query = "SELECT data FROM messages WHERE chat_id = ? ORDER BY seq ASC"
            params: tuple[Any, ...] = (chat_id,)
        else:
            query = """
                SELECT data FROM (
                    SELECT data, seq FROM messages WHERE chat_id = ? ORDER BY seq DESC LIMIT ?
                ) ORDER BY seq ASC
            """
            params = (chat_id, max(0, limit))
        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [Message.from_dict(json.loads(row[0])) for row in rows]

    async def save_delegated_execution(self, record: DelegatedExecution) -> None:
        await self._ensure_db()
        record.updated_at = utcnow_iso()
        await self._db.execute(
            """
            INSERT OR REPLACE INTO delegated_tool_executions (approval_id, data, updated_at)
            VALUES (?, ?, ?)
            """,
            (record.approval_id, json.dumps(asdict(record)), record.updated_at),
        )
        await self._db.commit()

    async def get_delegated_execution(self, approval_id: str) -> DelegatedExecution | None:
        await self._ensure_db()
        async with self._db.execute(
            "SELECT data FROM delegated_tool_executions WHERE approval_id = ?",
            (approval_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return DelegatedExecution(**json.loads(row[0]))

    async def append_tool_call_log(self, tool_call_id: str, line: str) -> None:
        await self._ensure_db()
        await self._db.execute(
            "INSERT INTO tool_call_logs (tool_call_id, line, created_at) VALUES (?, ?, ?)",
            (tool_call_id, line, utcnow_iso()),
        )
        await self._db.commit()

    async def get_tool_call_logs(self, tool_call_id: str) -> list[str]:
        await self._ensure_db()
        async with self._db.execute(
            "SELECT line FROM tool_call_logs WHERE tool_call_id = ? ORDER BY id ASC",
            (tool_call_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def create_store(config: Any | None = None) -> ChatStore:
    """Build the configured store."""
    if config is None:
        from chatpilot.config import get_config
        config = get_config()
    if config.store.storage == "memory":
        return InMemoryChatStore()
    return SQLiteChatStore(config.store.path)
