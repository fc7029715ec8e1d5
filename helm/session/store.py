from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Iterable

import aiosqlite
from pydantic import TypeAdapter

from helm.channel import Channel
from helm.session.events import MessageUpdated, PartUpdated
from helm.session.models import Message, Part, TextPart, ToolPart

_part_adapter: TypeAdapter[TextPart | ToolPart] = TypeAdapter(Part)


class MessageStore(ABC):
    """Append/update log of session messages and their parts.

    All writes are by message or part id. Reads return copies assembled in id order,
    so callers never share mutable state with the store.
    """

    def __init__(self, channel: Channel | None = None):
        self.channel = channel

    @abstractmethod
    async def _write_message(self, message: Message) -> None: ...

    @abstractmethod
    async def _write_part(self, part: TextPart | ToolPart) -> None: ...

    @abstractmethod
    async def _read_messages(self, session_id: str, include_compacted: bool) -> list[Message]: ...

    @abstractmethod
    async def _read_message(self, session_id: str, message_id: str) -> Message | None: ...

    @abstractmethod
    async def _set_compacted(self, session_id: str, message_ids: list[str]) -> None: ...

    def _publish(self, event: MessageUpdated | PartUpdated) -> None:
        if self.channel:
            self.channel.publish(event)

    async def add_message(self, message: Message) -> Message:
        await self.update_message(message)
        for part in message.parts:
            await self.update_part(part)
        return message

    async def update_message(self, message: Message) -> None:
        """Write message fields. Parts are untouched; they are written with update_part."""
        await self._write_message(message)
        self._publish(MessageUpdated(message=message.model_copy(deep=True)))

    async def update_part(self, part: TextPart | ToolPart, delta: str | None = None) -> None:
        await self._write_part(part)
        self._publish(PartUpdated(part=part.model_copy(deep=True), delta=delta))

    async def get_message(self, session_id: str, message_id: str) -> Message | None:
        return await self._read_message(session_id, message_id)

    async def list_messages(self, session_id: str, include_compacted: bool = False) -> list[Message]:
        return await self._read_messages(session_id, include_compacted)

    async def mark_compacted(self, session_id: str, message_ids: Iterable[str]) -> None:
        ids = list(message_ids)
        if not ids:
            return
        await self._set_compacted(session_id, ids)
        for message_id in ids:
            if message := await self._read_message(session_id, message_id):
                self._publish(MessageUpdated(message=message))


class InMemoryMessageStore(MessageStore):
    def __init__(self, channel: Channel | None = None):
        super().__init__(channel)
        self._messages: dict[str, dict[str, Message]] = defaultdict(dict)
        self._parts: dict[str, dict[str, TextPart | ToolPart]] = defaultdict(dict)

    async def _write_message(self, message: Message) -> None:
        self._messages[message.session_id][message.id] = message.model_copy(update={"parts": []}, deep=True)

    async def _write_part(self, part: TextPart | ToolPart) -> None:
        if part.message_id not in self._messages[part.session_id]:
            raise KeyError(f"Unknown message {part.message_id} in session {part.session_id}")
        self._parts[part.message_id][part.id] = part.model_copy(deep=True)

    def _assemble(self, stored: Message) -> Message:
        message = stored.model_copy(deep=True)
        parts = self._parts.get(stored.id, {})
        message.parts = [parts[pid].model_copy(deep=True) for pid in sorted(parts)]
        return message

    async def _read_messages(self, session_id: str, include_compacted: bool) -> list[Message]:
        stored = self._messages.get(session_id, {})
        return [
            self._assemble(stored[mid]) for mid in sorted(stored) if include_compacted or not stored[mid].compacted
        ]

    async def _read_message(self, session_id: str, message_id: str) -> Message | None:
        stored = self._messages.get(session_id, {}).get(message_id)
        return self._assemble(stored) if stored else None

    async def _set_compacted(self, session_id: str, message_ids: list[str]) -> None:
        stored = self._messages.get(session_id, {})
        for message_id in message_ids:
            if message_id in stored:
                stored[message_id].compacted = True


SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    compacted INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id);

CREATE TABLE IF NOT EXISTS parts (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_parts_message ON parts(message_id, id);
"""

SQL_SAVE_MESSAGE = """
INSERT INTO messages (id, session_id, compacted, data) VALUES (?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET compacted = excluded.compacted, data = excluded.data
"""

SQL_SAVE_PART = """
INSERT INTO parts (id, message_id, session_id, data) VALUES (?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET data = excluded.data
"""

SQL_LIST_MESSAGES = """
SELECT id, data FROM messages
WHERE session_id = ? AND (? OR compacted = 0)
ORDER BY id
"""

SQL_LIST_PARTS = """
SELECT message_id, data FROM parts
WHERE session_id = ?
ORDER BY message_id, id
"""

SQL_MARK_COMPACTED = """
UPDATE messages SET compacted = 1, data = json_set(data, '$.compacted', json('true'))
WHERE session_id = ? AND id = ?
"""


class SqliteMessageStore(MessageStore):
    def __init__(self, conn: aiosqlite.Connection, channel: Channel | None = None):
        super().__init__(channel)
        self.conn = conn

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def _write_message(self, message: Message) -> None:
        await self.conn.execute(
            SQL_SAVE_MESSAGE,
            (message.id, message.session_id, int(message.compacted), message.model_dump_json(exclude={"parts"})),
        )
        await self.conn.commit()

    async def _write_part(self, part: TextPart | ToolPart) -> None:
        await self.conn.execute(
            SQL_SAVE_PART,
            (part.id, part.message_id, part.session_id, part.model_dump_json()),
        )
        await self.conn.commit()

    async def _read_messages(self, session_id: str, include_compacted: bool) -> list[Message]:
        rows = await self.conn.execute_fetchall(SQL_LIST_MESSAGES, (session_id, int(include_compacted)))
        messages = [Message.model_validate_json(row[1]) for row in rows]
        by_id = {m.id: m for m in messages}
        for message_id, data in await self.conn.execute_fetchall(SQL_LIST_PARTS, (session_id,)):
            if message := by_id.get(message_id):
                message.parts.append(_part_adapter.validate_json(data))
        return messages

    async def _read_message(self, session_id: str, message_id: str) -> Message | None:
        rows = await self.conn.execute_fetchall(
            "SELECT data FROM messages WHERE session_id = ? AND id = ?", (session_id, message_id)
        )
        if not rows:
            return None
        message = Message.model_validate_json(rows[0][0])
        parts = await self.conn.execute_fetchall(
            "SELECT data FROM parts WHERE message_id = ? ORDER BY id", (message_id,)
        )
        message.parts = [_part_adapter.validate_json(row[0]) for row in parts]
        return message

    async def _set_compacted(self, session_id: str, message_ids: list[str]) -> None:
        await self.conn.executemany(SQL_MARK_COMPACTED, [(session_id, mid) for mid in message_ids])
        await self.conn.commit()
