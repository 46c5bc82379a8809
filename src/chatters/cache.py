"""On-disk conversation snapshot cache with SQLite persistence."""

import base64
import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Self

from chatters.logging import get_logger
from chatters.models import (
    Attachment,
    Conversation,
    ConversationKey,
    ConversationKind,
    DeliveryState,
    Message,
    MessageBody,
    Participant,
    Quote,
    Reaction,
)

logger = get_logger("cache")


def _attachment_to_json(attachment: Attachment) -> dict[str, Any]:
    data = base64.b64encode(attachment.data).decode("ascii") if attachment.data is not None else None
    return {
        "mime_type": attachment.mime_type,
        "size": attachment.size,
        "name": attachment.name,
        "handle": attachment.handle,
        "data": data,
    }


def _attachment_from_json(raw: dict[str, Any]) -> Attachment:
    return Attachment(
        mime_type=raw["mime_type"],
        size=raw["size"],
        name=raw.get("name"),
        handle=raw.get("handle"),
        data=base64.b64decode(raw["data"]) if raw.get("data") is not None else None,
    )


class ConversationCache:
    """Saves store snapshots on shutdown and reloads them on startup.

    The cache is a warm start only: backends remain the source of truth and
    the next sync fills in whatever changed while chatters was not running.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the cache with a database path.

        Args:
            db_path: Path to SQLite database file. Parent directories
                     will be created if they don't exist.
        """
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()

    def ensure_schema(self) -> None:
        """Create the cache tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                backend_id TEXT NOT NULL,
                native_id TEXT NOT NULL,
                display_name TEXT NOT NULL DEFAULT '',
                kind TEXT NOT NULL DEFAULT 'direct',
                description TEXT NOT NULL DEFAULT '',
                unread INTEGER NOT NULL DEFAULT 0,
                last_activity INTEGER,
                PRIMARY KEY (backend_id, native_id)
            );
            CREATE TABLE IF NOT EXISTS participants (
                backend_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                participant_id TEXT NOT NULL,
                display_name TEXT NOT NULL DEFAULT '',
                presence TEXT,
                PRIMARY KEY (backend_id, conversation_id, participant_id)
            );
            CREATE TABLE IF NOT EXISTS messages (
                backend_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                native_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                text TEXT NOT NULL DEFAULT '',
                attachments TEXT,
                quote TEXT,
                timestamp INTEGER NOT NULL,
                received_at INTEGER NOT NULL,
                delivery_state TEXT NOT NULL,
                outgoing INTEGER NOT NULL DEFAULT 0,
                edited INTEGER NOT NULL DEFAULT 0,
                redacted INTEGER NOT NULL DEFAULT 0,
                reactions TEXT,
                PRIMARY KEY (backend_id, conversation_id, native_id)
            );
            CREATE INDEX IF NOT EXISTS idx_messages_order
                ON messages (backend_id, conversation_id, timestamp, received_at);
        """)
        self._conn.commit()

    def save(self, conversations: Iterable[Conversation]) -> int:
        """Replace the cached snapshot.

        Returns:
            Number of conversations written
        """
        count = 0
        with self._conn:
            self._conn.execute("DELETE FROM messages")
            self._conn.execute("DELETE FROM participants")
            self._conn.execute("DELETE FROM conversations")
            for conversation in conversations:
                self._insert(conversation)
                count += 1
        logger.info("Saved cache: path=%s conversations=%d", self._db_path, count)
        return count

    def _insert(self, conversation: Conversation) -> None:
        key = conversation.key
        self._conn.execute(
            """
            INSERT INTO conversations (backend_id, native_id, display_name, kind, description, unread, last_activity)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                key.backend_id,
                key.native_id,
                conversation.display_name,
                conversation.kind.value,
                conversation.description,
                conversation.unread,
                conversation.last_activity,
            ),
        )
        self._conn.executemany(
            """
            INSERT INTO participants (backend_id, conversation_id, position, participant_id, display_name, presence)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (key.backend_id, key.native_id, position, p.participant_id, p.display_name, p.presence)
                for position, p in enumerate(conversation.participants)
            ],
        )
        self._conn.executemany(
            """
            INSERT INTO messages (
                backend_id, conversation_id, native_id, sender_id, text, attachments, quote,
                timestamp, received_at, delivery_state, outgoing, edited, redacted, reactions
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    key.backend_id,
                    key.native_id,
                    m.native_id,
                    m.sender_id,
                    m.text,
                    json.dumps([_attachment_to_json(a) for a in m.body.attachments]),
                    json.dumps(vars(m.body.quote)) if m.body.quote is not None else None,
                    m.timestamp,
                    m.received_at,
                    m.delivery_state.value,
                    int(m.outgoing),
                    int(m.edited),
                    int(m.redacted),
                    json.dumps([[r.emoji, r.sender_id] for r in m.reactions]),
                )
                for m in conversation.messages
            ],
        )

    def load(self, backend_id: str | None = None) -> list[Conversation]:
        """Load cached conversations, optionally only those of one backend."""
        if backend_id is None:
            cursor = self._conn.execute("SELECT backend_id, native_id FROM conversations ORDER BY backend_id, native_id")
        else:
            cursor = self._conn.execute(
                "SELECT backend_id, native_id FROM conversations WHERE backend_id = ? ORDER BY native_id",
                (backend_id,),
            )
        keys = [ConversationKey(row["backend_id"], row["native_id"]) for row in cursor.fetchall()]
        conversations = []
        for key in keys:
            conversation = self.load_conversation(key)
            if conversation is not None:
                conversations.append(conversation)
        return conversations

    def load_conversation(self, key: ConversationKey) -> Conversation | None:
        """Load one cached conversation.

        Typing flags are not persisted, and sends that never resolved come
        back as Failed.

        Returns:
            Conversation if cached, None otherwise
        """
        row = self._conn.execute(
            """
            SELECT display_name, kind, description, unread, last_activity
            FROM conversations
            WHERE backend_id = ? AND native_id = ?
            """,
            (key.backend_id, key.native_id),
        ).fetchone()
        if row is None:
            return None

        participants = tuple(
            Participant(p["participant_id"], display_name=p["display_name"], presence=p["presence"])
            for p in self._conn.execute(
                """
                SELECT participant_id, display_name, presence
                FROM participants
                WHERE backend_id = ? AND conversation_id = ?
                ORDER BY position
                """,
                (key.backend_id, key.native_id),
            )
        )
        messages = tuple(
            self._message(m)
            for m in self._conn.execute(
                """
                SELECT native_id, sender_id, text, attachments, quote, timestamp, received_at,
                       delivery_state, outgoing, edited, redacted, reactions
                FROM messages
                WHERE backend_id = ? AND conversation_id = ?
                ORDER BY timestamp, received_at
                """,
                (key.backend_id, key.native_id),
            )
        )
        return Conversation(
            key=key,
            display_name=row["display_name"],
            kind=ConversationKind(row["kind"]),
            description=row["description"],
            participants=participants,
            messages=messages,
            unread=row["unread"],
            last_activity=row["last_activity"],
        )

    def _message(self, row: sqlite3.Row) -> Message:
        quote = json.loads(row["quote"]) if row["quote"] else None
        state = DeliveryState(row["delivery_state"])
        if state is DeliveryState.SENDING:
            state = DeliveryState.FAILED
        return Message(
            native_id=row["native_id"],
            sender_id=row["sender_id"],
            body=MessageBody(
                text=row["text"],
                attachments=tuple(_attachment_from_json(a) for a in json.loads(row["attachments"] or "[]")),
                quote=Quote(**quote) if quote else None,
            ),
            timestamp=row["timestamp"],
            received_at=row["received_at"],
            delivery_state=state,
            outgoing=bool(row["outgoing"]),
            edited=bool(row["edited"]),
            redacted=bool(row["redacted"]),
            reactions=tuple(Reaction(emoji, sender) for emoji, sender in json.loads(row["reactions"] or "[]")),
        )

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> Self:
        """Enter context manager."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Exit context manager, closing database connection."""
        self.close()
