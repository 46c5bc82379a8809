"""Local/offline backend.

Keeps conversations and history in memory. Nothing leaves the process:
sends are echoed back as a `send_result` event followed by a `receipt`
event. Useful as a notes-to-self account, for demos and for embedding.

Raw event shapes (all carry "type"):
- message:     conversation, id, sender, timestamp, text, attachments?, quote?
- receipt:     conversation, id, state ("sent" | "delivered" | "read" | "failed")
- send_result: conversation, id, ok, error?
- typing:      conversation, sender, typing
- presence:    conversation, sender, presence
- edit:        conversation, id, text
- redact:      conversation, id
- reaction:    conversation, id, sender, emoji, remove?
- conversation: a conversation summary (id, name, kind, description, participants)
- connection:  state, reason?
"""

import copy
import itertools
from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any

from chatters.backends.base import HistoryPage, RawEvent, RawEventChannel, SendHandle
from chatters.errors import BackendUnavailable, NotFound
from chatters.logging import get_logger
from chatters.models import ConnectionState, ConnectionStatus, MessageBody, now_ms

logger = get_logger("backends.local")


def default_conversations(self_id: str, self_name: str) -> list[dict[str, Any]]:
    """A single note-to-self conversation with a little history."""
    now = now_ms()
    return [
        {
            "id": self_id,
            "name": self_name,
            "kind": "direct",
            "description": "Notes to self",
            "participants": [{"id": self_id, "name": self_name}],
            "history": [
                {"id": "welcome-1", "sender": self_id, "timestamp": now - 100, "text": "Message 1"},
                {"id": "welcome-2", "sender": self_id, "timestamp": now - 90, "text": "Message 2"},
            ],
        }
    ]


class LocalBackend:
    """In-memory backend satisfying the Backend protocol."""

    kind = "local"

    def __init__(
        self,
        backend_id: str = "local",
        self_id: str = "self",
        self_name: str = "Self",
        conversations: list[dict[str, Any]] | None = None,
        auto_deliver: bool = True,
        fail_sends: bool = False,
    ) -> None:
        self.backend_id = backend_id
        self._self_id = self_id
        self.auto_deliver = auto_deliver
        self.fail_sends = fail_sends
        self._state = ConnectionState()
        self._channel: RawEventChannel | None = None
        self._counter = itertools.count(1)
        self._summaries: dict[str, dict[str, Any]] = {}
        self._history: dict[str, list[RawEvent]] = {}
        if conversations is None:
            conversations = default_conversations(self_id, self_name)
        for conversation in conversations:
            self.add_conversation(conversation)

    @property
    def self_id(self) -> str:
        return self._self_id

    def add_conversation(self, conversation: dict[str, Any]) -> None:
        """Add (or replace) a conversation summary and its optional `history` list."""
        summary = {k: v for k, v in conversation.items() if k != "history"}
        native_id = str(summary["id"])
        self._summaries[native_id] = summary
        history = [
            {"type": "message", "conversation": native_id, **item}
            for item in conversation.get("history", [])
        ]
        history.sort(key=lambda m: m.get("timestamp", 0))
        self._history[native_id] = history

    def _require_connected(self) -> RawEventChannel:
        if self._channel is None or self._channel.done:
            raise BackendUnavailable(self.backend_id, "not connected")
        return self._channel

    async def connect(self) -> None:
        self._state = ConnectionState(ConnectionStatus.CONNECTING)
        self._channel = RawEventChannel(self.backend_id)
        self._state = ConnectionState(ConnectionStatus.LIVE)
        logger.debug("Connected: backend=%s", self.backend_id)

    async def list_conversations(self) -> AsyncIterator[RawEvent]:
        self._require_connected()
        for summary in list(self._summaries.values()):
            yield {"type": "conversation", **copy.deepcopy(summary)}

    async def fetch_history(
        self, conversation_id: str, before_cursor: Any | None, limit: int
    ) -> HistoryPage:
        self._require_connected()
        if conversation_id not in self._history:
            raise NotFound(self.backend_id, conversation_id)
        history = self._history[conversation_id]
        end = len(history) if before_cursor is None else max(0, min(int(before_cursor), len(history)))
        start = max(0, end - limit)
        items = [copy.deepcopy(item) for item in history[start:end]]
        return HistoryPage(items=items, next_cursor=start if start > 0 else None)

    async def send_message(self, conversation_id: str, body: MessageBody) -> SendHandle:
        channel = self._require_connected()
        if conversation_id not in self._summaries:
            raise NotFound(self.backend_id, conversation_id)

        native_id = f"{self.backend_id}-{next(self._counter)}-{now_ms()}"
        timestamp = now_ms()
        raw = {
            "type": "message",
            "conversation": conversation_id,
            "id": native_id,
            "sender": self._self_id,
            "timestamp": timestamp,
            "text": body.text,
            "attachments": [
                {k: v for k, v in asdict(a).items() if k != "data"} for a in body.attachments if a.handle
            ],
        }
        if body.quote is not None:
            raw["quote"] = asdict(body.quote)

        if self.fail_sends:
            channel.put(
                {
                    "type": "send_result",
                    "conversation": conversation_id,
                    "id": native_id,
                    "ok": False,
                    "error": "local sends disabled",
                }
            )
        else:
            self._history[conversation_id].append(raw)
            channel.put({"type": "send_result", "conversation": conversation_id, "id": native_id, "ok": True})
            if self.auto_deliver:
                channel.put(
                    {"type": "receipt", "conversation": conversation_id, "id": native_id, "state": "delivered"}
                )
        return SendHandle(self.backend_id, conversation_id, native_id, self._self_id, timestamp)

    def inject(self, raw: RawEvent) -> None:
        """Feed a raw event into the live stream (messages are also kept as history)."""
        channel = self._require_connected()
        if raw.get("type") == "message" and raw.get("conversation") in self._history:
            self._history[raw["conversation"]].append(copy.deepcopy(raw))
            self._history[raw["conversation"]].sort(key=lambda m: m.get("timestamp", 0))
        channel.put(raw)

    def drop_connection(self, reason: str = "connection dropped") -> None:
        """Simulate a transport loss: the live stream raises BackendUnavailable."""
        if self._channel is not None:
            self._channel.fail(reason)
        self._state = ConnectionState.degraded(reason)

    def events(self) -> AsyncIterator[RawEvent]:
        return self._require_connected().stream()

    def connection_state(self) -> ConnectionState:
        return self._state

    async def disconnect(self) -> None:
        if self._channel is not None:
            self._channel.close()
        self._state = ConnectionState()
        logger.debug("Disconnected: backend=%s", self.backend_id)


def create_local_backend(backend_id: str, options: dict[str, Any]) -> LocalBackend:
    """Factory used by BackendRegistry for `kind: local`."""
    return LocalBackend(
        backend_id=backend_id,
        self_id=options.get("self_id", "self"),
        self_name=options.get("self_name", "Self"),
        conversations=options.get("conversations"),
        auto_deliver=options.get("auto_deliver", True),
        fail_sends=options.get("fail_sends", False),
    )
