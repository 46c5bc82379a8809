"""Normalizer for the local/offline backend.

The local backend's raw events are already close to the unified model, so
this is mostly field mapping and validation.
"""

from typing import Any

from chatters.backends.base import RawEvent
from chatters.errors import MalformedEvent
from chatters.models import (
    Attachment,
    ConnectionState,
    ConnectionStatus,
    ConversationKind,
    DeliveryState,
    MessageBody,
    Quote,
)
from chatters.mutations import (
    AppendMessage,
    ApplyReaction,
    EditMessage,
    Mutation,
    UpdateConnectionState,
    UpdateDeliveryState,
    UpsertConversation,
    UpsertParticipant,
)
from chatters.normalizers.base import Normalizer, require, require_int


class LocalNormalizer(Normalizer):
    """Normalizer for LocalBackend events."""

    kind = "local"

    def translate_event(self, raw: RawEvent) -> list[Mutation]:
        event_type = require(raw, "type", self.kind)
        handlers = {
            "message": self._message,
            "receipt": self._receipt,
            "send_result": self._send_result,
            "typing": self._typing,
            "presence": self._presence,
            "edit": self._edit,
            "redact": self._redact,
            "reaction": self._reaction,
            "conversation": self.translate_conversation,
            "connection": self._connection,
        }
        handler = handlers.get(event_type)
        if handler is None:
            raise MalformedEvent(self.kind, f"unknown event type {event_type!r}", raw)
        return handler(raw)

    def translate_conversation(self, raw: RawEvent) -> list[Mutation]:
        key = self.key(str(require(raw, "id", self.kind)))
        mutations: list[Mutation] = [
            UpsertConversation(
                key,
                display_name=raw.get("name"),
                kind=ConversationKind(raw.get("kind", "direct")),
                description=raw.get("description"),
                last_activity=raw.get("last_activity"),
            )
        ]
        for participant in raw.get("participants", []):
            mutations.append(
                UpsertParticipant(
                    key,
                    str(require(participant, "id", self.kind)),
                    display_name=participant.get("name"),
                    presence=participant.get("presence"),
                )
            )
        return mutations

    def translate_history(self, conversation_id: str, raw: RawEvent) -> list[Mutation]:
        if raw.get("type", "message") != "message":
            raise MalformedEvent(self.kind, f"history item of type {raw.get('type')!r}", raw)
        return self._message({**raw, "conversation": conversation_id}, historical=True)

    def _message(self, raw: RawEvent, historical: bool = False) -> list[Mutation]:
        key = self.key(str(require(raw, "conversation", self.kind)))
        sender = str(require(raw, "sender", self.kind))
        outgoing = sender == self.self_id
        state = DeliveryState(raw["state"]) if raw.get("state") else (
            DeliveryState.SENT if outgoing else DeliveryState.DELIVERED
        )
        quote = None
        if raw.get("quote"):
            quote_raw = raw["quote"]
            quote = Quote(
                native_id=str(require(quote_raw, "native_id", self.kind)),
                sender_id=str(quote_raw.get("sender_id", "")),
                text=quote_raw.get("text", ""),
            )
        body = MessageBody(
            text=raw.get("text", ""),
            attachments=tuple(self._attachment(a) for a in raw.get("attachments") or []),
            quote=quote,
        )
        return [
            AppendMessage(
                key,
                native_id=str(require(raw, "id", self.kind)),
                sender_id=sender,
                body=body,
                timestamp=require_int(raw, "timestamp", self.kind),
                delivery_state=state,
                outgoing=outgoing,
                historical=historical,
            )
        ]

    def _attachment(self, raw: dict[str, Any]) -> Attachment:
        return Attachment(
            mime_type=raw.get("mime_type") or "application/octet-stream",
            size=int(raw.get("size", 0)),
            name=raw.get("name"),
            data=raw.get("data"),
            handle=raw.get("handle"),
        )

    def _receipt(self, raw: RawEvent) -> list[Mutation]:
        return [
            UpdateDeliveryState(
                self.key(str(require(raw, "conversation", self.kind))),
                str(require(raw, "id", self.kind)),
                DeliveryState(require(raw, "state", self.kind)),
            )
        ]

    def _send_result(self, raw: RawEvent) -> list[Mutation]:
        state = DeliveryState.SENT if raw.get("ok") else DeliveryState.FAILED
        return [
            UpdateDeliveryState(
                self.key(str(require(raw, "conversation", self.kind))),
                str(require(raw, "id", self.kind)),
                state,
            )
        ]

    def _typing(self, raw: RawEvent) -> list[Mutation]:
        return [
            UpsertParticipant(
                self.key(str(require(raw, "conversation", self.kind))),
                str(require(raw, "sender", self.kind)),
                typing=bool(raw.get("typing", True)),
            )
        ]

    def _presence(self, raw: RawEvent) -> list[Mutation]:
        return [
            UpsertParticipant(
                self.key(str(require(raw, "conversation", self.kind))),
                str(require(raw, "sender", self.kind)),
                presence=str(require(raw, "presence", self.kind)),
            )
        ]

    def _edit(self, raw: RawEvent) -> list[Mutation]:
        return [
            EditMessage(
                self.key(str(require(raw, "conversation", self.kind))),
                str(require(raw, "id", self.kind)),
                text=str(raw.get("text", "")),
            )
        ]

    def _redact(self, raw: RawEvent) -> list[Mutation]:
        return [
            EditMessage(
                self.key(str(require(raw, "conversation", self.kind))),
                str(require(raw, "id", self.kind)),
                redact=True,
            )
        ]

    def _reaction(self, raw: RawEvent) -> list[Mutation]:
        return [
            ApplyReaction(
                self.key(str(require(raw, "conversation", self.kind))),
                str(require(raw, "id", self.kind)),
                sender_id=str(require(raw, "sender", self.kind)),
                emoji=str(require(raw, "emoji", self.kind)),
                remove=bool(raw.get("remove", False)),
            )
        ]

    def _connection(self, raw: RawEvent) -> list[Mutation]:
        status = ConnectionStatus(require(raw, "state", self.kind))
        return [UpdateConnectionState(self.backend_id, ConnectionState(status, raw.get("reason")))]
