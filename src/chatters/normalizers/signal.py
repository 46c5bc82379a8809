"""Normalizer for the Signal-style backend.

Protocol details handled here:
- A message is identified by its author and sent timestamp, so native ids
  are "<author uuid>:<timestamp>".
- 1:1 threads are keyed by the other party: an incoming message belongs to
  its sender, an outgoing sync transcript to its destination. Group
  messages carry the group master key.
- Delivery/read receipts list only sent timestamps. The thread is found by
  remembering where each outgoing message went, falling back to the
  receipt sender's 1:1 thread.
- Data messages without text or attachments (profile keys, timers) carry
  nothing to show and produce no mutations.
"""

from collections import OrderedDict
from typing import Any

from chatters.backends.base import RawEvent, SendHandle
from chatters.errors import MalformedEvent
from chatters.models import (
    Attachment,
    ConversationKey,
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
    UpdateDeliveryState,
    UpsertConversation,
    UpsertParticipant,
)
from chatters.normalizers.base import Normalizer, require, require_int

# Outgoing timestamps remembered for resolving receipts
MAX_REMEMBERED_SENDS = 4096

RECEIPT_STATES = {
    "DELIVERY": DeliveryState.DELIVERED,
    "READ": DeliveryState.READ,
    "VIEWED": DeliveryState.READ,
}


def message_id(author: str, timestamp: int) -> str:
    return f"{author}:{timestamp}"


class SignalNormalizer(Normalizer):
    """Normalizer for SignalBackend envelopes."""

    kind = "signal"

    def __init__(self, backend_id: str, self_id: str | None = None) -> None:
        super().__init__(backend_id, self_id)
        self._sent_threads: OrderedDict[int, ConversationKey] = OrderedDict()

    def user_key(self, uuid: str) -> ConversationKey:
        return self.key(f"user:{uuid}")

    def group_key(self, master_key: str) -> ConversationKey:
        return self.key(f"group:{master_key}")

    def _remember(self, timestamp: int, key: ConversationKey) -> None:
        self._sent_threads[timestamp] = key
        self._sent_threads.move_to_end(timestamp)
        while len(self._sent_threads) > MAX_REMEMBERED_SENDS:
            self._sent_threads.popitem(last=False)

    def note_outgoing(self, handle: SendHandle, key: ConversationKey) -> None:
        self._remember(handle.timestamp, key)

    # ---- conversations -----------------------------------------------------

    def translate_conversation(self, raw: RawEvent) -> list[Mutation]:
        kind = raw.get("kind")
        if kind == "contact":
            return self._contact(raw)
        if kind == "group":
            return self._group(raw)
        raise MalformedEvent(self.kind, f"unknown conversation kind {kind!r}", raw)

    def _contact(self, raw: RawEvent) -> list[Mutation]:
        uuid = str(require(raw, "uuid", self.kind))
        name = raw.get("name") or ""
        if uuid == self.self_id:
            name = name or "Note to Self"
        elif not name:
            # contacts without a name are address-book noise
            return []
        key = self.user_key(uuid)
        return [
            UpsertConversation(
                key,
                display_name=name,
                kind=ConversationKind.DIRECT,
                description=raw.get("phone_number") or "",
                last_activity=raw.get("last_message_timestamp"),
            ),
            UpsertParticipant(key, uuid, display_name=name),
        ]

    def _group(self, raw: RawEvent) -> list[Mutation]:
        key = self.group_key(str(require(raw, "master_key", self.kind)))
        mutations: list[Mutation] = [
            UpsertConversation(
                key,
                display_name=raw.get("title") or "",
                kind=ConversationKind.GROUP,
                description=raw.get("description") or "",
                last_activity=raw.get("last_message_timestamp"),
            )
        ]
        for member in raw.get("members", []):
            if isinstance(member, dict):
                mutations.append(
                    UpsertParticipant(key, str(require(member, "uuid", self.kind)), display_name=member.get("name"))
                )
            else:
                mutations.append(UpsertParticipant(key, str(member)))
        return mutations

    # ---- events --------------------------------------------------------------

    def translate_event(self, raw: RawEvent) -> list[Mutation]:
        kind = require(raw, "kind", self.kind)
        if kind in ("queue_empty", "contacts"):
            return []
        if kind == "send_result":
            return self._send_result(raw)
        if kind == "content":
            return self._content(raw, historical=False)
        raise MalformedEvent(self.kind, f"unknown envelope kind {kind!r}", raw)

    def translate_history(self, conversation_id: str, raw: RawEvent) -> list[Mutation]:
        if raw.get("kind", "content") != "content":
            raise MalformedEvent(self.kind, f"history item of kind {raw.get('kind')!r}", raw)
        return self._content(raw, historical=True, conversation_id=conversation_id)

    def _send_result(self, raw: RawEvent) -> list[Mutation]:
        timestamp = require_int(raw, "timestamp", self.kind)
        key = self._thread_key(require(raw, "thread", self.kind))
        state = DeliveryState.SENT if raw.get("ok") else DeliveryState.FAILED
        return [UpdateDeliveryState(key, message_id(self.self_id or "", timestamp), state)]

    def _thread_key(self, thread: dict[str, Any]) -> ConversationKey:
        if thread.get("group"):
            return self.group_key(str(thread["group"]))
        if thread.get("contact"):
            return self.user_key(str(thread["contact"]))
        raise MalformedEvent(self.kind, "thread has neither contact nor group", thread)

    def _content(
        self, raw: RawEvent, historical: bool, conversation_id: str | None = None
    ) -> list[Mutation]:
        sender = str(require(raw, "sender", self.kind))
        timestamp = require_int(raw, "timestamp", self.kind)
        body = require(raw, "body", self.kind)

        if "data_message" in body:
            return self._data_message(sender, timestamp, body["data_message"], historical, conversation_id)
        if "edit_message" in body:
            return self._edit(sender, body["edit_message"], conversation_id)
        if "receipt_message" in body:
            return self._receipt(sender, body["receipt_message"])
        if "typing_message" in body:
            return self._typing(sender, body["typing_message"])
        if "sync_message" in body:
            return self._sync(timestamp, body["sync_message"], historical, conversation_id)
        if "call_message" in body or "story_message" in body:
            return []
        raise MalformedEvent(self.kind, f"unsupported content {sorted(body)}", raw)

    def _conversation_for(
        self,
        sender: str,
        data_message: dict[str, Any],
        conversation_id: str | None,
        destination: str | None = None,
    ) -> ConversationKey:
        group = data_message.get("group_v2") or {}
        if group.get("master_key"):
            return self.group_key(str(group["master_key"]))
        if conversation_id is not None:
            return self.key(conversation_id)
        if sender == self.self_id:
            if not destination:
                raise MalformedEvent(self.kind, "outgoing message without destination", data_message)
            return self.user_key(destination)
        return self.user_key(sender)

    def _data_message(
        self,
        sender: str,
        timestamp: int,
        data_message: dict[str, Any],
        historical: bool,
        conversation_id: str | None,
        destination: str | None = None,
    ) -> list[Mutation]:
        key = self._conversation_for(sender, data_message, conversation_id, destination)

        reaction = data_message.get("reaction")
        if reaction:
            target = message_id(
                str(require(reaction, "target_author_aci", self.kind)),
                require_int(reaction, "target_sent_timestamp", self.kind),
            )
            return [
                ApplyReaction(
                    key,
                    target,
                    sender_id=sender,
                    emoji=str(require(reaction, "emoji", self.kind)),
                    remove=bool(reaction.get("remove", False)),
                )
            ]

        text = data_message.get("body") or ""
        attachments = tuple(
            self._attachment(sender, timestamp, index, pointer)
            for index, pointer in enumerate(data_message.get("attachments") or [])
        )
        if not text and not attachments:
            return []

        quote = None
        if data_message.get("quote"):
            quote_raw = data_message["quote"]
            author = str(require(quote_raw, "author_aci", self.kind))
            quote = Quote(
                native_id=message_id(author, require_int(quote_raw, "id", self.kind)),
                sender_id=author,
                text=quote_raw.get("text") or "",
            )

        outgoing = sender == self.self_id
        if outgoing:
            self._remember(timestamp, key)
        return [
            AppendMessage(
                key,
                native_id=message_id(sender, timestamp),
                sender_id=sender,
                body=MessageBody(text=text, attachments=attachments, quote=quote),
                timestamp=timestamp,
                delivery_state=DeliveryState.SENT if outgoing else DeliveryState.DELIVERED,
                outgoing=outgoing,
                historical=historical,
            )
        ]

    def _attachment(self, sender: str, timestamp: int, index: int, pointer: dict[str, Any]) -> Attachment:
        handle = pointer.get("cdn_key") or pointer.get("cdn_id") or f"{message_id(sender, timestamp)}/{index}"
        return Attachment(
            mime_type=pointer.get("content_type") or "application/octet-stream",
            size=int(pointer.get("size") or 0),
            name=pointer.get("file_name"),
            handle=str(handle),
        )

    def _edit(self, sender: str, edit: dict[str, Any], conversation_id: str | None) -> list[Mutation]:
        target = require_int(edit, "target_sent_timestamp", self.kind)
        data_message = edit.get("data_message") or {}
        key = self._conversation_for(sender, data_message, conversation_id, edit.get("destination"))
        return [EditMessage(key, message_id(sender, target), text=data_message.get("body") or "")]

    def _receipt(self, sender: str, receipt: dict[str, Any]) -> list[Mutation]:
        receipt_type = receipt.get("type", "DELIVERY")
        state = RECEIPT_STATES.get(receipt_type)
        if state is None:
            raise MalformedEvent(self.kind, f"unknown receipt type {receipt_type!r}", receipt)
        mutations: list[Mutation] = []
        for sent_timestamp in receipt.get("timestamps") or []:
            sent_timestamp = int(sent_timestamp)
            key = self._sent_threads.get(sent_timestamp) or self.user_key(sender)
            mutations.append(UpdateDeliveryState(key, message_id(self.self_id or "", sent_timestamp), state))
        return mutations

    def _typing(self, sender: str, typing: dict[str, Any]) -> list[Mutation]:
        key = self.group_key(str(typing["group_id"])) if typing.get("group_id") else self.user_key(sender)
        return [UpsertParticipant(key, sender, typing=typing.get("action", "STARTED") == "STARTED")]

    def _sync(
        self,
        timestamp: int,
        sync: dict[str, Any],
        historical: bool,
        conversation_id: str | None,
    ) -> list[Mutation]:
        sent = sync.get("sent")
        if not sent:
            # read markers, contact/group sync, etc.
            return []
        if not self.self_id:
            raise MalformedEvent(self.kind, "sync transcript before own id is known", sync)
        return self._data_message(
            self.self_id,
            int(sent.get("timestamp") or timestamp),
            require(sent, "message", self.kind),
            historical,
            conversation_id,
            destination=sent.get("destination_service_id"),
        )
