"""Normalizer for the Matrix-style backend.

Raw events are client-server API events with `room_id` attached. Messages
we send are identified by their transaction id from the moment
send_message() returns; when the homeserver later echoes the event back
(with `unsigned.transaction_id`) or reports the send result, the event id
is aliased to that transaction id so receipts, edits and reactions that
reference the event id land on the same message.
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

MAX_REMEMBERED = 4096

FILE_MSGTYPES = {"m.file", "m.image", "m.video", "m.audio"}


def _bounded_put(mapping: OrderedDict, key: Any, value: Any) -> None:
    mapping[key] = value
    mapping.move_to_end(key)
    while len(mapping) > MAX_REMEMBERED:
        mapping.popitem(last=False)


class MatrixNormalizer(Normalizer):
    """Normalizer for MatrixBackend events."""

    kind = "matrix"

    def __init__(self, backend_id: str, self_id: str | None = None) -> None:
        super().__init__(backend_id, self_id)
        # transaction id -> room of sends started through the engine
        self._pending_txns: OrderedDict[str, str] = OrderedDict()
        # event id -> transaction id
        self._aliases: OrderedDict[str, str] = OrderedDict()
        # event ids (resolved) of our own messages
        self._own: OrderedDict[str, None] = OrderedDict()
        # reaction event id -> (room, target, sender, emoji)
        self._reactions: OrderedDict[str, tuple[str, str, str, str]] = OrderedDict()
        self._members: dict[str, set[str]] = {}
        self._typing: dict[str, set[str]] = {}

    def resolve(self, event_id: str) -> str:
        """Native message id for an event id, following transaction aliases."""
        return self._aliases.get(event_id, event_id)

    def note_outgoing(self, handle: SendHandle, key: ConversationKey) -> None:
        _bounded_put(self._pending_txns, handle.native_id, key.native_id)
        _bounded_put(self._own, handle.native_id, None)

    def _alias(self, event_id: str, txn_id: str) -> None:
        _bounded_put(self._aliases, event_id, txn_id)

    def _join(self, room_id: str, user_id: str) -> None:
        self._members.setdefault(room_id, set()).add(user_id)

    # ---- conversations -----------------------------------------------------

    def translate_conversation(self, raw: RawEvent) -> list[Mutation]:
        room_id = str(require(raw, "room_id", self.kind))
        key = self.key(room_id)
        members = raw.get("members") or []
        is_group = len(members) > 2 and not raw.get("is_direct", False)
        mutations: list[Mutation] = [
            UpsertConversation(
                key,
                display_name=raw.get("name") or "",
                kind=ConversationKind.GROUP if is_group else ConversationKind.DIRECT,
                description=raw.get("topic") or "",
                last_activity=raw.get("last_activity"),
            )
        ]
        for member in members:
            user_id = str(require(member, "user_id", self.kind))
            self._join(room_id, user_id)
            mutations.append(UpsertParticipant(key, user_id, display_name=member.get("displayname")))
        return mutations

    # ---- events ------------------------------------------------------------

    def translate_event(self, raw: RawEvent) -> list[Mutation]:
        return self._translate(raw, historical=False)

    def translate_history(self, conversation_id: str, raw: RawEvent) -> list[Mutation]:
        return self._translate({**raw, "room_id": conversation_id}, historical=True)

    def _translate(self, raw: RawEvent, historical: bool) -> list[Mutation]:
        event_type = require(raw, "type", self.kind)
        if event_type == "m.room.message":
            return self._room_message(raw, historical)
        if event_type == "m.presence":
            return self._presence(raw)
        if event_type == "chatters.send_result":
            return self._send_result(raw)

        room_id = str(require(raw, "room_id", self.kind))
        handlers = {
            "m.receipt": self._receipt,
            "m.typing": self._typing_event,
            "m.room.member": self._member,
            "m.room.name": self._room_name,
            "m.room.topic": self._room_topic,
            "m.room.redaction": self._redaction,
            "m.reaction": self._reaction,
        }
        handler = handlers.get(event_type)
        if handler is None:
            raise MalformedEvent(self.kind, f"unsupported event type {event_type!r}", raw)
        return handler(room_id, raw)

    def _room_message(self, raw: RawEvent, historical: bool) -> list[Mutation]:
        room_id = str(require(raw, "room_id", self.kind))
        key = self.key(room_id)
        event_id = str(require(raw, "event_id", self.kind))
        sender = str(require(raw, "sender", self.kind))
        content = require(raw, "content", self.kind)
        relates = content.get("m.relates_to") or {}

        if relates.get("rel_type") == "m.replace":
            target = self.resolve(str(require(relates, "event_id", self.kind)))
            new_content = content.get("m.new_content") or {}
            return [EditMessage(key, target, text=new_content.get("body", content.get("body", "")))]

        txn_id = (raw.get("unsigned") or {}).get("transaction_id")
        if txn_id and txn_id in self._pending_txns:
            # local echo of a send we already appended under the transaction id
            self._alias(event_id, txn_id)
            return [UpdateDeliveryState(key, txn_id, DeliveryState.SENT)]
        if event_id in self._aliases:
            # our send, already stored under its transaction id
            return [UpdateDeliveryState(key, self._aliases[event_id], DeliveryState.SENT)]

        msgtype = content.get("msgtype", "m.text")
        text = content.get("body", "")
        attachments: tuple[Attachment, ...] = ()
        if msgtype in FILE_MSGTYPES:
            info = content.get("info") or {}
            attachments = (
                Attachment(
                    mime_type=info.get("mimetype") or "application/octet-stream",
                    size=int(info.get("size") or 0),
                    name=text or None,
                    handle=str(require(content, "url", self.kind)),
                ),
            )
            text = ""

        quote = None
        reply_to = (relates.get("m.in_reply_to") or {}).get("event_id")
        if reply_to:
            quote = Quote(native_id=self.resolve(str(reply_to)), sender_id="", text="")

        outgoing = sender == self.self_id
        if outgoing:
            _bounded_put(self._own, event_id, None)
        self._join(room_id, sender)
        return [
            AppendMessage(
                key,
                native_id=event_id,
                sender_id=sender,
                body=MessageBody(text=text, attachments=attachments, quote=quote),
                timestamp=require_int(raw, "origin_server_ts", self.kind),
                delivery_state=DeliveryState.SENT if outgoing else DeliveryState.DELIVERED,
                outgoing=outgoing,
                historical=historical,
            )
        ]

    def _send_result(self, raw: RawEvent) -> list[Mutation]:
        txn_id = str(require(raw, "txn_id", self.kind))
        room_id = self._pending_txns.get(txn_id)
        if room_id is None:
            # attachment sends and sends from before a restart
            return []
        key = self.key(room_id)
        if raw.get("error") or not raw.get("event_id"):
            return [UpdateDeliveryState(key, txn_id, DeliveryState.FAILED)]
        self._alias(str(raw["event_id"]), txn_id)
        return [UpdateDeliveryState(key, txn_id, DeliveryState.SENT)]

    def _receipt(self, room_id: str, raw: RawEvent) -> list[Mutation]:
        key = self.key(room_id)
        mutations: list[Mutation] = []
        for event_id, receipts in require(raw, "content", self.kind).items():
            native_id = self.resolve(event_id)
            if native_id not in self._own:
                continue
            readers = set(receipts.get("m.read") or {}) | set(receipts.get("m.read.private") or {})
            readers.discard(self.self_id)
            if readers:
                mutations.append(UpdateDeliveryState(key, native_id, DeliveryState.READ))
        return mutations

    def _typing_event(self, room_id: str, raw: RawEvent) -> list[Mutation]:
        key = self.key(room_id)
        now_typing = set(require(raw, "content", self.kind).get("user_ids") or [])
        before = self._typing.get(room_id, set())
        self._typing[room_id] = now_typing
        mutations: list[Mutation] = []
        for user_id in sorted(now_typing - before):
            mutations.append(UpsertParticipant(key, user_id, typing=True))
        for user_id in sorted(before - now_typing):
            mutations.append(UpsertParticipant(key, user_id, typing=False))
        return mutations

    def _presence(self, raw: RawEvent) -> list[Mutation]:
        sender = str(require(raw, "sender", self.kind))
        presence = str(require(require(raw, "content", self.kind), "presence", self.kind))
        return [
            UpsertParticipant(self.key(room_id), sender, presence=presence)
            for room_id, members in sorted(self._members.items())
            if sender in members
        ]

    def _member(self, room_id: str, raw: RawEvent) -> list[Mutation]:
        user_id = str(require(raw, "state_key", self.kind))
        content = require(raw, "content", self.kind)
        if content.get("membership") not in ("join", "invite"):
            self._members.get(room_id, set()).discard(user_id)
            return []
        self._join(room_id, user_id)
        return [UpsertParticipant(self.key(room_id), user_id, display_name=content.get("displayname"))]

    def _room_name(self, room_id: str, raw: RawEvent) -> list[Mutation]:
        name = require(raw, "content", self.kind).get("name") or ""
        return [UpsertConversation(self.key(room_id), display_name=name)]

    def _room_topic(self, room_id: str, raw: RawEvent) -> list[Mutation]:
        topic = require(raw, "content", self.kind).get("topic") or ""
        return [UpsertConversation(self.key(room_id), description=topic)]

    def _redaction(self, room_id: str, raw: RawEvent) -> list[Mutation]:
        redacts = raw.get("redacts") or (raw.get("content") or {}).get("redacts")
        if not redacts:
            raise MalformedEvent(self.kind, "redaction without target", raw)
        reaction = self._reactions.pop(redacts, None)
        if reaction is not None:
            reaction_room, target, sender, emoji = reaction
            return [ApplyReaction(self.key(reaction_room), target, sender_id=sender, emoji=emoji, remove=True)]
        return [EditMessage(self.key(room_id), self.resolve(str(redacts)), redact=True)]

    def _reaction(self, room_id: str, raw: RawEvent) -> list[Mutation]:
        relates = require(require(raw, "content", self.kind), "m.relates_to", self.kind)
        if relates.get("rel_type") != "m.annotation":
            raise MalformedEvent(self.kind, f"reaction with rel_type {relates.get('rel_type')!r}", raw)
        target = self.resolve(str(require(relates, "event_id", self.kind)))
        sender = str(require(raw, "sender", self.kind))
        emoji = str(require(relates, "key", self.kind))
        _bounded_put(self._reactions, str(require(raw, "event_id", self.kind)), (room_id, target, sender, emoji))
        return [ApplyReaction(self.key(room_id), target, sender_id=sender, emoji=emoji)]
