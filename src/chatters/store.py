"""Authoritative in-memory conversation store.

Each conversation is guarded by its own lock; the registry lock only covers
creating and removing conversations. Locks are held for short synchronous
sections, so readers on any thread always see a complete conversation.
"""

import threading
from bisect import bisect_left, bisect_right, insort
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import replace

from chatters.errors import StoreInvariantError
from chatters.logging import get_logger
from chatters.models import (
    Change,
    ChangeKind,
    ConnectionState,
    Conversation,
    ConversationKey,
    ConversationKind,
    DeliveryState,
    Message,
    MessageBody,
    Participant,
    Reaction,
)
from chatters.mutations import (
    AppendMessage,
    ApplyReaction,
    ConversationMutation,
    EditMessage,
    UpdateDeliveryState,
    UpsertConversation,
    UpsertParticipant,
)

logger = get_logger("store")

# Delivery updates remembered per conversation for messages not seen yet
MAX_PARKED_UPDATES = 256

# Only these may create a conversation that is not in the store yet
_CREATING_MUTATIONS = (UpsertConversation, UpsertParticipant, AppendMessage)


def _sort_key(message: Message) -> tuple[int, int]:
    return message.sort_key


def _timestamp(message: Message) -> int:
    return message.timestamp


class _ConversationRecord:
    """Mutable state behind one conversation. Only touched under `lock`."""

    def __init__(self, key: ConversationKey) -> None:
        self.lock = threading.Lock()
        self.key = key
        self.display_name = ""
        self.kind = ConversationKind.DIRECT
        self.description = ""
        self.participants: dict[str, Participant] = {}
        self.messages: list[Message] = []
        self.by_id: dict[str, Message] = {}
        self.parked: OrderedDict[str, DeliveryState] = OrderedDict()
        self.unread = 0
        self.last_activity: int | None = None
        self._snapshot: Conversation | None = None

    def touch(self, timestamp: int | None) -> None:
        if timestamp is not None and (self.last_activity is None or timestamp > self.last_activity):
            self.last_activity = timestamp

    def invalidate(self) -> None:
        self._snapshot = None

    def snapshot(self) -> Conversation:
        if self._snapshot is None:
            self._snapshot = Conversation(
                key=self.key,
                display_name=self.display_name,
                kind=self.kind,
                description=self.description,
                participants=tuple(self.participants.values()),
                messages=tuple(self.messages),
                unread=self.unread,
                last_activity=self.last_activity,
            )
        return self._snapshot

    def position(self, message: Message) -> int:
        index = bisect_left(self.messages, message.sort_key, key=_sort_key)
        if index >= len(self.messages) or self.messages[index].native_id != message.native_id:
            raise StoreInvariantError(
                f"Message {message.native_id} indexed but missing from {self.key} sequence"
            )
        return index

    def replace_message(self, old: Message, new: Message) -> None:
        self.messages[self.position(old)] = new
        self.by_id[new.native_id] = new


class ConversationStore:
    """Map from ConversationKey to conversation state.

    `apply()` is the single mutation entry point and is only called from the
    engine's dispatch lanes. Everything else is a read or an engine-driven
    maintenance operation.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._records: dict[ConversationKey, _ConversationRecord] = {}
        self._connections: dict[str, ConnectionState] = {}

    # ---- reads -----------------------------------------------------------

    def get(self, key: ConversationKey) -> Conversation | None:
        record = self._records.get(key)
        if record is None:
            return None
        with record.lock:
            return record.snapshot()

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def list_conversations(self, backend_id: str | None = None) -> list[Conversation]:
        """List conversations, most recently active first, then by name."""
        with self._registry_lock:
            records = [
                r for r in self._records.values() if backend_id is None or r.key.backend_id == backend_id
            ]
        snapshots = []
        for record in records:
            with record.lock:
                snapshots.append(record.snapshot())
        snapshots.sort(key=lambda c: (-(c.last_activity or 0), c.name, str(c.key)))
        return snapshots

    def messages(
        self,
        key: ConversationKey,
        after: int | None = None,
        before: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Ordered messages with after < timestamp < before, newest `limit` of them.

        Raises:
            KeyError: if the conversation is unknown
        """
        conversation = self.get(key)
        if conversation is None:
            raise KeyError(key)
        messages = conversation.messages
        start = 0 if after is None else bisect_right(messages, after, key=_timestamp)
        end = len(messages) if before is None else bisect_left(messages, before, key=_timestamp)
        selected = list(messages[start:end])
        if limit is not None:
            selected = selected[-limit:] if limit > 0 else []
        return selected

    def participants(self, key: ConversationKey) -> list[Participant]:
        conversation = self.get(key)
        if conversation is None:
            raise KeyError(key)
        return list(conversation.participants)

    def connection_state(self, backend_id: str) -> ConnectionState:
        return self._connections.get(backend_id, ConnectionState())

    def connection_states(self) -> dict[str, ConnectionState]:
        return dict(self._connections)

    def max_received_at(self) -> int:
        """Largest receipt stamp currently stored (0 when empty)."""
        with self._registry_lock:
            records = list(self._records.values())
        latest = 0
        for record in records:
            with record.lock:
                for message in record.messages:
                    latest = max(latest, message.received_at)
        return latest

    # ---- mutation ---------------------------------------------------------

    def _record(self, key: ConversationKey, create: bool) -> tuple[_ConversationRecord | None, bool]:
        with self._registry_lock:
            record = self._records.get(key)
            if record is not None or not create:
                return record, False
            record = _ConversationRecord(key)
            self._records[key] = record
            return record, True

    def apply(self, mutation: ConversationMutation) -> list[Change]:
        """Apply one conversation mutation; an empty list means it was a no-op."""
        handler = self._handlers.get(type(mutation))
        if handler is None:
            raise StoreInvariantError(f"Store cannot apply {type(mutation).__name__}")

        record, created = self._record(mutation.key, isinstance(mutation, _CREATING_MUTATIONS))
        if record is None:
            logger.debug("Ignoring %s for unknown conversation: key=%s", type(mutation).__name__, mutation.key)
            return []
        with record.lock:
            changes = handler(self, record, mutation)
            if changes or created:
                record.invalidate()

        backend_id = mutation.key.backend_id
        if created:
            logger.debug("Created conversation: key=%s", mutation.key)
            added = Change(ChangeKind.CONVERSATION_ADDED, backend_id, mutation.key)
            changes = [added] + [c for c in changes if c.kind is not ChangeKind.CONVERSATION_CHANGED]
        return changes

    def _apply_upsert_conversation(
        self, record: _ConversationRecord, mutation: UpsertConversation
    ) -> list[Change]:
        changed = False
        if mutation.display_name and mutation.display_name != record.display_name:
            record.display_name = mutation.display_name
            changed = True
        if mutation.kind is not None and mutation.kind is not record.kind:
            record.kind = mutation.kind
            changed = True
        if mutation.description is not None and mutation.description != record.description:
            record.description = mutation.description
            changed = True
        previous = record.last_activity
        record.touch(mutation.last_activity)
        changed = changed or record.last_activity != previous
        if not changed:
            return []
        return [Change(ChangeKind.CONVERSATION_CHANGED, record.key.backend_id, record.key)]

    def _apply_upsert_participant(
        self, record: _ConversationRecord, mutation: UpsertParticipant
    ) -> list[Change]:
        existing = record.participants.get(mutation.participant_id)
        if existing is None:
            existing = Participant(mutation.participant_id)
            updated = existing.merged(mutation.display_name, mutation.presence, mutation.typing)
        else:
            updated = existing.merged(mutation.display_name, mutation.presence, mutation.typing)
            if updated == existing:
                return []
        record.participants[mutation.participant_id] = updated
        return [Change(ChangeKind.PARTICIPANTS_CHANGED, record.key.backend_id, record.key)]

    def _apply_append_message(self, record: _ConversationRecord, mutation: AppendMessage) -> list[Change]:
        if mutation.native_id in record.by_id:
            return []
        if mutation.received_at is None:
            raise StoreInvariantError(f"Message {mutation.native_id} reached the store without a receipt stamp")

        state = mutation.delivery_state
        parked = record.parked.pop(mutation.native_id, None)
        if parked is not None and state.can_become(parked):
            state = parked

        message = Message(
            native_id=mutation.native_id,
            sender_id=mutation.sender_id,
            body=mutation.body,
            timestamp=mutation.timestamp,
            received_at=mutation.received_at,
            delivery_state=state,
            outgoing=mutation.outgoing,
        )
        index = bisect_left(record.messages, message.sort_key, key=_sort_key)
        if index < len(record.messages) and record.messages[index].sort_key == message.sort_key:
            raise StoreInvariantError(
                f"Duplicate sort key {message.sort_key} in {record.key}: "
                f"{record.messages[index].native_id} and {message.native_id}"
            )
        insort(record.messages, message, key=_sort_key)
        record.by_id[message.native_id] = message
        record.touch(message.timestamp)

        changes = [Change(ChangeKind.MESSAGE_ADDED, record.key.backend_id, record.key, message.native_id)]
        if not mutation.outgoing and not mutation.historical:
            record.unread += 1
        if message.sender_id and message.sender_id not in record.participants:
            record.participants[message.sender_id] = Participant(message.sender_id)
            changes.append(Change(ChangeKind.PARTICIPANTS_CHANGED, record.key.backend_id, record.key))
        return changes

    def _apply_update_delivery_state(
        self, record: _ConversationRecord, mutation: UpdateDeliveryState
    ) -> list[Change]:
        message = record.by_id.get(mutation.native_id)
        if message is None:
            parked = record.parked.get(mutation.native_id)
            if parked is None or parked.can_become(mutation.state):
                record.parked[mutation.native_id] = mutation.state
                record.parked.move_to_end(mutation.native_id)
                while len(record.parked) > MAX_PARKED_UPDATES:
                    record.parked.popitem(last=False)
            return []
        if not message.delivery_state.can_become(mutation.state):
            logger.debug(
                "Ignoring delivery update: key=%s message=%s current=%s requested=%s",
                record.key,
                message.native_id,
                message.delivery_state.value,
                mutation.state.value,
            )
            return []
        record.replace_message(message, replace(message, delivery_state=mutation.state))
        return [Change(ChangeKind.MESSAGE_UPDATED, record.key.backend_id, record.key, message.native_id)]

    def _apply_edit_message(self, record: _ConversationRecord, mutation: EditMessage) -> list[Change]:
        message = record.by_id.get(mutation.native_id)
        if message is None:
            logger.debug("Edit for unknown message: key=%s message=%s", record.key, mutation.native_id)
            return []
        if message.redacted:
            return []
        if mutation.redact:
            updated = replace(message, body=MessageBody(), redacted=True, reactions=())
        elif mutation.text is not None and mutation.text != message.text:
            updated = replace(message, body=replace(message.body, text=mutation.text), edited=True)
        else:
            return []
        record.replace_message(message, updated)
        return [Change(ChangeKind.MESSAGE_UPDATED, record.key.backend_id, record.key, message.native_id)]

    def _apply_reaction(self, record: _ConversationRecord, mutation: ApplyReaction) -> list[Change]:
        message = record.by_id.get(mutation.native_id)
        if message is None or message.redacted:
            return []
        reaction = Reaction(mutation.emoji, mutation.sender_id)
        if mutation.remove:
            if reaction not in message.reactions:
                return []
            reactions = tuple(r for r in message.reactions if r != reaction)
        else:
            if reaction in message.reactions:
                return []
            reactions = message.reactions + (reaction,)
        record.replace_message(message, replace(message, reactions=reactions))
        return [Change(ChangeKind.MESSAGE_UPDATED, record.key.backend_id, record.key, message.native_id)]

    _handlers = {
        UpsertConversation: _apply_upsert_conversation,
        UpsertParticipant: _apply_upsert_participant,
        AppendMessage: _apply_append_message,
        UpdateDeliveryState: _apply_update_delivery_state,
        EditMessage: _apply_edit_message,
        ApplyReaction: _apply_reaction,
    }

    # ---- engine maintenance -----------------------------------------------

    def set_connection_state(self, backend_id: str, state: ConnectionState) -> list[Change]:
        """Mirror a backend's connection state for readers. Engine only."""
        if self._connections.get(backend_id) == state:
            return []
        self._connections[backend_id] = state
        return [Change(ChangeKind.CONNECTION_CHANGED, backend_id, connection=state)]

    def mark_read(self, key: ConversationKey) -> list[Change]:
        record = self._records.get(key)
        if record is None:
            raise KeyError(key)
        with record.lock:
            if record.unread == 0:
                return []
            record.unread = 0
            record.invalidate()
        return [Change(ChangeKind.CONVERSATION_CHANGED, key.backend_id, key)]

    def remove_backend(self, backend_id: str) -> list[Change]:
        """Drop every conversation owned by a backend that is being removed."""
        with self._registry_lock:
            keys = [key for key in self._records if key.backend_id == backend_id]
            for key in keys:
                del self._records[key]
        self._connections.pop(backend_id, None)
        logger.info("Removed backend conversations: backend=%s count=%d", backend_id, len(keys))
        return [Change(ChangeKind.CONVERSATION_REMOVED, backend_id, key) for key in keys]

    def restore(self, conversations: Iterable[Conversation]) -> int:
        """Load cached snapshots before sync starts. Known keys are left alone.

        Returns:
            Number of conversations restored
        """
        restored = 0
        for conversation in conversations:
            record, created = self._record(conversation.key, create=True)
            if not created:
                continue
            with record.lock:
                record.display_name = conversation.display_name
                record.kind = conversation.kind
                record.description = conversation.description
                record.participants = {p.participant_id: p for p in conversation.participants}
                record.messages = sorted(conversation.messages, key=_sort_key)
                record.by_id = {m.native_id: m for m in record.messages}
                if len(record.by_id) != len(record.messages):
                    raise StoreInvariantError(f"Cached conversation {conversation.key} has duplicate messages")
                record.unread = conversation.unread
                record.last_activity = conversation.last_activity
                record.invalidate()
            restored += 1
        return restored
