"""Unified data model.

Every backend's native conversations, contacts and messages are translated
into these types. Instances handed to readers are immutable snapshots.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum


def now_ms() -> int:
    """Current wall-clock time as Unix milliseconds."""
    return time.time_ns() // 1_000_000


class DeliveryState(str, Enum):
    """Lifecycle of a message: Sending -> Sent -> Delivered -> Read, or Failed."""

    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    def can_become(self, new: "DeliveryState") -> bool:
        """Whether moving from this state to `new` is a legal forward step.

        Failed is reachable only from Sending or Sent and is terminal.
        """
        if self is DeliveryState.FAILED:
            return False
        if new is DeliveryState.FAILED:
            return self in (DeliveryState.SENDING, DeliveryState.SENT)
        return _DELIVERY_RANK[new] > _DELIVERY_RANK[self]


_DELIVERY_RANK = {
    DeliveryState.SENDING: 0,
    DeliveryState.SENT: 1,
    DeliveryState.DELIVERED: 2,
    DeliveryState.READ: 3,
}


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCING_HISTORY = "syncing_history"
    LIVE = "live"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ConnectionState:
    """Connection state of one backend instance; `reason` is set when degraded."""

    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reason: str | None = None

    @classmethod
    def degraded(cls, reason: str) -> "ConnectionState":
        return cls(ConnectionStatus.DEGRADED, reason)

    @property
    def is_usable(self) -> bool:
        """True while the backend can list, fetch and send."""
        return self.status in (ConnectionStatus.SYNCING_HISTORY, ConnectionStatus.LIVE)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value}({self.reason})"
        return self.status.value


@dataclass(frozen=True, order=True)
class ConversationKey:
    """Globally unique conversation identifier: (backend_id, native_id)."""

    backend_id: str
    native_id: str

    def __str__(self) -> str:
        return f"{self.backend_id}:{self.native_id}"

    @classmethod
    def parse(cls, value: str) -> "ConversationKey":
        """Parse the `backend_id:native_id` form produced by str()."""
        backend_id, sep, native_id = value.partition(":")
        if not sep or not backend_id or not native_id:
            raise ValueError(f"Invalid conversation key: {value!r}")
        return cls(backend_id, native_id)


class ConversationKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


@dataclass(frozen=True)
class Participant:
    """A conversation member, identified by its backend-scoped id."""

    participant_id: str
    display_name: str = ""
    presence: str | None = None
    typing: bool = False

    def merged(
        self,
        display_name: str | None = None,
        presence: str | None = None,
        typing: bool | None = None,
    ) -> "Participant":
        """Return a copy with every provided (non-None) field replaced."""
        changes: dict[str, object] = {}
        if display_name:
            changes["display_name"] = display_name
        if presence is not None:
            changes["presence"] = presence
        if typing is not None:
            changes["typing"] = typing
        return replace(self, **changes) if changes else self

    @property
    def name(self) -> str:
        return self.display_name or self.participant_id


@dataclass(frozen=True)
class Attachment:
    """Reference to attached content; the core never downloads it."""

    mime_type: str
    size: int
    name: str | None = None
    data: bytes | None = None
    handle: str | None = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.handle is None):
            raise ValueError("Attachment needs exactly one of inline data or a retrieval handle")
        if self.size < 0:
            raise ValueError(f"Attachment size must be non-negative, got {self.size}")

    def human_size(self) -> str:
        size = self.size
        if size > 1_000_000_000:
            return f"{size // 1_000_000_000}GB"
        if size > 1_000_000:
            return f"{size // 1_000_000}MB"
        if size > 1_000:
            return f"{size // 1_000}KB"
        return f"{size}B"


@dataclass(frozen=True)
class Quote:
    """Reference to the message a reply quotes."""

    native_id: str
    sender_id: str
    text: str = ""


@dataclass(frozen=True)
class MessageBody:
    text: str = ""
    attachments: tuple[Attachment, ...] = ()
    quote: Quote | None = None


@dataclass(frozen=True)
class Reaction:
    emoji: str
    sender_id: str


@dataclass(frozen=True)
class Message:
    """A message as stored in a conversation.

    `timestamp` is backend-reported (Unix ms); `received_at` is assigned by
    the engine, strictly increasing, and breaks ties when backend timestamps
    collide or run backwards.
    """

    native_id: str
    sender_id: str
    body: MessageBody
    timestamp: int
    received_at: int
    delivery_state: DeliveryState = DeliveryState.DELIVERED
    outgoing: bool = False
    edited: bool = False
    redacted: bool = False
    reactions: tuple[Reaction, ...] = ()

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.timestamp, self.received_at)

    @property
    def text(self) -> str:
        return self.body.text

    def reaction_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for reaction in self.reactions:
            counts[reaction.emoji] = counts.get(reaction.emoji, 0) + 1
        return counts


@dataclass(frozen=True)
class Conversation:
    """Immutable snapshot of one conversation."""

    key: ConversationKey
    display_name: str = ""
    kind: ConversationKind = ConversationKind.DIRECT
    description: str = ""
    participants: tuple[Participant, ...] = ()
    messages: tuple[Message, ...] = field(default=(), repr=False)
    unread: int = 0
    last_activity: int | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.key.native_id

    def participant(self, participant_id: str) -> Participant | None:
        for participant in self.participants:
            if participant.participant_id == participant_id:
                return participant
        return None

    def message(self, native_id: str) -> Message | None:
        for message in self.messages:
            if message.native_id == native_id:
                return message
        return None

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


class ChangeKind(str, Enum):
    CONVERSATION_ADDED = "conversation_added"
    CONVERSATION_CHANGED = "conversation_changed"
    CONVERSATION_REMOVED = "conversation_removed"
    MESSAGE_ADDED = "message_added"
    MESSAGE_UPDATED = "message_updated"
    PARTICIPANTS_CHANGED = "participants_changed"
    CONNECTION_CHANGED = "connection_changed"


@dataclass(frozen=True)
class Change:
    """Notification that part of the store changed.

    Conversation-level changes carry `key`; connection changes carry only
    `backend_id` and the new `connection` state.
    """

    kind: ChangeKind
    backend_id: str
    key: ConversationKey | None = None
    native_id: str | None = None
    connection: ConnectionState | None = None
