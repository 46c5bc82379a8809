"""Mutation commands emitted by normalizers and applied by the engine."""

from dataclasses import dataclass

from chatters.models import (
    ConnectionState,
    ConversationKey,
    ConversationKind,
    DeliveryState,
    MessageBody,
)


@dataclass(frozen=True)
class UpsertConversation:
    """Create the conversation if unknown; update the fields that are set."""

    key: ConversationKey
    display_name: str | None = None
    kind: ConversationKind | None = None
    description: str | None = None
    last_activity: int | None = None


@dataclass(frozen=True)
class UpsertParticipant:
    """Add a participant or merge into the known one. Fields left as None are kept."""

    key: ConversationKey
    participant_id: str
    display_name: str | None = None
    presence: str | None = None
    typing: bool | None = None


@dataclass(frozen=True)
class AppendMessage:
    """Append a message unless one with the same native id exists.

    `received_at` is left as None by normalizers; the engine stamps it.
    `historical` marks backfilled messages, which never count as unread.
    """

    key: ConversationKey
    native_id: str
    sender_id: str
    body: MessageBody
    timestamp: int
    delivery_state: DeliveryState = DeliveryState.DELIVERED
    outgoing: bool = False
    historical: bool = False
    received_at: int | None = None


@dataclass(frozen=True)
class UpdateDeliveryState:
    key: ConversationKey
    native_id: str
    state: DeliveryState


@dataclass(frozen=True)
class EditMessage:
    """Replace a message's text, or redact it when `redact` is set."""

    key: ConversationKey
    native_id: str
    text: str | None = None
    redact: bool = False


@dataclass(frozen=True)
class ApplyReaction:
    key: ConversationKey
    native_id: str
    sender_id: str
    emoji: str
    remove: bool = False


@dataclass(frozen=True)
class UpdateConnectionState:
    """A backend-reported connection change; interpreted by the engine only."""

    backend_id: str
    state: ConnectionState


ConversationMutation = (
    UpsertConversation
    | UpsertParticipant
    | AppendMessage
    | UpdateDeliveryState
    | EditMessage
    | ApplyReaction
)
Mutation = ConversationMutation | UpdateConnectionState
