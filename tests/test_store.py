"""Tests for the conversation store."""

import itertools

import pytest

from chatters.errors import StoreInvariantError
from chatters.models import (
    ChangeKind,
    ConnectionState,
    ConnectionStatus,
    Conversation,
    ConversationKey,
    ConversationKind,
    DeliveryState,
    Message,
    MessageBody,
    Participant,
)
from chatters.mutations import (
    AppendMessage,
    ApplyReaction,
    EditMessage,
    UpdateConnectionState,
    UpdateDeliveryState,
    UpsertConversation,
    UpsertParticipant,
)
from chatters.store import MAX_PARKED_UPDATES, ConversationStore

KEY = ConversationKey("local", "c1")
OTHER = ConversationKey("local", "c2")

_stamps = itertools.count(1)


def append(
    native_id: str,
    timestamp: int,
    key: ConversationKey = KEY,
    sender: str = "alice",
    text: str = "hi",
    received_at: int | None = None,
    **kwargs,
) -> AppendMessage:
    return AppendMessage(
        key,
        native_id=native_id,
        sender_id=sender,
        body=MessageBody(text),
        timestamp=timestamp,
        received_at=received_at if received_at is not None else next(_stamps),
        **kwargs,
    )


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore()


class TestUpsertConversation:
    """Tests for conversation creation and updates."""

    def test_creates_on_first_reference(self, store: ConversationStore) -> None:
        """The first mutation for a key should create the conversation."""
        changes = store.apply(UpsertConversation(KEY, display_name="Chat", kind=ConversationKind.GROUP))
        assert [c.kind for c in changes] == [ChangeKind.CONVERSATION_ADDED]
        conv = store.get(KEY)
        assert conv.display_name == "Chat"
        assert conv.kind is ConversationKind.GROUP

    def test_update_reports_changed(self, store: ConversationStore) -> None:
        store.apply(UpsertConversation(KEY, display_name="Chat"))
        changes = store.apply(UpsertConversation(KEY, display_name="Renamed"))
        assert [c.kind for c in changes] == [ChangeKind.CONVERSATION_CHANGED]
        assert store.get(KEY).name == "Renamed"

    def test_identical_upsert_is_noop(self, store: ConversationStore) -> None:
        store.apply(UpsertConversation(KEY, display_name="Chat"))
        assert store.apply(UpsertConversation(KEY, display_name="Chat")) == []

    def test_last_activity_only_moves_forward(self, store: ConversationStore) -> None:
        store.apply(UpsertConversation(KEY, last_activity=200))
        store.apply(UpsertConversation(KEY, last_activity=100))
        assert store.get(KEY).last_activity == 200


class TestUpsertParticipant:
    """Tests for participant merging."""

    def test_readding_merges_without_duplicates(self, store: ConversationStore) -> None:
        """Re-adding a known participant should merge fields, not duplicate."""
        store.apply(UpsertParticipant(KEY, "bob", display_name="Bob"))
        store.apply(UpsertParticipant(KEY, "bob", presence="online"))
        participants = store.participants(KEY)
        assert participants == [Participant("bob", display_name="Bob", presence="online")]

    def test_unchanged_participant_is_noop(self, store: ConversationStore) -> None:
        store.apply(UpsertParticipant(KEY, "bob", display_name="Bob"))
        assert store.apply(UpsertParticipant(KEY, "bob", display_name="Bob")) == []

    def test_typing_flag(self, store: ConversationStore) -> None:
        store.apply(UpsertParticipant(KEY, "bob", typing=True))
        assert store.get(KEY).participant("bob").typing
        store.apply(UpsertParticipant(KEY, "bob", typing=False))
        assert not store.get(KEY).participant("bob").typing


class TestAppendMessage:
    """Tests for message insertion."""

    def test_duplicate_native_id_is_noop(self, store: ConversationStore) -> None:
        """Appending the same native id twice should keep one message and one unread."""
        store.apply(append("m1", 100))
        assert store.apply(append("m1", 100)) == []
        conv = store.get(KEY)
        assert [m.native_id for m in conv.messages] == ["m1"]
        assert conv.unread == 1

    def test_orders_by_backend_timestamp(self, store: ConversationStore) -> None:
        """Messages should be ordered by timestamp regardless of arrival order."""
        store.apply(append("late", 300))
        store.apply(append("early", 100))
        store.apply(append("middle", 200))
        assert [m.native_id for m in store.get(KEY).messages] == ["early", "middle", "late"]

    def test_equal_timestamps_ordered_by_receipt(self, store: ConversationStore) -> None:
        """Ties should go to the message received first."""
        store.apply(append("second", 100, received_at=20))
        store.apply(append("first", 100, received_at=10))
        assert [m.native_id for m in store.get(KEY).messages] == ["first", "second"]

    def test_missing_receipt_stamp_rejected(self, store: ConversationStore) -> None:
        mutation = AppendMessage(KEY, "m1", "alice", MessageBody("x"), timestamp=1)
        with pytest.raises(StoreInvariantError):
            store.apply(mutation)

    def test_duplicate_sort_key_rejected(self, store: ConversationStore) -> None:
        store.apply(append("m1", 100, received_at=5))
        with pytest.raises(StoreInvariantError):
            store.apply(append("m2", 100, received_at=5))

    def test_unread_counts_only_live_incoming(self, store: ConversationStore) -> None:
        """Outgoing and backfilled messages should not count as unread."""
        store.apply(append("in", 1))
        store.apply(append("out", 2, sender="me", outgoing=True))
        store.apply(append("old", 3, historical=True))
        assert store.get(KEY).unread == 1

    def test_unknown_sender_becomes_participant(self, store: ConversationStore) -> None:
        changes = store.apply(append("m1", 1, sender="carol"))
        assert ChangeKind.PARTICIPANTS_CHANGED in [c.kind for c in changes]
        assert store.get(KEY).participant("carol") is not None

    def test_first_message_creates_conversation(self, store: ConversationStore) -> None:
        changes = store.apply(append("m1", 1))
        assert changes[0].kind is ChangeKind.CONVERSATION_ADDED
        assert ChangeKind.MESSAGE_ADDED in [c.kind for c in changes]

    def test_updates_last_activity(self, store: ConversationStore) -> None:
        store.apply(append("m1", 500))
        assert store.get(KEY).last_activity == 500


class TestUpdateDeliveryState:
    """Tests for delivery state updates."""

    def test_forward_update_applies(self, store: ConversationStore) -> None:
        store.apply(append("m1", 1, sender="me", outgoing=True, delivery_state=DeliveryState.SENDING))
        changes = store.apply(UpdateDeliveryState(KEY, "m1", DeliveryState.DELIVERED))
        assert [c.kind for c in changes] == [ChangeKind.MESSAGE_UPDATED]
        assert store.get(KEY).message("m1").delivery_state is DeliveryState.DELIVERED

    def test_backward_update_ignored(self, store: ConversationStore) -> None:
        """A message never goes from Delivered back to Sending."""
        store.apply(append("m1", 1, delivery_state=DeliveryState.DELIVERED))
        assert store.apply(UpdateDeliveryState(KEY, "m1", DeliveryState.SENDING)) == []
        assert store.get(KEY).message("m1").delivery_state is DeliveryState.DELIVERED

    def test_failed_is_terminal(self, store: ConversationStore) -> None:
        store.apply(append("m1", 1, outgoing=True, delivery_state=DeliveryState.SENDING))
        store.apply(UpdateDeliveryState(KEY, "m1", DeliveryState.FAILED))
        assert store.apply(UpdateDeliveryState(KEY, "m1", DeliveryState.READ)) == []
        assert store.get(KEY).message("m1").delivery_state is DeliveryState.FAILED

    def test_update_before_message_is_parked(self, store: ConversationStore) -> None:
        """A receipt that arrives before its message should apply when the message does."""
        store.apply(UpsertConversation(KEY))
        assert store.apply(UpdateDeliveryState(KEY, "m1", DeliveryState.READ)) == []
        store.apply(append("m1", 1, outgoing=True, delivery_state=DeliveryState.SENDING))
        assert store.get(KEY).message("m1").delivery_state is DeliveryState.READ

    def test_parked_updates_are_bounded(self, store: ConversationStore) -> None:
        store.apply(UpsertConversation(KEY))
        for i in range(MAX_PARKED_UPDATES + 1):
            store.apply(UpdateDeliveryState(KEY, f"m{i}", DeliveryState.READ))
        store.apply(append("m0", 1, outgoing=True, delivery_state=DeliveryState.SENDING))
        store.apply(append(f"m{MAX_PARKED_UPDATES}", 2, outgoing=True, delivery_state=DeliveryState.SENDING))
        conv = store.get(KEY)
        assert conv.message("m0").delivery_state is DeliveryState.SENDING
        assert conv.message(f"m{MAX_PARKED_UPDATES}").delivery_state is DeliveryState.READ


class TestEditsAndReactions:
    """Tests for edits, redactions and reactions."""

    def test_edit_replaces_text(self, store: ConversationStore) -> None:
        store.apply(append("m1", 1, text="helo"))
        store.apply(EditMessage(KEY, "m1", text="hello"))
        msg = store.get(KEY).message("m1")
        assert msg.text == "hello"
        assert msg.edited

    def test_redaction_clears_body_and_reactions(self, store: ConversationStore) -> None:
        store.apply(append("m1", 1, text="secret"))
        store.apply(ApplyReaction(KEY, "m1", "bob", "👍"))
        store.apply(EditMessage(KEY, "m1", redact=True))
        msg = store.get(KEY).message("m1")
        assert msg.redacted
        assert msg.text == ""
        assert msg.reactions == ()

    def test_redacted_message_cannot_be_edited(self, store: ConversationStore) -> None:
        store.apply(append("m1", 1))
        store.apply(EditMessage(KEY, "m1", redact=True))
        assert store.apply(EditMessage(KEY, "m1", text="back")) == []

    @pytest.mark.parametrize(
        "mutation",
        [
            EditMessage(KEY, "m1", redact=True),
            ApplyReaction(KEY, "m1", "bob", "👍"),
            UpdateDeliveryState(KEY, "m1", DeliveryState.READ),
        ],
    )
    def test_stray_update_does_not_create_conversation(self, store: ConversationStore, mutation) -> None:
        assert store.apply(mutation) == []
        assert store.get(KEY) is None
        assert store.list_conversations() == []

    def test_edit_of_unknown_message_is_noop(self, store: ConversationStore) -> None:
        store.apply(UpsertConversation(KEY))
        assert store.apply(EditMessage(KEY, "nope", text="x")) == []

    def test_reactions_add_and_remove(self, store: ConversationStore) -> None:
        store.apply(append("m1", 1))
        store.apply(ApplyReaction(KEY, "m1", "bob", "👍"))
        assert store.apply(ApplyReaction(KEY, "m1", "bob", "👍")) == []
        assert store.get(KEY).message("m1").reaction_counts() == {"👍": 1}
        store.apply(ApplyReaction(KEY, "m1", "bob", "👍", remove=True))
        assert store.get(KEY).message("m1").reactions == ()


class TestReads:
    """Tests for the read API."""

    def test_messages_range_and_limit(self, store: ConversationStore) -> None:
        """messages() should filter by exclusive bounds and keep the newest `limit`."""
        for i in range(1, 6):
            store.apply(append(f"m{i}", i * 100))
        assert [m.native_id for m in store.messages(KEY, after=100, before=500)] == ["m2", "m3", "m4"]
        assert [m.native_id for m in store.messages(KEY, limit=2)] == ["m4", "m5"]
        assert store.messages(KEY, limit=0) == []

    def test_messages_unknown_conversation(self, store: ConversationStore) -> None:
        with pytest.raises(KeyError):
            store.messages(KEY)

    def test_list_conversations_most_recent_first(self, store: ConversationStore) -> None:
        store.apply(append("m1", 100, key=KEY))
        store.apply(append("m2", 200, key=OTHER))
        store.apply(UpsertConversation(ConversationKey("signal", "x"), last_activity=50))
        assert [str(c.key) for c in store.list_conversations()] == ["local:c2", "local:c1", "signal:x"]
        assert [str(c.key) for c in store.list_conversations("signal")] == ["signal:x"]

    def test_snapshots_are_immutable_and_stable(self, store: ConversationStore) -> None:
        """A snapshot taken earlier should not change after later mutations."""
        store.apply(append("m1", 1))
        before = store.get(KEY)
        store.apply(append("m2", 2))
        assert len(before.messages) == 1
        assert len(store.get(KEY).messages) == 2

    def test_get_unknown_returns_none(self, store: ConversationStore) -> None:
        assert store.get(KEY) is None
        assert KEY not in store


class TestMaintenance:
    """Tests for engine-only maintenance operations."""

    def test_apply_rejects_connection_mutation(self, store: ConversationStore) -> None:
        with pytest.raises(StoreInvariantError):
            store.apply(UpdateConnectionState("local", ConnectionState()))

    def test_connection_state(self, store: ConversationStore) -> None:
        live = ConnectionState(ConnectionStatus.LIVE)
        changes = store.set_connection_state("local", live)
        assert changes[0].kind is ChangeKind.CONNECTION_CHANGED
        assert store.set_connection_state("local", live) == []
        assert store.connection_state("local") == live
        assert store.connection_state("other").status is ConnectionStatus.DISCONNECTED

    def test_mark_read(self, store: ConversationStore) -> None:
        store.apply(append("m1", 1))
        assert store.mark_read(KEY)[0].kind is ChangeKind.CONVERSATION_CHANGED
        assert store.get(KEY).unread == 0
        assert store.mark_read(KEY) == []

    def test_remove_backend_only_touches_its_conversations(self, store: ConversationStore) -> None:
        signal_key = ConversationKey("signal", "x")
        store.apply(append("m1", 1))
        store.apply(append("m2", 1, key=signal_key))
        changes = store.remove_backend("local")
        assert [c.key for c in changes] == [KEY]
        assert KEY not in store
        assert signal_key in store

    def test_restore_skips_known_conversations(self, store: ConversationStore) -> None:
        store.apply(UpsertConversation(KEY, display_name="Live"))
        cached = [
            Conversation(KEY, display_name="Cached"),
            Conversation(
                OTHER,
                display_name="Other",
                messages=(Message("m1", "a", MessageBody("x"), timestamp=1, received_at=10),),
                unread=2,
            ),
        ]
        assert store.restore(cached) == 1
        assert store.get(KEY).display_name == "Live"
        assert store.get(OTHER).unread == 2
        assert store.max_received_at() == 10
