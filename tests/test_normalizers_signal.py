"""Tests for the Signal-style normalizer."""

import pytest

from chatters.backends.base import SendHandle
from chatters.models import ConversationKey, ConversationKind, DeliveryState
from chatters.mutations import (
    AppendMessage,
    ApplyReaction,
    EditMessage,
    UpdateDeliveryState,
    UpsertConversation,
    UpsertParticipant,
)
from chatters.normalizers.signal import SignalNormalizer

ME = "me-uuid"
BOB = "bob-uuid"
BOB_KEY = ConversationKey("sig", f"user:{BOB}")
GROUP_KEY = ConversationKey("sig", "group:abcd")


def content(sender: str, timestamp: int, **body) -> dict:
    return {"kind": "content", "sender": sender, "timestamp": timestamp, "body": body}


@pytest.fixture
def normalizer() -> SignalNormalizer:
    return SignalNormalizer("sig", self_id=ME)


class TestConversations:
    """Tests for contact and group summaries."""

    def test_contact(self, normalizer: SignalNormalizer) -> None:
        mutations = normalizer.normalize_conversation(
            {"kind": "contact", "uuid": BOB, "name": "Bob", "phone_number": "+100"}
        )
        assert mutations == [
            UpsertConversation(BOB_KEY, display_name="Bob", kind=ConversationKind.DIRECT, description="+100"),
            UpsertParticipant(BOB_KEY, BOB, display_name="Bob"),
        ]

    def test_unnamed_contact_skipped_except_self(self, normalizer: SignalNormalizer) -> None:
        assert normalizer.normalize_conversation({"kind": "contact", "uuid": BOB}) == []
        [conversation, _] = normalizer.normalize_conversation({"kind": "contact", "uuid": ME})
        assert conversation.display_name == "Note to Self"
        assert normalizer.dropped == 0

    def test_group(self, normalizer: SignalNormalizer) -> None:
        mutations = normalizer.normalize_conversation(
            {
                "kind": "group",
                "master_key": "abcd",
                "title": "Climbing",
                "members": [BOB, {"uuid": ME, "name": "Me"}],
            }
        )
        assert mutations[0] == UpsertConversation(
            GROUP_KEY, display_name="Climbing", kind=ConversationKind.GROUP, description=""
        )
        assert mutations[1:] == [
            UpsertParticipant(GROUP_KEY, BOB),
            UpsertParticipant(GROUP_KEY, ME, display_name="Me"),
        ]


class TestMessages:
    """Tests for data messages."""

    def test_incoming_direct_message(self, normalizer: SignalNormalizer) -> None:
        [mutation] = normalizer.normalize_event(content(BOB, 1000, data_message={"body": "hi"}))
        assert mutation == AppendMessage(
            BOB_KEY,
            native_id=f"{BOB}:1000",
            sender_id=BOB,
            body=mutation.body,
            timestamp=1000,
        )
        assert mutation.body.text == "hi"

    def test_group_message(self, normalizer: SignalNormalizer) -> None:
        [mutation] = normalizer.normalize_event(
            content(BOB, 1000, data_message={"body": "hi", "group_v2": {"master_key": "abcd"}})
        )
        assert mutation.key == GROUP_KEY

    def test_empty_data_message_ignored(self, normalizer: SignalNormalizer) -> None:
        """Profile key updates and the like carry nothing to show."""
        assert normalizer.normalize_event(content(BOB, 1000, data_message={"profile_key": "x"})) == []
        assert normalizer.dropped == 0

    def test_attachment_and_quote(self, normalizer: SignalNormalizer) -> None:
        [mutation] = normalizer.normalize_event(
            content(
                BOB,
                1000,
                data_message={
                    "attachments": [{"content_type": "image/jpeg", "size": 2048, "file_name": "a.jpg", "cdn_key": "k"}],
                    "quote": {"id": 900, "author_aci": ME, "text": "before"},
                },
            )
        )
        [attachment] = mutation.body.attachments
        assert (attachment.mime_type, attachment.handle, attachment.name) == ("image/jpeg", "k", "a.jpg")
        assert mutation.body.quote.native_id == f"{ME}:900"

    def test_sync_transcript_is_outgoing_sent(self, normalizer: SignalNormalizer) -> None:
        """Messages sent from another device arrive as sync transcripts."""
        [mutation] = normalizer.normalize_event(
            content(
                ME,
                2000,
                sync_message={"sent": {"destination_service_id": BOB, "timestamp": 1999, "message": {"body": "yo"}}},
            )
        )
        assert mutation.key == BOB_KEY
        assert mutation.native_id == f"{ME}:1999"
        assert mutation.outgoing
        assert mutation.delivery_state is DeliveryState.SENT

    def test_other_sync_messages_ignored(self, normalizer: SignalNormalizer) -> None:
        assert normalizer.normalize_event(content(ME, 2000, sync_message={"read": []})) == []

    def test_history_uses_requested_conversation(self, normalizer: SignalNormalizer) -> None:
        [mutation] = normalizer.normalize_history(
            f"user:{BOB}", content(ME, 500, data_message={"body": "old"})
        )
        assert mutation.key == BOB_KEY
        assert mutation.historical
        assert mutation.outgoing


class TestReceiptsAndOutcomes:
    """Tests for receipts and send outcomes."""

    def test_receipt_resolved_through_sent_memory(self, normalizer: SignalNormalizer) -> None:
        """Receipts only carry timestamps; the thread comes from remembered sends."""
        normalizer.note_outgoing(SendHandle("sig", "group:abcd", f"{ME}:3000", ME, 3000), GROUP_KEY)
        mutations = normalizer.normalize_event(
            content(BOB, 3100, receipt_message={"type": "READ", "timestamps": [3000]})
        )
        assert mutations == [UpdateDeliveryState(GROUP_KEY, f"{ME}:3000", DeliveryState.READ)]

    def test_receipt_falls_back_to_sender_thread(self, normalizer: SignalNormalizer) -> None:
        mutations = normalizer.normalize_event(
            content(BOB, 3100, receipt_message={"type": "DELIVERY", "timestamps": [10, 11]})
        )
        assert mutations == [
            UpdateDeliveryState(BOB_KEY, f"{ME}:10", DeliveryState.DELIVERED),
            UpdateDeliveryState(BOB_KEY, f"{ME}:11", DeliveryState.DELIVERED),
        ]

    def test_send_result(self, normalizer: SignalNormalizer) -> None:
        ok = normalizer.normalize_event({"kind": "send_result", "thread": {"contact": BOB}, "timestamp": 5, "ok": True})
        failed = normalizer.normalize_event(
            {"kind": "send_result", "thread": {"group": "abcd"}, "timestamp": 6, "ok": False, "error": "x"}
        )
        assert ok == [UpdateDeliveryState(BOB_KEY, f"{ME}:5", DeliveryState.SENT)]
        assert failed == [UpdateDeliveryState(GROUP_KEY, f"{ME}:6", DeliveryState.FAILED)]


class TestOtherContent:
    """Tests for typing, reactions, edits and control envelopes."""

    def test_typing(self, normalizer: SignalNormalizer) -> None:
        assert normalizer.normalize_event(content(BOB, 1, typing_message={"action": "STARTED"})) == [
            UpsertParticipant(BOB_KEY, BOB, typing=True)
        ]
        assert normalizer.normalize_event(
            content(BOB, 2, typing_message={"action": "STOPPED", "group_id": "abcd"})
        ) == [UpsertParticipant(GROUP_KEY, BOB, typing=False)]

    def test_reaction(self, normalizer: SignalNormalizer) -> None:
        mutations = normalizer.normalize_event(
            content(
                BOB,
                5,
                data_message={"reaction": {"emoji": "👍", "target_author_aci": ME, "target_sent_timestamp": 3}},
            )
        )
        assert mutations == [ApplyReaction(BOB_KEY, f"{ME}:3", BOB, "👍")]

    def test_edit(self, normalizer: SignalNormalizer) -> None:
        mutations = normalizer.normalize_event(
            content(BOB, 9, edit_message={"target_sent_timestamp": 1000, "data_message": {"body": "fixed"}})
        )
        assert mutations == [EditMessage(BOB_KEY, f"{BOB}:1000", text="fixed")]

    def test_control_envelopes_produce_nothing(self, normalizer: SignalNormalizer) -> None:
        assert normalizer.normalize_event({"kind": "queue_empty"}) == []
        assert normalizer.normalize_event({"kind": "contacts"}) == []
        assert normalizer.dropped == 0

    def test_unknown_content_dropped(self, normalizer: SignalNormalizer) -> None:
        assert normalizer.normalize_event(content(BOB, 1, mystery={})) == []
        assert normalizer.dropped == 1
