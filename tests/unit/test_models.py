"""Unit tests for domain models"""
import itertools
from datetime import datetime, timezone

import pytest

from domain.models import (
    ApiResponse,
    Conversation,
    Message,
    Partner,
    conversation_id_for,
    parse_timestamp,
    truncate_snippet,
)
from domain.constants import (
    DELIVERY_DELIVERED,
    DELIVERY_PENDING,
    DELIVERY_RANK,
    DELIVERY_SEEN,
    DELIVERY_SENT,
    MESSAGE_TYPE_IMAGE,
    MESSAGE_TYPE_TEXT,
    ROLE_COUNTERPARTY,
    ROLE_PRIMARY,
)


@pytest.mark.unit
class TestConversationId:
    """Test conversation id derivation"""

    def test_sorted_join(self):
        """Test that the id joins both ids in lexicographic order"""
        assert conversation_id_for("u1", "u2") == "u1_u2"
        assert conversation_id_for("vendor9", "abc") == "abc_vendor9"

    @pytest.mark.parametrize("a,b", [("u1", "u2"), ("zed", "amy"), ("65f0c1", "65f0c0"), ("x", "x")])
    def test_commutative(self, a, b):
        """Test that both participants compute the same id"""
        assert conversation_id_for(a, b) == conversation_id_for(b, a)


@pytest.mark.unit
class TestMessageDeliveryState:
    """Test the monotonic delivery state machine"""

    def _message(self, state=DELIVERY_PENDING):
        return Message(
            id="m1",
            conversation_id="u1_u2",
            sender_role=ROLE_PRIMARY,
            body="Hello",
            delivery_state=state,
        )

    def test_new_message_is_pending(self):
        """Test that messages default to pending"""
        assert self._message().delivery_state == DELIVERY_PENDING

    def test_advance_forward(self):
        """Test pending -> delivered -> seen"""
        msg = self._message()
        assert msg.advance(DELIVERY_DELIVERED) is True
        assert msg.advance(DELIVERY_SEEN) is True
        assert msg.delivery_state == DELIVERY_SEEN

    def test_seen_is_terminal(self):
        """Test that a seen message never regresses"""
        msg = self._message(DELIVERY_SEEN)
        for state in (DELIVERY_PENDING, DELIVERY_SENT, DELIVERY_DELIVERED):
            assert msg.advance(state) is False
        assert msg.delivery_state == DELIVERY_SEEN

    def test_sent_advances_to_delivered(self):
        """Test that sent -> delivered is a forward move along strictly increasing ranks"""
        msg = self._message(DELIVERY_SENT)
        assert msg.advance(DELIVERY_DELIVERED) is True
        ranks = [DELIVERY_RANK[s] for s in (DELIVERY_PENDING, DELIVERY_SENT, DELIVERY_DELIVERED, DELIVERY_SEEN)]
        assert ranks == sorted(set(ranks))

    def test_delivered_does_not_drop_to_sent(self):
        """Test that delivered never becomes sent"""
        msg = self._message(DELIVERY_DELIVERED)
        assert msg.advance(DELIVERY_SENT) is False
        assert msg.delivery_state == DELIVERY_DELIVERED

    def test_any_sequence_is_non_decreasing(self):
        """Test that every sequence of advance() calls yields non-decreasing ranks"""
        states = [DELIVERY_PENDING, DELIVERY_SENT, DELIVERY_DELIVERED, DELIVERY_SEEN]
        for sequence in itertools.product(states, repeat=3):
            msg = self._message()
            observed = [DELIVERY_RANK[msg.delivery_state]]
            for state in sequence:
                msg.advance(state)
                observed.append(DELIVERY_RANK[msg.delivery_state])
            assert observed == sorted(observed)


@pytest.mark.unit
class TestMessageFromPayload:
    """Test building messages from server payloads"""

    def test_history_item_from_counterparty(self):
        """Test a REST history item sent by the vendor"""
        msg = Message.from_payload(
            {
                "_id": "srv1",
                "message": "Hi there",
                "messageType": "text",
                "senderModel": "Vendor",
                "isRead": False,
                "createdAt": "2024-05-01T10:00:00.000Z",
            },
            actor_id="u1",
            counterparty_model="Vendor",
            conversation_id="u1_u2",
        )
        assert msg.id == "srv1"
        assert msg.conversation_id == "u1_u2"
        assert msg.sender_role == ROLE_COUNTERPARTY
        assert msg.delivery_state == DELIVERY_DELIVERED
        assert msg.created_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_read_item_is_seen(self):
        """Test that isRead maps to seen"""
        msg = Message.from_payload(
            {"_id": "srv2", "message": "ok", "senderModel": "User", "isRead": True},
            actor_id="u1",
            counterparty_model="Vendor",
        )
        assert msg.sender_role == ROLE_PRIMARY
        assert msg.delivery_state == DELIVERY_SEEN

    def test_sender_id_wins_over_sender_model(self):
        """Test that an explicit sender id decides the role"""
        msg = Message.from_payload(
            {
                "_id": "srv3",
                "message": "echo",
                "senderModel": "Vendor",
                "sender": {"_id": "u1", "name": "Asha"},
                "conversationId": "u1_u2",
            },
            actor_id="u1",
            counterparty_model="Vendor",
        )
        assert msg.sender_role == ROLE_PRIMARY
        assert msg.sender_id == "u1"

    def test_missing_fields_use_defaults(self):
        """Test that a sparse payload still builds a message"""
        msg = Message.from_payload({"messageType": "image"}, actor_id="u1", counterparty_model="Vendor")
        assert msg.id == ""
        assert msg.body == ""
        assert msg.message_type == MESSAGE_TYPE_IMAGE
        assert msg.created_at.tzinfo is not None

    def test_default_message_type(self):
        msg = Message.from_payload({"_id": "a"}, actor_id="u1", counterparty_model="Vendor")
        assert msg.message_type == MESSAGE_TYPE_TEXT


@pytest.mark.unit
class TestSnippetAndTimestamps:
    """Test snippet truncation and timestamp parsing"""

    def test_short_text_unchanged(self):
        assert truncate_snippet("Hello") == "Hello"

    def test_exactly_fifty_unchanged(self):
        text = "x" * 50
        assert truncate_snippet(text) == text

    def test_long_text_truncated_with_ellipsis(self):
        """Test that text over 50 chars keeps 50 chars plus ..."""
        assert truncate_snippet("y" * 51) == "y" * 50 + "..."

    def test_parse_timestamp_invalid(self):
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None


@pytest.mark.unit
class TestConversationFromPayload:
    """Test conversation list entries"""

    def test_full_payload(self):
        conv = Conversation.from_payload({
            "conversationId": "u1_u2",
            "partner": {"id": "u2", "name": "Dairy Co", "avatar": "/a.png"},
            "lastMessage": "z" * 60,
            "lastMessageTime": "2024-05-01T10:00:00Z",
            "unreadCount": 3,
        })
        assert conv.partner == Partner(id="u2", name="Dairy Co", avatar="/a.png")
        assert conv.last_message_snippet == "z" * 50 + "..."
        assert conv.unread_count == 3

    def test_missing_partner(self):
        conv = Conversation.from_payload({"conversationId": "u1_u3", "lastMessage": "hi"})
        assert conv.partner is None
        assert conv.unread_count == 0

    def test_negative_unread_clamped(self):
        conv = Conversation.from_payload({"conversationId": "c", "unreadCount": -2})
        assert conv.unread_count == 0


@pytest.mark.unit
class TestApiResponse:
    """Test envelope normalization"""

    def test_top_level_data(self):
        resp = ApiResponse.from_payload({"success": True, "data": [{"_id": "1"}]})
        assert resp.success is True
        assert resp.items() == [{"_id": "1"}]

    def test_nested_response_data(self):
        resp = ApiResponse.from_payload({"success": True, "response": {"data": [{"_id": "2"}]}})
        assert resp.items() == [{"_id": "2"}]

    def test_response_object(self):
        resp = ApiResponse.from_payload({"success": True, "response": {"_id": "3", "message": "hi"}})
        assert resp.data == {"_id": "3", "message": "hi"}

    def test_double_wrapped_list(self):
        resp = ApiResponse.from_payload({"success": True, "data": {"data": [{"_id": "4"}]}})
        assert resp.items() == [{"_id": "4"}]

    def test_missing_data_is_empty(self):
        """Test that a body without data yields no items"""
        resp = ApiResponse.from_payload({"success": True})
        assert resp.data is None
        assert resp.items() == []

    def test_non_dict_payload(self):
        resp = ApiResponse.from_payload(None)
        assert resp.success is False
        assert resp.items() == []
