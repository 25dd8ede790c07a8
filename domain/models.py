"""Domain models for the chat system"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .constants import (
    DELIVERY_DELIVERED,
    DELIVERY_PENDING,
    DELIVERY_RANK,
    DELIVERY_SEEN,
    MESSAGE_TYPE_TEXT,
    ROLE_COUNTERPARTY,
    ROLE_PRIMARY,
    SNIPPET_ELLIPSIS,
    SNIPPET_LENGTH,
    DeliveryState,
    MessageType,
    SenderRole,
)


def conversation_id_for(actor_id: str, partner_id: str) -> str:
    """Order-independent key for the thread between two participants"""
    return "_".join(sorted([actor_id, partner_id]))


def truncate_snippet(text: str, limit: int = SNIPPET_LENGTH) -> str:
    if len(text) > limit:
        return text[:limit] + SNIPPET_ELLIPSIS
    return text


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 server timestamp (trailing Z allowed)"""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Partner:
    """The other participant of a conversation"""
    id: str
    name: str = ""
    avatar: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "Partner | None":
        if not isinstance(payload, dict):
            return None
        partner_id = payload.get("id") or payload.get("_id")
        if not partner_id:
            return None
        return cls(
            id=str(partner_id),
            name=payload.get("name") or "",
            avatar=payload.get("avatar") or "",
        )


@dataclass
class Message:
    """Represents one message in an open conversation

    The id is a temporary client id while the message is pending and the
    server id once persisted. delivery_state only moves forward, see advance().
    """
    id: str
    conversation_id: str
    sender_role: SenderRole
    body: str
    created_at: datetime = field(default_factory=utcnow)
    delivery_state: DeliveryState = DELIVERY_PENDING
    sender_id: str | None = None
    message_type: MessageType = MESSAGE_TYPE_TEXT

    @property
    def is_counterparty(self) -> bool:
        return self.sender_role == ROLE_COUNTERPARTY

    def advance(self, state: DeliveryState) -> bool:
        """Move to a later delivery state; returns False if that would regress"""
        if DELIVERY_RANK[state] <= DELIVERY_RANK[self.delivery_state]:
            return False
        self.delivery_state = state
        return True

    @classmethod
    def from_payload(
        cls,
        payload: dict,
        actor_id: str,
        counterparty_model: str,
        conversation_id: str | None = None,
    ) -> "Message":
        """Build a message from a REST history item or a new_message event

        The sender role is decided by sender id when the payload carries one,
        otherwise by the server's senderModel.
        """
        sender = payload.get("sender")
        sender_id: str | None = None
        if isinstance(sender, dict) and sender.get("_id"):
            sender_id = str(sender["_id"])
        elif isinstance(sender, str) and sender:
            sender_id = sender

        if sender_id is not None:
            role = ROLE_PRIMARY if sender_id == actor_id else ROLE_COUNTERPARTY
        elif payload.get("senderModel") == counterparty_model:
            role = ROLE_COUNTERPARTY
        else:
            role = ROLE_PRIMARY

        return cls(
            id=str(payload.get("_id") or payload.get("id") or ""),
            conversation_id=payload.get("conversationId") or conversation_id or "",
            sender_role=role,
            body=payload.get("message") or "",
            created_at=parse_timestamp(payload.get("createdAt")) or utcnow(),
            delivery_state=DELIVERY_SEEN if payload.get("isRead") else DELIVERY_DELIVERED,
            sender_id=sender_id,
            message_type=payload.get("messageType") or MESSAGE_TYPE_TEXT,
        )


@dataclass
class Conversation:
    """Conversation list entry"""
    conversation_id: str
    partner: Partner | None
    last_message_snippet: str = ""
    last_message_timestamp: datetime | None = None
    unread_count: int = 0

    @classmethod
    def from_payload(cls, payload: dict) -> "Conversation":
        return cls(
            conversation_id=str(payload.get("conversationId") or ""),
            partner=Partner.from_payload(payload.get("partner")),
            last_message_snippet=truncate_snippet(payload.get("lastMessage") or ""),
            last_message_timestamp=parse_timestamp(payload.get("lastMessageTime")),
            unread_count=max(0, int(payload.get("unreadCount") or 0)),
        )


@dataclass
class TypingUser:
    """Counterparty currently typing in a conversation"""
    user_id: str
    user_name: str = ""
    since: datetime = field(default_factory=utcnow)


@dataclass
class ApiResponse:
    """Normalized REST envelope

    The server wraps payloads inconsistently ({data}, {response: {data}},
    {response}); from_payload() folds all of them into data.
    """
    success: bool
    message: str | None = None
    data: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ApiResponse":
        if not isinstance(payload, dict):
            return cls(success=False, message="Malformed response")

        data = payload.get("data")
        if data is None:
            response = payload.get("response")
            if isinstance(response, dict) and "data" in response:
                data = response["data"]
            else:
                data = response
        # List endpoints nest once more: {"data": {"data": [...]}}
        if isinstance(data, dict) and set(data) == {"data"}:
            data = data["data"]

        return cls(
            success=bool(payload.get("success")),
            message=payload.get("message"),
            data=data,
        )

    def items(self) -> list:
        """data as a list, or empty when missing or of the wrong shape"""
        if isinstance(self.data, list):
            return self.data
        return []
