"""Domain constants and type aliases"""
from typing import Literal

# Type aliases for message and event types
DeliveryState = Literal["pending", "sent", "delivered", "seen"]
SenderRole = Literal["primary", "counterparty"]
MessageType = Literal["text", "image", "file"]

# Delivery state constants
DELIVERY_PENDING: DeliveryState = "pending"
DELIVERY_SENT: DeliveryState = "sent"
DELIVERY_DELIVERED: DeliveryState = "delivered"
DELIVERY_SEEN: DeliveryState = "seen"

# States only move forward along these ranks; seen is terminal
DELIVERY_RANK: dict[str, int] = {
    DELIVERY_PENDING: 0,
    DELIVERY_SENT: 1,
    DELIVERY_DELIVERED: 2,
    DELIVERY_SEEN: 3,
}

# Sender role constants
ROLE_PRIMARY: SenderRole = "primary"
ROLE_COUNTERPARTY: SenderRole = "counterparty"

# Message type constants
MESSAGE_TYPE_TEXT: MessageType = "text"
MESSAGE_TYPE_IMAGE: MessageType = "image"
MESSAGE_TYPE_FILE: MessageType = "file"

# Limits
MAX_MESSAGE_LENGTH = 2000
SNIPPET_LENGTH = 50
SNIPPET_ELLIPSIS = "..."

# Server-pushed event names
EVENT_NEW_MESSAGE = "new_message"
EVENT_MESSAGES_READ = "messages_read"
EVENT_USER_ONLINE = "user_online"
EVENT_USER_OFFLINE = "user_offline"
EVENT_TYPING_STARTED = "typing"
EVENT_TYPING_STOPPED = "typing_stopped"

# Client-emitted event names
EMIT_SEND_MESSAGE = "send_message"
EMIT_MARK_READ = "mark_read"
EMIT_TYPING_START = "typing_start"
EMIT_TYPING_STOP = "typing_stop"
EMIT_JOIN_CONVERSATION = "join_conversation"
EMIT_LEAVE_CONVERSATION = "leave_conversation"

# Connection lifecycle events dispatched locally by the channel
EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"

# Key-value store keys
TOKEN_KEY = "auth_token"
USER_KEY = "auth_user"
