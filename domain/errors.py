"""Errors raised by the chat core for caller mistakes"""


class ChatError(Exception):
    """Base error for chat operations."""


class InvalidMessageError(ChatError, ValueError):
    """Raised when a message body is empty after trimming or too long."""


class ConversationNotOpenError(ChatError):
    """Raised when sending to a partner whose conversation is not open."""
