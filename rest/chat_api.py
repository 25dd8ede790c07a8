"""HTTP client for the chat REST endpoints."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from config import Settings
from domain.constants import MESSAGE_TYPE_TEXT, MessageType
from domain.models import ApiResponse
from session.provider import SessionProvider

logger = logging.getLogger(__name__)


class ChatApiError(Exception):
    """Base error for chat API request failures."""


class ChatApiConnectionError(ChatApiError):
    """Raised when the request never got a response (network, timeout)."""


class ChatApiAuthError(ChatApiError):
    """Raised when the backend rejects the session token."""


class ChatApiClient:
    """HTTP client for the chat resource.

    Every call returns an ApiResponse envelope. Transport failures and
    rejected credentials raise; any other error status comes back as an
    unsuccessful envelope carrying the server's message.
    """

    def __init__(
        self,
        settings: Settings,
        session: SessionProvider,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.session = session
        self.http = http or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=httpx.Timeout(settings.request_timeout, connect=10.0),
        )

    async def aclose(self) -> None:
        await self.http.aclose()

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> ApiResponse:
        headers = {"Content-Type": "application/json"}
        token = await self.session.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        logger.debug("chat_api %s %s (token=%s)", method, path, "yes" if token else "no")
        try:
            response = await self.http.request(
                method,
                path,
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise ChatApiConnectionError(f"chat_api_timeout: Request to {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ChatApiConnectionError(f"chat_api_connection_failed: {exc}") from exc

        if response.status_code in {401, 403}:
            raise ChatApiAuthError("chat_api_auth_failed")

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            message = None
            if isinstance(payload, dict):
                message = payload.get("message")
            logger.debug("chat_api %s %s -> %s", method, path, response.status_code)
            return ApiResponse(
                success=False,
                message=message or f"chat_api_error_{response.status_code}",
            )
        return ApiResponse.from_payload(payload)

    async def send_message(
        self,
        receiver_id: str,
        body: str,
        message_type: MessageType = MESSAGE_TYPE_TEXT,
    ) -> ApiResponse:
        return await self.call(
            "POST",
            "/chat/send",
            json={"receiverId": receiver_id, "message": body, "messageType": message_type},
        )

    async def get_conversations(self) -> ApiResponse:
        return await self.call("GET", "/chat/conversations")

    async def get_conversation(
        self,
        partner_id: str,
        page: int | None = None,
        limit: int | None = None,
    ) -> ApiResponse:
        params: dict[str, Any] = {}
        if page:
            params["page"] = page
        if limit:
            params["limit"] = limit
        return await self.call(
            "GET",
            f"/chat/conversation/{quote(partner_id, safe='')}",
            params=params or None,
        )

    async def mark_read(self, conversation_id: str) -> ApiResponse:
        return await self.call("PUT", f"/chat/read/{quote(conversation_id, safe='')}")

    async def delete_message(self, message_id: str) -> ApiResponse:
        return await self.call("DELETE", f"/chat/message/{quote(message_id, safe='')}")

    async def delete_conversation(self, partner_id: str) -> ApiResponse:
        return await self.call("DELETE", f"/chat/conversation/{quote(partner_id, safe='')}")

    async def get_online_status(self, actor_id: str) -> ApiResponse:
        return await self.call("GET", f"/chat/online/{quote(actor_id, safe='')}")
