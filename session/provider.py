"""Session/identity provider backed by the token store"""
import json
import logging

from database.token_store import TokenStore
from domain.constants import TOKEN_KEY, USER_KEY

logger = logging.getLogger(__name__)


class SessionProvider:
    """Read-only view of the authenticated session

    The login flow writes the token and user through TokenStore; chat
    components only read them here.
    """

    def __init__(self, store: TokenStore) -> None:
        self.store = store

    async def get_token(self) -> str | None:
        return await self.store.get(TOKEN_KEY) or None

    async def get_current_user(self) -> dict | None:
        raw = await self.store.get(USER_KEY)
        if not raw:
            return None
        try:
            user = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored user is not valid JSON; treating session as anonymous")
            return None
        return user if isinstance(user, dict) else None

    async def get_current_actor_id(self) -> str | None:
        """Id of the signed-in actor, or None when there is no session"""
        user = await self.get_current_user()
        if not user:
            return None
        actor_id = user.get("id") or user.get("_id")
        return str(actor_id) if actor_id else None
