"""Stored marketplace credentials.

Obtaining tokens (OAuth screens, refresh grants) happens elsewhere; this
module persists what that flow hands over and answers "can we call the
API for this seller right now".
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocksync.context import Clock, utcnow
from stocksync.db.models import UserToken
from stocksync.ingest.errors import AuthExpiredError

logger = logging.getLogger(__name__)


class CredentialStore:
    """Read and write per-seller access tokens."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        refresh_margin_seconds: int = 300,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self.clock = clock

    async def save_tokens(
        self,
        user_id: int,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> None:
        """
        Store tokens handed over by the authentication flow.

        Args:
            user_id: Seller account id
            access_token: Bearer token
            refresh_token: Refresh token, if issued
            expires_in: Token lifetime in seconds
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=expires_in) if expires_in else None

        async with self.session_factory() as db:
            token = await db.get(UserToken, user_id)
            if token is None:
                token = UserToken(user_id=user_id)
                db.add(token)
            token.access_token = access_token
            if refresh_token is not None:
                token.refresh_token = refresh_token
            token.expires_at = expires_at
            token.updated_at = now
            await db.commit()

        logger.info(f"Stored marketplace tokens for user {user_id}")

    async def get_access_token(self, user_id: int) -> str:
        """
        Return a usable access token.

        Raises:
            AuthExpiredError: If no token is stored, it cannot be decrypted,
                or it expires within the refresh margin
        """
        async with self.session_factory() as db:
            token = await db.get(UserToken, user_id)

        if token is None or not token.access_token:
            raise AuthExpiredError(f"No usable access token for user {user_id}")

        if token.expires_at is not None and token.expires_at <= self.clock() + self.refresh_margin:
            raise AuthExpiredError(
                f"Access token for user {user_id} expires at {token.expires_at.isoformat()}"
            )

        return token.access_token

    async def clear_tokens(self, user_id: int) -> None:
        async with self.session_factory() as db:
            await db.execute(delete(UserToken).where(UserToken.user_id == user_id))
            await db.commit()
        logger.info(f"Cleared marketplace tokens for user {user_id}")

    async def token_expires_at(self, user_id: int) -> Optional[datetime]:
        async with self.session_factory() as db:
            token = await db.get(UserToken, user_id)
        return token.expires_at if token else None
