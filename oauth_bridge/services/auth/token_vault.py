import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oauth_bridge.common.crypto import InvalidCiphertext, TokenCipher
from oauth_bridge.common.exceptions import NoUpstreamAccount, PersistenceFailure, UpstreamRevoked
from oauth_bridge.common.utils import expires_in, utcnow
from oauth_bridge.models.dto.auth_models import UpstreamTokenResponse
from oauth_bridge.repositories.token_repo import get_upstream_token, upsert_upstream_token
from oauth_bridge.services.auth.upstream import UpstreamOAuthClient

logger = logging.getLogger(__name__)


class TokenVault:
    """
    Upstream credentials at rest.

    Tokens are stored encrypted, one row per internal user. Reading an expired
    pair refreshes it against the upstream provider and writes the new pair
    back before returning.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
        upstream: UpstreamOAuthClient,
    ):
        self._session_factory = session_factory
        self._cipher = cipher
        self._upstream = upstream

    async def store(self, user_id: str, tokens: UpstreamTokenResponse) -> None:
        enc_access = self._cipher.encrypt(tokens.access_token)
        enc_refresh = self._cipher.encrypt(tokens.refresh_token or "")

        try:
            async with self._session_factory() as db:
                await upsert_upstream_token(
                    db,
                    user_id=user_id,
                    enc_access_token=enc_access,
                    enc_refresh_token=enc_refresh,
                    expires_at=expires_in(tokens.expires_in),
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to store upstream tokens") from exc

    async def get_valid(self, user_id: str) -> str:
        async with self._session_factory() as db:
            stored = await get_upstream_token(db, user_id)

        if stored is None:
            raise NoUpstreamAccount(
                "No upstream account connected. Please connect your account from "
                "your client's connector settings."
            )

        try:
            access_token = self._cipher.decrypt(stored.enc_access_token)
            refresh_token = self._cipher.decrypt(stored.enc_refresh_token)
        except InvalidCiphertext as exc:
            # key rotated or row corrupted; only a fresh login can recover
            logger.error(f"[VAULT] Stored tokens for user {user_id} could not be decrypted: {exc}")
            raise UpstreamRevoked() from exc

        if stored.expires_at > utcnow():
            return access_token

        logger.info(f"[VAULT] Upstream token expired for user {user_id}, refreshing")
        refreshed = await self._upstream.refresh(refresh_token)

        # some providers only rotate the access token
        if not refreshed.refresh_token:
            refreshed = refreshed.model_copy(update={"refresh_token": refresh_token})

        await self.store(user_id, refreshed)
        return refreshed.access_token
