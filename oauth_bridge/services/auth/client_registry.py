import logging
import secrets
import time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oauth_bridge.common.exceptions import ClientError, PersistenceFailure
from oauth_bridge.common.utils import is_absolute_uri
from oauth_bridge.models.persistance.auth import Client
from oauth_bridge.repositories.auth_repo import create_client, get_client_by_id

logger = logging.getLogger(__name__)


class ClientRegistry:
    """Open dynamic registration of downstream OAuth clients (RFC 7591)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def register(
        self,
        redirect_uris: list[str],
        client_name: Optional[str] = None,
    ) -> Client:
        if not redirect_uris:
            raise ClientError(
                error="invalid_client_metadata",
                description="Missing required field: redirect_uris",
            )

        for uri in redirect_uris:
            if not is_absolute_uri(uri):
                raise ClientError(
                    error="invalid_client_metadata",
                    description=f"redirect_uri must be an absolute URI: {uri}",
                )

        client_id = secrets.token_urlsafe(16)

        try:
            async with self._session_factory() as db:
                client = await create_client(
                    db,
                    client_id=client_id,
                    issued_at=int(time.time()),
                    client_name=client_name,
                    redirect_uris=list(redirect_uris),
                    grant_types=["authorization_code"],
                    response_types=["code"],
                )
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to register client") from exc

        logger.info(f"[OAUTH] Registered client {client_id} ({client_name or 'unnamed'})")
        return client

    async def find(self, client_id: str) -> Client | None:
        async with self._session_factory() as db:
            return await get_client_by_id(db, client_id)
