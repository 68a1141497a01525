import logging
import uuid
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oauth_bridge.common.exceptions import (
    ClientError,
    GrantInvalid,
    InvalidAccessToken,
    MissingCodeVerifier,
    OAuthException,
    RedirectMismatch,
    StateInvalidOrExpired,
)
from oauth_bridge.common.security import verify_pkce
from oauth_bridge.common.utils import add_query_params, expires_in, new_token, utcnow
from oauth_bridge.core.config import Settings, settings as default_settings
from oauth_bridge.repositories.auth_repo import (
    consume_auth_code,
    consume_state,
    create_access_token,
    create_auth_code,
    create_state,
    delete_expired_oauth_data,
    get_valid_access_token,
)
from oauth_bridge.services.auth.client_registry import ClientRegistry
from oauth_bridge.services.auth.token_vault import TokenVault
from oauth_bridge.services.auth.upstream import UpstreamOAuthClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

def protected_resource_metadata(settings: Settings = default_settings):
    return {
        "resource": f"{settings.BASE_URL}/mcp",
        "authorization_servers": [settings.BASE_URL],
        "bearer_methods_supported": ["header"],
        "scopes_supported": settings.SUPPORTED_SCOPES,
    }


def authorization_server_metadata(settings: Settings = default_settings):
    return {
        "issuer": settings.BASE_URL,
        "authorization_endpoint": f"{settings.BASE_URL}/authorize",
        "token_endpoint": f"{settings.BASE_URL}/token",
        "registration_endpoint": f"{settings.BASE_URL}/register",
        "scopes_supported": settings.SUPPORTED_SCOPES,
        "response_types_supported": settings.RESPONSE_TYPES_SUPPORTED,
        "grant_types_supported": settings.GRANT_TYPES_SUPPORTED,
        "code_challenge_methods_supported": settings.CODE_CHALLENGE_METHODS_SUPPORTED,
        "token_endpoint_auth_methods_supported": [settings.TOKEN_ENDPOINT_AUTH_METHOD],
    }


def www_authenticate_header(settings: Settings = default_settings) -> Dict[str, str]:
    return {
        "WWW-Authenticate": (
            f'Bearer resource_metadata="{settings.BASE_URL}/.well-known/oauth-protected-resource"'
        )
    }

# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------

class AuthorizationBroker:
    """
    Two-hop OAuth broker.

    Toward the downstream client we are an authorization server; toward the
    upstream provider we are an ordinary OAuth client. A single authorization
    goes START -> AWAITING_UPSTREAM_CALLBACK -> CODE_ISSUED -> TOKEN_ISSUED:

    1. ``begin_authorization`` stores an OAuthState and sends the user agent
       upstream with the state's correlation value.
    2. ``complete_upstream_callback`` consumes that state, trades the upstream
       code for tokens, vaults them under a freshly minted user id, and issues
       a single-use downstream authorization code.
    3. ``exchange_code`` redeems the code (PKCE-checked) for an access token.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clients: ClientRegistry,
        vault: TokenVault,
        upstream: UpstreamOAuthClient,
        settings: Settings = default_settings,
    ):
        self._session_factory = session_factory
        self._clients = clients
        self._vault = vault
        self._upstream = upstream
        self._settings = settings

    # ------------------------------------------------------------------
    # Authorization endpoint
    # ------------------------------------------------------------------

    async def begin_authorization(
        self,
        client_id: str,
        redirect_uri: str,
        state: str,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> str:
        client = await self._clients.find(client_id)
        if not client:
            raise ClientError(description="Unknown client_id")

        if redirect_uri not in client.redirect_uris:
            raise RedirectMismatch(description="redirect_uri not registered for this client")

        if code_challenge_method and code_challenge_method not in self._settings.CODE_CHALLENGE_METHODS_SUPPORTED:
            raise OAuthException(
                error="invalid_request",
                description=f"Invalid code_challenge_method: {code_challenge_method}",
            )

        correlation = str(uuid.uuid4())
        async with self._session_factory() as db:
            await create_state(
                db,
                state=correlation,
                client_id=client_id,
                redirect_uri=redirect_uri,
                client_state=state,
                pkce_challenge=code_challenge or None,
                pkce_method=(code_challenge_method or "plain") if code_challenge else None,
                expires_at=expires_in(self._settings.OAUTH_STATE_TTL),
            )

        logger.info(f"[OAUTH] Authorization started for client {client_id}")
        return self._upstream.authorization_url(correlation)

    # ------------------------------------------------------------------
    # Upstream callback
    # ------------------------------------------------------------------

    async def complete_upstream_callback(self, code: str, state: str) -> str:
        async with self._session_factory() as db:
            auth_state = await consume_state(db, state)

        if not auth_state:
            raise StateInvalidOrExpired(description="Invalid or expired state parameter")

        tokens = await self._upstream.exchange_code(code)

        # TODO: every completed upstream login mints a new identity; confirm
        # with product whether repeat logins should map to one user.
        user_id = str(uuid.uuid4())
        await self._vault.store(user_id, tokens)

        downstream_code = str(uuid.uuid4())
        async with self._session_factory() as db:
            await create_auth_code(
                db,
                code=downstream_code,
                user_id=user_id,
                client_id=auth_state.client_id,
                redirect_uri=auth_state.redirect_uri,
                pkce_challenge=auth_state.pkce_challenge,
                pkce_method=auth_state.pkce_method,
                scope=self._settings.DEFAULT_SCOPE,
                expires_at=expires_in(self._settings.AUTH_CODE_TTL),
            )

        logger.info(f"[OAUTH] Upstream authorization completed, user {user_id} created")
        return add_query_params(
            auth_state.redirect_uri,
            {"code": downstream_code, "state": auth_state.client_state},
        )

    async def deny_upstream_callback(self, state: str, error: str) -> str:
        """Forward an upstream ``error=`` callback to the downstream client."""
        async with self._session_factory() as db:
            auth_state = await consume_state(db, state)

        if not auth_state:
            raise StateInvalidOrExpired(description="Invalid or expired state parameter")

        logger.info(f"[OAUTH] Upstream authorization denied: {error}")
        return add_query_params(
            auth_state.redirect_uri,
            {"error": error, "state": auth_state.client_state},
        )

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def exchange_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> Dict[str, str]:
        async with self._session_factory() as db:
            record = await consume_auth_code(db, code)

        if not record:
            raise GrantInvalid(description="Invalid, expired, or already used authorization code")

        if client_id and client_id != record.client_id:
            raise GrantInvalid(description="Authorization code was not issued to this client")

        if redirect_uri and redirect_uri != record.redirect_uri:
            raise GrantInvalid(description="redirect_uri mismatch")

        if record.pkce_challenge:
            if not code_verifier:
                raise MissingCodeVerifier(description="Missing code_verifier")

            if not verify_pkce(code_verifier, record.pkce_challenge, record.pkce_method):
                raise GrantInvalid(description="Invalid code_verifier")

        access_token = new_token(self._settings.TOKEN_BYTES)
        async with self._session_factory() as db:
            await create_access_token(
                db,
                token=access_token,
                user_id=record.user_id,
                scope=record.scope,
                expires_at=expires_in(self._settings.ACCESS_TOKEN_TTL),
            )

        logger.info(f"[OAUTH] Access token issued for user {record.user_id}")
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "scope": record.scope,
        }

    # ------------------------------------------------------------------
    # Bearer resolution / cleanup
    # ------------------------------------------------------------------

    async def resolve_access_token(self, token: str) -> str:
        async with self._session_factory() as db:
            record = await get_valid_access_token(db, token)

        if not record:
            raise InvalidAccessToken(
                description="Token not found or expired",
                headers=www_authenticate_header(self._settings),
            )
        return record.user_id

    async def cleanup_expired_data(self) -> Dict[str, int]:
        cutoff = utcnow() - timedelta(seconds=self._settings.STALE_TERMINATION_CUTOFF)
        async with self._session_factory() as db:
            return await delete_expired_oauth_data(db, stale_used_cutoff=cutoff)
